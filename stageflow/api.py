from __future__ import annotations

from dataclasses import asdict
from typing import Any, Dict, Optional

from .errors import StageFlowError

try:
    from fastapi import Body, FastAPI, HTTPException
except ImportError:  # optional dependency
    FastAPI = None
    HTTPException = Exception
    Body = None


def create_app(engine: Any):
    """Expose a started (or startable) engine over HTTP.

    Transition failures map to 409, unknown stages to 404.
    """
    if FastAPI is None:
        raise RuntimeError("fastapi is not installed. Install with: pip install -e '.[api]'")

    app = FastAPI()

    def _conflict(e: StageFlowError) -> HTTPException:
        return HTTPException(status_code=409, detail={"code": e.code, "message": e.what})

    @app.get("/health")
    async def health() -> Dict[str, str]:
        return {"status": "ok"}

    @app.get("/state")
    async def state() -> Dict[str, Any]:
        snapshot = engine.get_state()
        return {
            "started": engine.is_started(),
            "current": snapshot.current,
            "data": snapshot.data,
            "is_transitioning": snapshot.is_transitioning,
            "history": [asdict(h) for h in snapshot.history],
            "plugins": engine.get_installed_plugins(),
            "middleware": list(snapshot.middleware),
            "effect": engine.get_current_stage_effect(),
        }

    @app.post("/start")
    async def start() -> Dict[str, str]:
        await engine.start()
        return {"status": "started", "stage": engine.get_current_stage()}

    @app.post("/stop")
    async def stop() -> Dict[str, str]:
        await engine.stop()
        return {"status": "stopped", "stage": engine.get_current_stage()}

    @app.post("/events/{event}")
    async def send_event(event: str, data: Optional[Any] = Body(default=None)):
        try:
            await engine.send(event, data)
        except StageFlowError as e:
            raise _conflict(e)
        return {"status": "sent", "stage": engine.get_current_stage()}

    @app.post("/stages/{stage}")
    async def go_to(stage: str, data: Optional[Any] = Body(default=None)):
        if not engine.registry.has(stage):
            raise HTTPException(status_code=404, detail="Stage not found")
        try:
            await engine.go_to(stage, data)
        except StageFlowError as e:
            raise _conflict(e)
        return {"status": "moved", "stage": engine.get_current_stage()}

    @app.get("/timers")
    async def timers():
        return [t.to_dict() for t in engine.get_active_timers()]

    @app.post("/timers/{action}")
    async def timer_action(action: str):
        actions = {
            "pause": engine.pause_timers,
            "resume": engine.resume_timers,
            "reset": engine.reset_timers,
        }
        if action not in actions:
            raise HTTPException(status_code=404, detail="Unknown timer action")
        actions[action]()
        return {
            "status": action,
            "paused": engine.are_timers_paused(),
            "remaining": engine.get_timer_remaining_time(),
        }

    return app
