from __future__ import annotations

import pytest

pytest.importorskip("fastapi")
pytest.importorskip("httpx")

from fastapi.testclient import TestClient  # noqa: E402

from stageflow.api import create_app  # noqa: E402


@pytest.fixture
def engine(make_engine, checkout_config):
    return make_engine(checkout_config)


@pytest.fixture
def client(engine):
    with TestClient(create_app(engine)) as c:
        yield c


def test_health(client):
    r = client.get("/health")
    assert r.status_code == 200
    assert r.json() == {"status": "ok"}


def test_state_before_start(client):
    body = client.get("/state").json()
    assert body["started"] is False
    assert body["current"] == "cart"
    assert body["data"] == {"items": 0}
    assert body["history"] == [{"stage": "cart", "timestamp": 0, "data": {"items": 0}}]
    assert body["plugins"] == []


def test_send_before_start_is_conflict(client):
    r = client.post("/events/checkout")
    assert r.status_code == 409
    assert r.json()["detail"] == {
        "code": "TRANSITION_ERROR",
        "message": "Engine must be started before sending events",
    }


def test_start_send_and_stop(client, engine):
    assert client.post("/start").json() == {"status": "started", "stage": "cart"}

    r = client.post("/events/checkout", json={"items": 2})
    assert r.status_code == 200
    assert r.json() == {"status": "sent", "stage": "payment"}
    assert engine.get_current_data() == {"items": 2}

    state = client.get("/state").json()
    assert [h["stage"] for h in state["history"]] == ["cart", "payment"]

    assert client.post("/stop").json() == {"status": "stopped", "stage": "payment"}
    assert engine.is_started() is False


def test_go_to_stage(client):
    client.post("/start")

    r = client.post("/stages/done")
    assert r.status_code == 200
    assert r.json() == {"status": "moved", "stage": "done"}


def test_go_to_unknown_stage_is_404(client):
    client.post("/start")
    r = client.post("/stages/nowhere")
    assert r.status_code == 404
    assert r.json()["detail"] == "Stage not found"


def test_timers_listing_and_actions(client):
    client.post("/start")
    client.post("/events/checkout")

    (timer,) = client.get("/timers").json()
    assert timer["stage"] == "payment"
    assert timer["target"] == "cart"
    assert timer["remaining_time"] == 5000

    assert client.post("/timers/pause").json() == {"status": "pause", "paused": True, "remaining": 5000}
    assert client.post("/timers/resume").json()["paused"] is False
    assert client.post("/timers/reset").json()["remaining"] == 5000


def test_unknown_timer_action_is_404(client):
    r = client.post("/timers/explode")
    assert r.status_code == 404
