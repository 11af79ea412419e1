from __future__ import annotations

from typing import Optional

from .awaitables import call_maybe_async
from .context import StageContext
from .errors import condition_failed
from .stages import StageRegistry, Transition


class TransitionResolver:
    """Finds the candidate transition for an event or direct target and guards it."""

    def __init__(self, registry: StageRegistry) -> None:
        self.registry = registry

    def find_transition(
        self, from_stage: str, event_or_target: str, is_direct: bool = False
    ) -> Optional[Transition]:
        """Return the first declared transition that matches, or None.

        Event mode compares ``transition.event``; direct mode (``go_to``)
        compares ``transition.target``.
        """
        stage = self.registry.find(from_stage)
        if stage is None:
            return None

        for transition in stage.transitions:
            if is_direct:
                if transition.target == event_or_target:
                    return transition
            elif transition.event == event_or_target:
                return transition
        return None

    @staticmethod
    def direct_transition(target: str) -> Transition:
        """Implicit transition used by go_to when nothing is declared; carries no guard."""
        return Transition(target=target, event=f"direct-to-{target}")

    async def evaluate_condition(
        self,
        transition: Transition,
        context: StageContext,
        event: Optional[str] = None,
    ) -> bool:
        if transition.condition is None:
            return True
        try:
            result = await call_maybe_async(transition.condition, context)
        except Exception as e:
            raise condition_failed(transition, event, e) from e
        return bool(result)
