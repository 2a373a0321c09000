"""Phase transition table and the guarded transition primitive."""

import logging
from datetime import timedelta
from typing import Dict, FrozenSet, Optional

from scenerun.database import utcnow
from scenerun.models.run import TERMINAL_PHASES, RunPhase
from scenerun.services.run_store import RunStore

logger = logging.getLogger(__name__)

P = RunPhase

ALLOWED_TRANSITIONS: Dict[RunPhase, FrozenSet[RunPhase]] = {
    P.INIT: frozenset({P.FORMATTING, P.CANCELED}),
    P.FORMATTING: frozenset({P.AWAITING_READY, P.FAILED, P.CANCELED}),
    P.AWAITING_READY: frozenset({P.GENERATING_IMAGES, P.CANCELED}),
    P.GENERATING_IMAGES: frozenset({P.GENERATING_AUDIO, P.FAILED, P.CANCELED}),
    P.GENERATING_AUDIO: frozenset({P.READY, P.FAILED, P.CANCELED}),
    P.READY: frozenset(),
    # Retry back-edge
    P.FAILED: frozenset({P.FORMATTING, P.AWAITING_READY, P.GENERATING_IMAGES}),
    P.CANCELED: frozenset(),
}

# error_phase -> phase a retry rolls back to
RETRY_ROLLBACK_MAP: Dict[str, RunPhase] = {
    P.FORMATTING.value: P.FORMATTING,
    P.AWAITING_READY.value: P.AWAITING_READY,
    P.GENERATING_IMAGES.value: P.AWAITING_READY,
    P.GENERATING_AUDIO.value: P.GENERATING_IMAGES,
}

# Phases entered without keeping a lock; the next Advance must be free to poll
_LOCK_CLEARING_PHASES = TERMINAL_PHASES | {P.GENERATING_AUDIO}


def is_allowed(from_phase, to_phase) -> bool:
    return RunPhase(to_phase) in ALLOWED_TRANSITIONS.get(RunPhase(from_phase), frozenset())


def rollback_target(error_phase: Optional[str]) -> RunPhase:
    return RETRY_ROLLBACK_MAP.get(error_phase or P.FORMATTING.value, P.FORMATTING)


class PhaseStateMachine:
    """Applies table-checked transitions through the store's CAS primitive."""

    def __init__(self, store: RunStore):
        self.store = store

    def transition(
        self,
        run_id: int,
        from_phase,
        to_phase,
        error_code: Optional[str] = None,
        error_message: Optional[str] = None,
        lock_seconds: Optional[int] = None,
    ) -> bool:
        """Move ``run_id`` from ``from_phase`` to ``to_phase``.

        Returns False both for a transition outside the table (logged) and
        for a lost race; neither is an exception.
        """
        from_phase, to_phase = RunPhase(from_phase), RunPhase(to_phase)
        if not is_allowed(from_phase, to_phase):
            logger.error(f"Run {run_id}: invalid transition {from_phase.value} -> {to_phase.value}")
            return False

        fields = {}
        now = utcnow()
        if to_phase == P.FAILED:
            fields.update(
                error_code=error_code or "UNKNOWN_ERROR",
                error_message=error_message,
                error_phase=from_phase.value,
            )
        if to_phase == P.READY:
            fields["completed_at"] = now
        if to_phase in _LOCK_CLEARING_PHASES:
            fields.update(locked_at=None, locked_until=None)
        elif lock_seconds:
            fields.update(locked_at=now, locked_until=now + timedelta(seconds=lock_seconds))

        won = self.store.compare_and_swap_phase(run_id, from_phase, to_phase, **fields)
        if won:
            logger.info(f"Run {run_id}: {from_phase.value} -> {to_phase.value}")
        else:
            logger.info(f"Run {run_id}: lost race on {from_phase.value} -> {to_phase.value}")
        return won

    def fail(self, run_id: int, from_phase, error_code: str, error_message: str) -> bool:
        return self.transition(run_id, from_phase, P.FAILED, error_code=error_code, error_message=error_message)
