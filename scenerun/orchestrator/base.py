"""Base phase handler and the step result returned by Advance."""

import logging
from dataclasses import asdict, dataclass
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import func
from sqlalchemy.orm import Session

from scenerun.models.project import Scene, SceneUtterance
from scenerun.models.run import Run, RunPhase
from scenerun.orchestrator.context import OrchestratorContext
from scenerun.orchestrator.state_machine import PhaseStateMachine
from scenerun.schemas.run import RunConfig
from scenerun.services.run_store import RunStore

logger = logging.getLogger(__name__)


@dataclass
class StepResult:
    run_id: int
    previous_phase: str
    new_phase: str
    action: str
    message: str

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class PhaseHandler:
    """Base class for the per-phase step logic driven by Advance.

    A step performs at most one transition or one unit of work, and must be
    safe to repeat: when nothing can progress it returns ``waiting``.
    """

    phase: RunPhase

    def __init__(self, ctx: OrchestratorContext, db: Session, auth_header: Optional[str] = None):
        """Initialize handler."""
        self.ctx = ctx
        self.settings = ctx.settings
        self.db = db
        self.auth_header = auth_header
        self.store = RunStore(db)
        self.machine = PhaseStateMachine(self.store)

    def execute(self, run: Run) -> StepResult:
        """Run one step for ``run``."""
        logger.info(f"{self.__class__.__name__} step for run {run.id} (phase={run.phase})")
        # See writes committed by background tasks on other sessions
        self.db.expire_all()
        return self._run(run)

    def _run(self, run: Run) -> StepResult:
        raise NotImplementedError

    def lock_is_stale(self, run: Run) -> bool:
        """Whether a held lock can be safely broken for this phase."""
        return False

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def config(self, run: Run) -> RunConfig:
        return RunConfig(**(run.config or {}))

    def result(self, run: Run, new_phase, action: str, message: str) -> StepResult:
        return StepResult(
            run_id=run.id,
            previous_phase=self.phase.value,
            new_phase=RunPhase(new_phase).value,
            action=action,
            message=message,
        )

    def waiting(self, run: Run, message: str) -> StepResult:
        return self.result(run, self.phase, "waiting", message)

    def advance_to(self, run: Run, to_phase, action: str, message: str, lock_seconds: Optional[int] = None) -> StepResult:
        if self.machine.transition(run.id, self.phase, to_phase, lock_seconds=lock_seconds):
            return self.result(run, to_phase, action, message)
        return self._lost_race(run)

    def fail(self, run: Run, error_code: str, error_message: str) -> StepResult:
        logger.error(f"Run {run.id} failing in {self.phase.value}: {error_code} {error_message}")
        if self.machine.fail(run.id, self.phase, error_code, error_message):
            return self.result(run, RunPhase.FAILED, "failed", error_message)
        return self._lost_race(run)

    def _lost_race(self, run: Run) -> StepResult:
        current = self.store.get(run.id)
        new_phase = current.phase if current else self.phase.value
        return StepResult(
            run_id=run.id,
            previous_phase=self.phase.value,
            new_phase=new_phase,
            action="already_advanced",
            message="Already transitioned",
        )

    def visible_scenes(self, project_id: int) -> List[Scene]:
        return (
            self.db.query(Scene)
            .filter(Scene.project_id == project_id, Scene.is_hidden.is_(False))
            .order_by(Scene.idx.asc(), Scene.id.asc())
            .all()
        )

    def utterance_counts(self, project_id: int) -> List[Tuple[Scene, int]]:
        """Visible scenes with their utterance counts, in idx order."""
        counts = dict(
            self.db.query(SceneUtterance.scene_id, func.count(SceneUtterance.id))
            .join(Scene, Scene.id == SceneUtterance.scene_id)
            .filter(Scene.project_id == project_id)
            .group_by(SceneUtterance.scene_id)
            .all()
        )
        return [(scene, counts.get(scene.id, 0)) for scene in self.visible_scenes(project_id)]


def run_in_session(ctx: OrchestratorContext, handler_cls, method: str, *args) -> None:
    """Background entry point: each task gets its own session."""
    db = ctx.session_factory()
    try:
        handler = handler_cls(ctx, db)
        getattr(handler, method)(*args)
    finally:
        db.close()


def submit_background(ctx: OrchestratorContext, handler_cls, method: str, *args) -> None:
    ctx.tasks.submit(run_in_session, ctx, handler_cls, method, *args)
