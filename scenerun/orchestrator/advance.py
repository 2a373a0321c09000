"""Advance: the externally paced driver that performs one step of a run."""

import logging
from typing import Dict, Optional, Type

from sqlalchemy.orm import Session

from scenerun.errors import ConflictError, ForbiddenError, NotFoundError
from scenerun.models.run import Run, RunPhase
from scenerun.orchestrator.audio import AudioOrchestrator
from scenerun.orchestrator.base import PhaseHandler, StepResult
from scenerun.orchestrator.context import OrchestratorContext
from scenerun.orchestrator.formatting import AwaitingReadyHandler, FormattingHandler, InitHandler
from scenerun.orchestrator.images import ImageOrchestrator
from scenerun.orchestrator.video_build import ReadyHandler
from scenerun.services.run_store import RunStore

logger = logging.getLogger(__name__)

HANDLERS: Dict[RunPhase, Type[PhaseHandler]] = {
    RunPhase.INIT: InitHandler,
    RunPhase.FORMATTING: FormattingHandler,
    RunPhase.AWAITING_READY: AwaitingReadyHandler,
    RunPhase.GENERATING_IMAGES: ImageOrchestrator,
    RunPhase.GENERATING_AUDIO: AudioOrchestrator,
    RunPhase.READY: ReadyHandler,
}


class AdvanceDriver:
    def __init__(self, ctx: OrchestratorContext, db: Session):
        self.ctx = ctx
        self.db = db
        self.store = RunStore(db)

    def find_run(self, project_id: int, user_id: int) -> Run:
        """Active run of the project, else its latest run.

        Raises:
            NotFoundError: the project has no run
            ForbiddenError: the run was started by someone else
        """
        run = self.store.get_active_for_project(project_id) or self.store.get_latest_for_project(project_id)
        if run is None:
            raise NotFoundError(f"No run for project {project_id}")
        if run.started_by_user_id != user_id:
            raise ForbiddenError("Run belongs to another user")
        return run

    def advance(self, project_id: int, user_id: int, auth_header: Optional[str] = None) -> StepResult:
        """
        Perform at most one step of the project's run.

        Returns:
            StepResult; ``action == "waiting"`` when nothing could progress

        Raises:
            NotFoundError, ForbiddenError: lookup failures
            ConflictError: the run's lock is held by another step
        """
        run = self.find_run(project_id, user_id)
        phase = RunPhase(run.phase)

        handler_cls = HANDLERS.get(phase)
        if handler_cls is None:
            # failed / canceled: only retry or a new start moves these
            return StepResult(run.id, phase.value, phase.value, "waiting", f"Run is {phase.value}")

        handler = handler_cls(self.ctx, self.db, auth_header=auth_header)
        if self.store.is_locked(run):
            observed = run.locked_until
            if not handler.lock_is_stale(run) or not self.store.force_release_lock(run.id, observed):
                raise ConflictError(
                    "Run is locked by another step",
                    details={"run_id": run.id, "locked_until": observed.isoformat()},
                )
            run = self.store.get(run.id)

        result = handler.execute(run)
        logger.info(f"Advance run {run.id}: {result.previous_phase} -> {result.new_phase} ({result.action})")
        return result
