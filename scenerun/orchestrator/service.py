"""Run lifecycle operations behind the HTTP routes."""

import logging
from typing import Any, Dict, List, Optional

from sqlalchemy import case, func
from sqlalchemy.orm import Session

from scenerun.database import utcnow
from scenerun.errors import (
    ConflictError,
    InvalidPhaseError,
    NotFoundError,
    RetryExhaustedError,
    UnauthorizedError,
    UpstreamError,
    ValidationError,
)
from scenerun.models.project import Project, Scene, SceneUtterance
from scenerun.models.run import Run, RunPhase
from scenerun.models.style import Character, StylePreset
from scenerun.models.user import User
from scenerun.models.video_build import VideoBuild
from scenerun.orchestrator.advance import AdvanceDriver
from scenerun.orchestrator.base import StepResult, submit_background
from scenerun.orchestrator.context import OrchestratorContext
from scenerun.orchestrator.formatting import FormattingHandler
from scenerun.orchestrator.images import deactivate_failed_generations, image_progress
from scenerun.orchestrator.state_machine import PhaseStateMachine, rollback_target
from scenerun.schemas.run import NarrationVoice, RunConfig, RunStartRequest
from scenerun.services.format_client import FORMAT_DONE
from scenerun.services.run_store import RunStore

logger = logging.getLogger(__name__)


class RunService:
    """Start, inspect, retry, cancel and archive runs for one caller."""

    def __init__(self, ctx: OrchestratorContext, db: Session):
        self.ctx = ctx
        self.settings = ctx.settings
        self.db = db
        self.store = RunStore(db)
        self.machine = PhaseStateMachine(self.store)
        self.driver = AdvanceDriver(ctx, db)

    # ------------------------------------------------------------------
    # Start
    # ------------------------------------------------------------------

    def _active_conflict(self, active: Run) -> ConflictError:
        return ConflictError(
            "An active run already exists",
            details={"run_id": active.id, "project_id": active.project_id, "phase": active.phase},
        )

    def _build_config(self, user_id: int, request: RunStartRequest) -> RunConfig:
        config = RunConfig(
            target_scene_count=request.target_scene_count or 5,
            output_preset=request.output_preset or "yt_long",
            narration_voice=request.narration_voice or NarrationVoice(),
            style_preset_id=request.style_preset_id,
            selected_character_ids=list(dict.fromkeys(request.selected_character_ids or [])),
        )

        if config.style_preset_id is not None:
            preset = self.db.get(StylePreset, config.style_preset_id)
            if preset is None or not preset.is_active:
                raise ValidationError(f"Unknown style preset {config.style_preset_id}")

        if config.selected_character_ids:
            owned = {
                cid
                for (cid,) in self.db.query(Character.id).filter(
                    Character.id.in_(config.selected_character_ids), Character.user_id == user_id
                )
            }
            unknown = [cid for cid in config.selected_character_ids if cid not in owned]
            if unknown:
                raise ValidationError("Unknown characters", details={"character_ids": unknown})
        return config

    def start(self, user_id: int, request: RunStartRequest, started_from: str = "api") -> Run:
        """
        Create a project and its run, and start formatting in the background.

        Raises:
            UnauthorizedError: unknown user
            ConflictError: the user already has a non-terminal run
            ValidationError: unknown style preset or characters
        """
        if self.db.get(User, user_id) is None:
            raise UnauthorizedError("Unknown user")

        active = self.store.get_active_for_user(user_id)
        if active:
            raise self._active_conflict(active)

        config = self._build_config(user_id, request)
        project = Project(
            user_id=user_id,
            title=request.title or f"Run {utcnow():%Y-%m-%d %H:%M}",
            source_text=request.text,
            status="uploaded",
            output_preset=config.output_preset,
        )
        self.db.add(project)
        self.db.commit()
        self.db.refresh(project)

        run = self.store.create(project.id, user_id, config.model_dump(), started_from=started_from)

        # Two concurrent starts can both pass the check above; the oldest run wins
        winner = self.store.oldest_active_for_user(user_id)
        if winner is not None and winner.id != run.id:
            self.store.cancel_active(run.id)
            project.is_deleted = True
            self.db.commit()
            logger.warning(f"Run {run.id} canceled: user {user_id} already started run {winner.id}")
            raise self._active_conflict(winner)

        if not self.machine.transition(run.id, RunPhase.INIT, RunPhase.FORMATTING):
            raise ConflictError("Run changed while starting", details={"run_id": run.id})
        submit_background(self.ctx, FormattingHandler, "kickoff", run.id)

        logger.info(f"Started run {run.id} for project {project.id} (user {user_id})")
        return self.store.get(run.id)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_active(self, user_id: int) -> Run:
        run = self.store.get_active_for_user(user_id)
        if run is None:
            raise NotFoundError("No active run")
        return run

    def list_runs(self, user_id: int, include_archived: bool = False) -> List[Run]:
        return self.store.list_for_user(user_id, include_archived=include_archived)

    def status(self, project_id: int, user_id: int) -> Dict[str, Any]:
        """Aggregated, read-only progress of the project's active or latest run."""
        run = self.driver.find_run(project_id, user_id)
        config = RunConfig(**(run.config or {}))
        return {
            "run_id": run.id,
            "project_id": run.project_id,
            "phase": run.phase,
            "config": config,
            "retry_count": run.retry_count,
            "locked_until": run.locked_until,
            "error": {"code": run.error_code, "message": run.error_message, "phase": run.error_phase}
            if run.error_code
            else None,
            "progress": {
                "format": self._format_progress(run),
                "scenes_ready": self._scenes_progress(run.project_id),
                "images": self._images_progress(run.project_id),
                "audio": self._audio_progress(run),
                "video": self._video_progress(run),
            },
            "timestamps": {
                "created_at": run.created_at,
                "updated_at": run.updated_at,
                "phase_changed_at": run.phase_changed_at,
                "completed_at": run.completed_at,
            },
        }

    def _format_progress(self, run: Run) -> Dict[str, Any]:
        project = self.db.get(Project, run.project_id)
        done = project.status == "formatted"
        progress = {"state": "done" if done else "pending", "project_status": project.status, "chunks": None}
        if run.phase != RunPhase.FORMATTING.value:
            return progress
        try:
            status = self.ctx.format_client.get_status(run.project_id)
        except UpstreamError as e:
            logger.warning(f"Format status unavailable for project {run.project_id}: {e.message}")
            return progress
        progress["state"] = "done" if status.status == FORMAT_DONE else status.status
        progress["chunks"] = {
            "total": status.chunks_total,
            "done": status.chunks_done,
            "failed": status.chunks_failed,
        }
        return progress

    def _scenes_progress(self, project_id: int) -> Dict[str, Any]:
        rows = (
            self.db.query(Scene.id, Scene.idx, Scene.title, func.count(SceneUtterance.id))
            .outerjoin(SceneUtterance, SceneUtterance.scene_id == Scene.id)
            .filter(Scene.project_id == project_id, Scene.is_hidden.is_(False))
            .group_by(Scene.id, Scene.idx, Scene.title)
            .order_by(Scene.idx.asc(), Scene.id.asc())
            .all()
        )
        ready = bool(rows) and all(count > 0 for _, _, _, count in rows)
        return {
            "state": "done" if ready else "pending",
            "visible_count": len(rows),
            "utterances_ready": ready,
            "scenes": [
                {"id": sid, "idx": idx, "title": title, "utterance_count": count}
                for sid, idx, title, count in rows
            ],
        }

    def _images_progress(self, project_id: int) -> Dict[str, Any]:
        progress = image_progress(self.db, project_id)
        if progress.total and progress.completed == progress.total:
            state = "done"
        elif progress.generating:
            state = "running"
        elif progress.failed:
            state = "failed"
        else:
            state = "pending"
        return {"state": state, **progress.to_dict()}

    def _audio_progress(self, run: Run) -> Dict[str, Any]:
        total, completed, failed = (
            self.db.query(
                func.count(SceneUtterance.id),
                func.sum(case((SceneUtterance.audio_status == "completed", 1), else_=0)),
                func.sum(case((SceneUtterance.audio_status == "failed", 1), else_=0)),
            )
            .join(Scene, Scene.id == SceneUtterance.scene_id)
            .filter(Scene.project_id == run.project_id, Scene.is_hidden.is_(False))
            .one()
        )
        job_status = None
        if run.audio_job_id:
            try:
                job_status = self.ctx.audio_client.get_job(run.audio_job_id).status
            except UpstreamError as e:
                logger.warning(f"Audio job {run.audio_job_id} status unavailable: {e.message}")
        state = {"completed": "done", "running": "running", "queued": "running", "failed": "failed"}.get(
            job_status, "pending"
        )
        return {
            "state": state,
            "job_id": run.audio_job_id,
            "job_status": job_status,
            "total_utterances": total or 0,
            "completed": completed or 0,
            "failed": failed or 0,
        }

    def _video_progress(self, run: Run) -> Dict[str, Any]:
        build = self.db.get(VideoBuild, run.video_build_id) if run.video_build_id else None
        return {
            "enabled": self.ctx.capabilities.video_build_enabled,
            "build_id": run.video_build_id,
            "build_status": build.status if build else None,
            "progress_percent": build.progress_percent if build else None,
            "download_url": build.download_url if build else None,
            "attempted_at": run.video_build_attempted_at,
            "error": run.video_build_error,
        }

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def advance(self, project_id: int, user_id: int, auth_header: Optional[str] = None) -> StepResult:
        return self.driver.advance(project_id, user_id, auth_header=auth_header)

    def retry(self, project_id: int, user_id: int) -> StepResult:
        """
        Roll a failed run back to the phase it can resume from.

        Raises:
            InvalidPhaseError: the run is not failed
            RetryExhaustedError: retry_count reached MAX_RETRY_COUNT
            ConflictError: another run is active, or a concurrent retry won
        """
        run = self.driver.find_run(project_id, user_id)
        if run.phase != RunPhase.FAILED.value:
            raise InvalidPhaseError(f"Run is {run.phase}, not failed", details={"phase": run.phase})
        if run.retry_count >= self.settings.MAX_RETRY_COUNT:
            raise RetryExhaustedError(
                f"Retry limit reached ({run.retry_count}/{self.settings.MAX_RETRY_COUNT})",
                details={"retry_count": run.retry_count},
            )

        active = self.store.get_active_for_user(user_id)
        if active and active.id != run.id:
            raise self._active_conflict(active)

        target = rollback_target(run.error_phase)
        if run.error_phase == RunPhase.GENERATING_IMAGES.value:
            deactivate_failed_generations(self.db, run.project_id)

        retry_count = run.retry_count
        if not self.store.rollback_failed(run.id, target, retry_count):
            raise ConflictError("Run changed during retry", details={"run_id": run.id})

        if target == RunPhase.FORMATTING:
            submit_background(self.ctx, FormattingHandler, "kickoff", run.id)

        logger.info(f"Run {run.id} retried: failed -> {target.value} (retry {retry_count + 1})")
        return StepResult(
            run_id=run.id,
            previous_phase=RunPhase.FAILED.value,
            new_phase=target.value,
            action="retried",
            message=f"Rolled back to {target.value}",
        )

    def cancel(self, project_id: int, user_id: int) -> StepResult:
        """Cancel the active run and best-effort cancel its audio job."""
        run = self.driver.find_run(project_id, user_id)
        previous = run.phase
        audio_job_id = run.audio_job_id
        if not self.store.cancel_active(run.id):
            raise ConflictError(f"Run is already {previous}", details={"run_id": run.id, "phase": previous})

        if audio_job_id:
            try:
                self.ctx.audio_client.cancel_job(audio_job_id)
            except UpstreamError as e:
                logger.warning(f"Could not cancel audio job {audio_job_id} for run {run.id}: {e.message}")

        logger.info(f"Run {run.id} canceled from {previous}")
        return StepResult(
            run_id=run.id,
            previous_phase=previous,
            new_phase=RunPhase.CANCELED.value,
            action="canceled",
            message="Run canceled",
        )

    def set_archived(self, project_id: int, user_id: int, archived: bool) -> Run:
        run = self.driver.find_run(project_id, user_id)
        if not run.is_terminal:
            raise InvalidPhaseError("Only finished runs can be archived", details={"phase": run.phase})
        self.store.set_archived(run.id, archived)
        return self.store.get(run.id)
