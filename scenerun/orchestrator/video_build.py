"""Ready phase and the best-effort video-build trigger."""

import logging
from datetime import timedelta
from typing import Any, Dict, Optional

from scenerun.database import utcnow
from scenerun.errors import UpstreamError
from scenerun.models.run import Run, RunPhase
from scenerun.models.video_build import ACTIVE_BUILD_STATUSES, VideoBuild
from scenerun.orchestrator.base import PhaseHandler, StepResult, submit_background
from scenerun.schemas.run import RunConfig
from scenerun.services.image_client import ASPECT_RATIOS
from scenerun.services.video_build_client import CreateBuildResult

logger = logging.getLogger(__name__)

# Trigger outcomes
SKIPPED_PHASE = "skipped_phase"
ALREADY_ATTACHED = "already_attached"
COOLDOWN = "cooldown"
ATTACHED_EXISTING = "attached_existing"
PREFLIGHT_AUTH_SKIPPED = "preflight_auth_skipped"
PREFLIGHT_NOT_READY = "preflight_not_ready"
PREFLIGHT_FAILED = "preflight_failed"
CREATE_FAILED = "create_failed"
CREATED = "created"
RECOVERED = "recovered_existing"


def build_settings_for(config: RunConfig) -> Dict[str, Any]:
    return {
        "aspect_ratio": ASPECT_RATIOS.get(config.output_preset, "16:9"),
        "resolution": "1080p",
        "fps": 30,
        "bgm": {"enabled": config.bgm_mode != "none"},
    }


class ReadyHandler(PhaseHandler):
    """A ready run only ever schedules the video build; it never changes phase."""

    phase = RunPhase.READY

    def in_cooldown(self, run: Run) -> bool:
        if not run.video_build_error or not run.video_build_attempted_at:
            return False
        cooldown = timedelta(minutes=self.settings.VIDEO_BUILD_COOLDOWN_MINUTES)
        return utcnow() - run.video_build_attempted_at < cooldown

    def _run(self, run: Run) -> StepResult:
        if not self.ctx.capabilities.video_build_enabled:
            return self.waiting(run, "Run complete")
        if run.video_build_id:
            return self.waiting(run, f"Video build {run.video_build_id} attached")
        if self.in_cooldown(run):
            return self.waiting(run, f"Video build cooling down after: {run.video_build_error}")
        if not self.schedule_trigger(run.id):
            return self.waiting(run, "Video build already scheduled")
        return self.result(run, self.phase, "video_build_scheduled", "Video build scheduled")

    def schedule_trigger(self, run_id: int) -> bool:
        """Submit ``trigger`` in the background unless an attempt is already pending.

        Returns:
            True if this caller scheduled the attempt
        """
        pending_before = utcnow() - timedelta(seconds=self.settings.VIDEO_BUILD_PENDING_SECONDS)
        if not self.store.claim_video_build_attempt(run_id, pending_before):
            return False
        submit_background(self.ctx, ReadyHandler, "trigger", run_id, self.auth_header)
        return True

    def trigger(self, run_id: int, auth_header: Optional[str] = None) -> str:
        """
        Pass the three gates and request a build for a ready run.

        Args:
            run_id: Run to build for
            auth_header: Caller's Authorization header, forwarded to the build API

        Returns:
            Outcome name; every outcome except a phase skip is recorded on the run
        """
        run = self.store.get(run_id)
        if not run or run.phase != RunPhase.READY.value:
            logger.info(f"Run {run_id}: video build skipped (not ready)")
            return SKIPPED_PHASE

        # Gate 1: already attached, cooling down, or a build is already running
        if run.video_build_id:
            return ALREADY_ATTACHED
        if self.in_cooldown(run):
            return COOLDOWN
        active = (
            self.db.query(VideoBuild)
            .filter(VideoBuild.project_id == run.project_id, VideoBuild.status.in_(ACTIVE_BUILD_STATUSES))
            .order_by(VideoBuild.created_at.desc(), VideoBuild.id.desc())
            .first()
        )
        if active:
            self.store.attach_video_build(run.id, active.id)
            logger.info(f"Run {run_id}: attached active video build {active.id}")
            return ATTACHED_EXISTING

        client = self.ctx.video_build_client

        # Gate 2: preflight with the caller's credentials
        try:
            preflight = client.preflight(run.project_id, auth_header)
        except UpstreamError as e:
            if e.upstream_status in (401, 403):
                logger.info(f"Run {run_id}: preflight not authorized; skipping video build")
                self.store.record_video_build_attempt(run.id, "PREFLIGHT_AUTH_SKIPPED")
                return PREFLIGHT_AUTH_SKIPPED
            logger.warning(f"Run {run_id}: preflight failed: {e.message}")
            self.store.record_video_build_attempt(run.id, f"PREFLIGHT_FAILED: {e.message}")
            return PREFLIGHT_FAILED
        if not preflight.is_ready:
            missing = ", ".join(preflight.missing) or "unknown"
            self.store.record_video_build_attempt(run.id, f"PREFLIGHT_NOT_READY: {missing}")
            return PREFLIGHT_NOT_READY

        # Gate 3: create, recovering the id of a build that already exists
        try:
            created = client.create_build(run.project_id, auth_header, build_settings_for(self.config(run)))
        except UpstreamError as e:
            logger.error(f"Run {run_id}: video build creation failed: {e.message}")
            self.store.record_video_build_attempt(run.id, f"BUILD_CREATE_FAILED: {e.message}")
            return CREATE_FAILED

        self._mirror(run.project_id, created)
        self.store.attach_video_build(run.id, created.build_id)
        logger.info(f"Run {run_id}: video build {created.build_id} attached (recovered={created.recovered})")
        return RECOVERED if created.recovered else CREATED

    def _mirror(self, project_id: int, created: CreateBuildResult) -> None:
        build = self.db.get(VideoBuild, created.build_id)
        if build is None:
            self.db.add(VideoBuild(id=created.build_id, project_id=project_id, status=created.status))
            self.db.commit()
