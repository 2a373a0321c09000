"""Narration step: delegate to the bulk audio service and poll it."""

import logging
from datetime import timedelta
from typing import Optional

from scenerun.database import utcnow
from scenerun.errors import UpstreamError
from scenerun.models.run import Run, RunPhase
from scenerun.orchestrator.base import PhaseHandler, StepResult, submit_background
from scenerun.orchestrator.video_build import ReadyHandler
from scenerun.services.audio_client import JOB_ACTIVE_STATUSES

logger = logging.getLogger(__name__)


class AudioOrchestrator(PhaseHandler):
    phase = RunPhase.GENERATING_AUDIO

    def lock_is_stale(self, run: Run) -> bool:
        # Polling never needs the lock
        return True

    def start_job(self, run_id: int) -> Optional[str]:
        """Background: start (or adopt) the bulk job and attach it to the run once."""
        run = self.store.get(run_id)
        if not run or run.phase != RunPhase.GENERATING_AUDIO.value:
            logger.info(f"Run {run_id}: audio start skipped (phase moved)")
            return None
        if run.audio_job_id:
            logger.info(f"Run {run_id}: audio job {run.audio_job_id} already attached")
            return run.audio_job_id

        client = self.ctx.audio_client
        try:
            existing = client.find_latest_job(run.project_id)
            if existing and existing.status in JOB_ACTIVE_STATUSES:
                job_id = existing.job_id
            else:
                voice = self.config(run).narration_voice.model_dump()
                job_id = client.start_job(run.project_id, voice, user_id=run.started_by_user_id)
        except UpstreamError as e:
            if e.permanent:
                self.fail(run, "AUDIO_GENERATION_FAILED", e.message)
            else:
                logger.warning(f"Run {run_id}: audio start failed transiently: {e.message}")
            return None

        if self.store.set_audio_job_id(run.id, job_id):
            logger.info(f"Run {run_id}: attached audio job {job_id}")
        else:
            logger.info(f"Run {run_id}: audio job already attached by another caller")
        return job_id

    def _run(self, run: Run) -> StepResult:
        if not run.audio_job_id:
            return self._recover_job(run)

        try:
            job = self.ctx.audio_client.get_job(run.audio_job_id)
        except UpstreamError as e:
            if e.permanent:
                return self.fail(run, "AUDIO_GENERATION_FAILED", e.message)
            return self.waiting(run, f"Audio service unavailable: {e.message}")

        if job.status == "completed":
            if not self.machine.transition(run.id, self.phase, RunPhase.READY):
                return self._lost_race(run)
            if self.ctx.capabilities.video_build_enabled:
                ReadyHandler(self.ctx, self.db, auth_header=self.auth_header).schedule_trigger(run.id)
            return self.result(run, RunPhase.READY, "completed", "Run completed")

        if job.status in ("failed", "canceled"):
            return self.fail(run, "AUDIO_GENERATION_FAILED", job.error or f"Audio job {job.status}")

        return self.waiting(run, f"Audio {job.processed}/{job.total_utterances} utterances")

    def _recover_job(self, run: Run) -> StepResult:
        """No job attached: adopt a running one, or restart after the grace window."""
        try:
            latest = self.ctx.audio_client.find_latest_job(run.project_id)
        except UpstreamError as e:
            return self.waiting(run, f"Audio service unavailable: {e.message}")

        if latest and latest.status in JOB_ACTIVE_STATUSES:
            if self.store.set_audio_job_id(run.id, latest.job_id):
                return self.result(run, self.phase, "audio_attached", f"Attached audio job {latest.job_id}")
            return self.waiting(run, "Audio job already attached")

        grace = timedelta(seconds=self.settings.AUDIO_KICKOFF_GRACE_SECONDS)
        if run.phase_changed_at and utcnow() - run.phase_changed_at > grace:
            submit_background(self.ctx, AudioOrchestrator, "start_job", run.id)
            return self.result(run, self.phase, "audio_restarted", "Audio job restarted")
        return self.waiting(run, "Audio job starting")
