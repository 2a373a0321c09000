"""Formatting and awaiting_ready steps."""

import logging
from datetime import timedelta

from scenerun.database import utcnow
from scenerun.errors import UpstreamError
from scenerun.models.project import Project
from scenerun.models.run import Run, RunPhase
from scenerun.orchestrator.base import PhaseHandler, StepResult, submit_background
from scenerun.services.format_client import FORMAT_DONE, FORMAT_FAILED, FORMAT_NOT_STARTED

logger = logging.getLogger(__name__)


class FormattingHandler(PhaseHandler):
    """Polls the format service and confirms the resulting scenes."""

    phase = RunPhase.FORMATTING

    def kickoff(self, run_id: int) -> None:
        """Background: ask the format service to split the project text."""
        run = self.store.get(run_id)
        if not run or run.phase != RunPhase.FORMATTING.value:
            logger.info(f"Run {run_id}: formatting kickoff skipped (phase moved)")
            return

        project = self.db.get(Project, run.project_id)
        project.status = "formatting"
        self.db.commit()

        config = self.config(run)
        try:
            self.ctx.format_client.start(
                project.id,
                project.source_text or "",
                target_scene_count=config.target_scene_count,
                split_mode=config.split_mode,
            )
        except UpstreamError as e:
            if e.permanent:
                self.fail(run, "FORMAT_FAILED", e.message)
            else:
                # The next Advance re-kicks after the grace window
                logger.warning(f"Run {run_id}: format start failed transiently: {e.message}")

    def _run(self, run: Run) -> StepResult:
        try:
            status = self.ctx.format_client.get_status(run.project_id)
        except UpstreamError as e:
            if e.permanent:
                return self.fail(run, "FORMAT_FAILED", e.message)
            return self.waiting(run, f"Format service unavailable: {e.message}")

        if status.status == FORMAT_NOT_STARTED:
            grace = timedelta(seconds=self.settings.FORMAT_KICKOFF_GRACE_SECONDS)
            if run.phase_changed_at and utcnow() - run.phase_changed_at > grace:
                submit_background(self.ctx, FormattingHandler, "kickoff", run.id)
                return self.result(run, self.phase, "format_restarted", "Formatting restarted")
            return self.waiting(run, "Formatting not started yet")

        if status.status == FORMAT_FAILED:
            return self.fail(run, "FORMAT_FAILED", status.error or "Formatting failed")

        if status.status != FORMAT_DONE:
            done = status.chunks_done + status.chunks_failed
            return self.waiting(run, f"Formatting in progress ({done}/{status.chunks_total} chunks)")

        if status.scene_count == 0:
            return self.fail(run, "FORMAT_EMPTY", "Formatting produced no scenes")

        scenes = self.visible_scenes(run.project_id)
        if not scenes:
            return self.fail(run, "NO_SCENES", "No visible scenes after formatting")

        target = self.config(run).target_scene_count
        if len(scenes) > target:
            for scene in scenes[target:]:
                scene.is_hidden = True
            logger.info(f"Run {run.id}: hid {len(scenes) - target} scene(s) beyond target {target}")

        project = self.db.get(Project, run.project_id)
        project.status = "formatted"
        self.db.commit()

        return self.advance_to(
            run,
            RunPhase.AWAITING_READY,
            "scenes_confirmed",
            f"{min(len(scenes), target)} scenes confirmed",
        )


class AwaitingReadyHandler(PhaseHandler):
    """Waits until every visible scene has narration lines."""

    phase = RunPhase.AWAITING_READY

    def _run(self, run: Run) -> StepResult:
        counts = self.utterance_counts(run.project_id)
        if not counts:
            return self.waiting(run, "No visible scenes")

        missing = [scene.idx for scene, count in counts if count == 0]
        if missing:
            return self.waiting(run, f"{len(missing)} scene(s) still without utterances")

        return self.advance_to(
            run,
            RunPhase.GENERATING_IMAGES,
            "transitioned",
            f"{len(counts)} scenes ready; generating images",
            lock_seconds=self.settings.STEP_LOCK_SECONDS,
        )


class InitHandler(PhaseHandler):
    """A run left in init by an interrupted start is moved on to formatting."""

    phase = RunPhase.INIT

    def _run(self, run: Run) -> StepResult:
        if not self.machine.transition(run.id, RunPhase.INIT, RunPhase.FORMATTING):
            return self._lost_race(run)
        submit_background(self.ctx, FormattingHandler, "kickoff", run.id)
        return self.result(run, RunPhase.FORMATTING, "format_started", "Formatting started")
