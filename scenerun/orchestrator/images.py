"""Image generation step: one scene per Advance call."""

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Dict, List, Optional

from sqlalchemy import and_, select, update
from sqlalchemy.orm import Session

from scenerun.database import utcnow
from scenerun.errors import ConflictError, GenerationFailedError, NoCredentialError, PolicyViolationError, UpstreamError
from scenerun.models.project import ImageGeneration, Scene
from scenerun.models.run import Run, RunPhase
from scenerun.models.style import Character, StylePreset
from scenerun.orchestrator.audio import AudioOrchestrator
from scenerun.orchestrator.base import PhaseHandler, StepResult, submit_background
from scenerun.services.billing import KeyResolver, ResolvedKey
from scenerun.services.image_client import ASPECT_RATIOS, ReferenceImage
from scenerun.services.prompt_builder import build_scene_prompt
from scenerun.services.usage_ledger import log_api_usage

logger = logging.getLogger(__name__)

STATUS_GENERATING = "generating"
STATUS_COMPLETED = "completed"
STATUS_FAILED = "failed"
STATUS_POLICY_VIOLATION = "policy_violation"

FAILED_STATUSES = (STATUS_FAILED, STATUS_POLICY_VIOLATION)


@dataclass
class ImageProgress:
    """Per-run image counts over visible scenes, by their active record."""

    total: int = 0
    completed: int = 0
    generating: int = 0
    failed: int = 0
    policy_violations: int = 0
    pending_scene_ids: List[int] = field(default_factory=list)

    @property
    def pending(self) -> int:
        return len(self.pending_scene_ids)

    def to_dict(self) -> Dict[str, int]:
        return {
            "total": self.total,
            "completed": self.completed,
            "generating": self.generating,
            "failed": self.failed,
            "policy_violations": self.policy_violations,
            "pending": self.pending,
        }


def image_progress(db: Session, project_id: int) -> ImageProgress:
    rows = (
        db.query(Scene.id, ImageGeneration.status)
        .outerjoin(
            ImageGeneration,
            and_(ImageGeneration.scene_id == Scene.id, ImageGeneration.is_active.is_(True)),
        )
        .filter(Scene.project_id == project_id, Scene.is_hidden.is_(False))
        .order_by(Scene.idx.asc(), Scene.id.asc(), ImageGeneration.id.desc())
        .all()
    )

    progress = ImageProgress()
    seen = set()
    for scene_id, status in rows:
        # Latest active record wins
        if scene_id in seen:
            continue
        seen.add(scene_id)
        progress.total += 1
        if status is None:
            progress.pending_scene_ids.append(scene_id)
        elif status == STATUS_COMPLETED:
            progress.completed += 1
        elif status == STATUS_GENERATING:
            progress.generating += 1
        elif status == STATUS_POLICY_VIOLATION:
            progress.failed += 1
            progress.policy_violations += 1
        else:
            progress.failed += 1
    return progress


def _project_scene_ids(project_id: int):
    return select(Scene.id).where(Scene.project_id == project_id)


def reclaim_stale_generations(db: Session, cutoff: datetime, project_id: Optional[int] = None) -> int:
    """
    Mark ``generating`` records started before ``cutoff`` as failed.

    Args:
        db: Session
        cutoff: Records started before this are considered abandoned
        project_id: Restrict to one project; all projects when None

    Returns:
        Number of records reclaimed
    """
    stmt = (
        update(ImageGeneration)
        .where(ImageGeneration.status == STATUS_GENERATING, ImageGeneration.started_at < cutoff)
        .values(
            status=STATUS_FAILED,
            error_message="Generation abandoned (stale)",
            completed_at=utcnow(),
        )
        .execution_options(synchronize_session=False)
    )
    if project_id is not None:
        stmt = stmt.where(ImageGeneration.scene_id.in_(_project_scene_ids(project_id)))
    reclaimed = db.execute(stmt).rowcount
    db.commit()
    if reclaimed:
        logger.warning(f"Reclaimed {reclaimed} stale image generation(s) (project={project_id})")
    return reclaimed


def deactivate_failed_generations(db: Session, project_id: int) -> int:
    """Retire failed records so their scenes become pending again."""
    count = db.execute(
        update(ImageGeneration)
        .where(
            ImageGeneration.scene_id.in_(_project_scene_ids(project_id)),
            ImageGeneration.is_active.is_(True),
            ImageGeneration.status.in_(FAILED_STATUSES),
        )
        .values(is_active=False)
        .execution_options(synchronize_session=False)
    ).rowcount
    db.commit()
    return count


class ImageOrchestrator(PhaseHandler):
    """Generates images for visible scenes, one scene per step."""

    phase = RunPhase.GENERATING_IMAGES

    def stale_cutoff(self) -> datetime:
        return utcnow() - timedelta(seconds=self.settings.IMAGE_STALE_SECONDS)

    def lock_is_stale(self, run: Run) -> bool:
        """The lock is stale when no generation for the project is still in flight."""
        in_flight = (
            self.db.query(ImageGeneration.id)
            .filter(
                ImageGeneration.scene_id.in_(_project_scene_ids(run.project_id)),
                ImageGeneration.status == STATUS_GENERATING,
                ImageGeneration.started_at >= self.stale_cutoff(),
            )
            .first()
        )
        return in_flight is None

    def _run(self, run: Run) -> StepResult:
        reclaimed = reclaim_stale_generations(self.db, self.stale_cutoff(), run.project_id)
        if reclaimed:
            return self.result(run, self.phase, "reclaimed_stale", f"Reclaimed {reclaimed} stale generation(s)")

        progress = image_progress(self.db, run.project_id)
        if progress.total == 0:
            return self.fail(run, "NO_SCENES", "No visible scenes to illustrate")

        if progress.generating:
            return self.waiting(run, f"{progress.generating} image(s) generating")

        if progress.pending:
            return self._generate_next(run)

        if progress.completed == progress.total:
            if not self.machine.transition(run.id, self.phase, RunPhase.GENERATING_AUDIO):
                return self._lost_race(run)
            submit_background(self.ctx, AudioOrchestrator, "start_job", run.id)
            return self.result(run, RunPhase.GENERATING_AUDIO, "transitioned", "All images completed; generating audio")

        return self._handle_failures(run, progress)

    def _handle_failures(self, run: Run, progress: ImageProgress) -> StepResult:
        if progress.policy_violations and not self.settings.RETRY_POLICY_VIOLATIONS:
            return self.fail(
                run,
                "IMAGE_GENERATION_FAILED",
                f"{progress.policy_violations} scene(s) refused by content policy",
            )

        if run.retry_count >= self.settings.MAX_RETRY_COUNT:
            return self.fail(
                run,
                "IMAGE_GENERATION_FAILED",
                f"{progress.failed} scene(s) failed after {run.retry_count} retries",
            )

        retry_count = run.retry_count
        if not self.store.increment_retry_count(run.id, retry_count):
            return self.waiting(run, "Image retry already scheduled")
        retired = deactivate_failed_generations(self.db, run.project_id)
        logger.info(f"Run {run.id}: retrying {retired} failed image(s) (retry {retry_count + 1})")
        return self.result(run, self.phase, "retrying_images", f"Retrying {retired} failed image(s)")

    def _generate_next(self, run: Run) -> StepResult:
        try:
            key = KeyResolver(self.db, self.settings).resolve(run.started_by_user_id)
        except NoCredentialError as e:
            return self.fail(run, "NO_API_KEY", e.message)

        # The lock and the in-flight record commit together, so a held lock
        # always has a fresh generating record behind it
        if not self.store.acquire_lock(run.id, self.phase, self.settings.STEP_LOCK_SECONDS, commit=False):
            self.db.rollback()
            raise ConflictError("Image generation already in progress", details={"run_id": run.id})

        # Re-read under the lock; another caller may have taken the scene
        pending = image_progress(self.db, run.project_id).pending_scene_ids
        if not pending:
            self.db.rollback()
            return self.waiting(run, "No pending scenes")

        record = ImageGeneration(scene_id=pending[0], status=STATUS_GENERATING, is_active=True, started_at=utcnow())
        self.db.add(record)
        self.db.commit()
        try:
            scene = self.db.get(Scene, record.scene_id)
            return self._generate_scene(run, scene, key, record)
        finally:
            self.store.release_lock(run.id)

    def _generate_scene(self, run: Run, scene: Scene, key: ResolvedKey, record: ImageGeneration) -> StepResult:
        config = self.config(run)
        style = self.db.get(StylePreset, config.style_preset_id) if config.style_preset_id else None
        characters = self._characters(config.selected_character_ids)
        references = self._reference_images(characters)
        prompt = build_scene_prompt(scene, style, characters, with_references=bool(references))
        aspect_ratio = ASPECT_RATIOS.get(config.output_preset, "16:9")
        record.prompt = prompt

        provider_ok = False
        attempts = None
        error = None
        started = time.monotonic()
        try:
            image = self.ctx.image_client.generate(prompt, key.api_key, aspect_ratio, references)
        except PolicyViolationError as e:
            record.status, error = STATUS_POLICY_VIOLATION, e.message
        except (UpstreamError, GenerationFailedError) as e:
            record.status, error = STATUS_FAILED, e.message
        else:
            provider_ok, attempts = True, image.attempts
            blob_key = f"images/{run.project_id}/scene_{scene.id}/{record.id}.png"
            try:
                record.blob_key = self.ctx.blob_store.put(blob_key, image.data, image.mime_type)
                record.status = STATUS_COMPLETED
            except OSError as e:
                logger.error(f"Blob upload failed for scene {scene.id}: {e}", exc_info=True)
                record.status, error = STATUS_FAILED, f"Upload failed: {e}"
        duration_ms = int((time.monotonic() - started) * 1000)

        record.error_message = error
        record.completed_at = utcnow()
        log_api_usage(
            self.db,
            key=key,
            user_id=run.started_by_user_id,
            project_id=run.project_id,
            run_id=run.id,
            provider=self.settings.IMAGE_PROVIDER,
            model=self.ctx.image_client.model,
            operation="image_generation",
            success=provider_ok,
            cost_usd=self.settings.IMAGE_GENERATION_COST_USD,
            duration_ms=duration_ms,
            metadata={
                "scene_id": scene.id,
                "image_generation_id": record.id,
                "aspect_ratio": aspect_ratio,
                "reference_images": len(references),
                "attempts": attempts,
                "error": error,
            },
        )
        self.db.commit()

        if record.status == STATUS_COMPLETED:
            logger.info(f"Run {run.id}: scene {scene.id} image completed in {duration_ms}ms")
            return self.result(run, self.phase, "image_generated", f"Image generated for scene {scene.idx}")
        logger.warning(f"Run {run.id}: scene {scene.id} image {record.status}: {error}")
        return self.result(run, self.phase, "image_failed", f"Image failed for scene {scene.idx}: {error}")

    def _characters(self, character_ids: List[int]) -> List[Character]:
        if not character_ids:
            return []
        by_id = {c.id: c for c in self.db.query(Character).filter(Character.id.in_(character_ids)).all()}
        return [by_id[cid] for cid in character_ids if cid in by_id]

    def _reference_images(self, characters: List[Character]) -> List[ReferenceImage]:
        references = []
        for character in characters:
            if len(references) >= self.settings.MAX_REFERENCE_IMAGES:
                break
            if not character.reference_image_key:
                continue
            data = self.ctx.blob_store.get(character.reference_image_key)
            if data is None:
                logger.warning(f"Reference image missing for character {character.id}: {character.reference_image_key}")
                continue
            references.append(ReferenceImage(data=data, character_name=character.name))
        return references
