"""Run persistence: compare-and-swap phase updates and the timed lock.

Every mutation of a run is a single conditional UPDATE. A zero row count
means another actor got there first; callers re-read and react instead of
treating it as an error.
"""

import logging
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from sqlalchemy import or_, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from scenerun.database import utcnow
from scenerun.errors import ConflictError
from scenerun.models.project import Project
from scenerun.models.run import TERMINAL_PHASES, Run, RunPhase

logger = logging.getLogger(__name__)

_TERMINAL_VALUES = [p.value for p in TERMINAL_PHASES]


def _phase_value(phase) -> str:
    return RunPhase(phase).value


class RunStore:
    """Leaf abstraction over the ``runs`` table."""

    def __init__(self, db: Session):
        self.db = db

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get(self, run_id: int) -> Optional[Run]:
        """Fresh read of a run, bypassing the identity map."""
        return self.db.get(Run, run_id, populate_existing=True)

    def _live_runs(self):
        return (
            self.db.query(Run)
            .join(Project, Project.id == Run.project_id)
            .filter(Project.is_deleted.is_(False))
            .populate_existing()
        )

    def get_active_for_user(self, user_id: int) -> Optional[Run]:
        return (
            self._live_runs()
            .filter(Run.started_by_user_id == user_id, Run.phase.notin_(_TERMINAL_VALUES))
            .order_by(Run.created_at.desc(), Run.id.desc())
            .first()
        )

    def oldest_active_for_user(self, user_id: int) -> Optional[Run]:
        return (
            self._live_runs()
            .filter(Run.started_by_user_id == user_id, Run.phase.notin_(_TERMINAL_VALUES))
            .order_by(Run.id.asc())
            .first()
        )

    def get_active_for_project(self, project_id: int) -> Optional[Run]:
        return (
            self._live_runs()
            .filter(Run.project_id == project_id, Run.phase.notin_(_TERMINAL_VALUES))
            .order_by(Run.created_at.desc(), Run.id.desc())
            .first()
        )

    def get_latest_for_project(self, project_id: int) -> Optional[Run]:
        return (
            self._live_runs()
            .filter(Run.project_id == project_id)
            .order_by(Run.created_at.desc(), Run.id.desc())
            .first()
        )

    def list_for_user(self, user_id: int, include_archived: bool = False) -> List[Run]:
        query = self._live_runs().filter(Run.started_by_user_id == user_id)
        if not include_archived:
            query = query.filter(Run.is_archived.is_(False))
        return query.order_by(Run.created_at.desc(), Run.id.desc()).all()

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def create(self, project_id: int, user_id: int, config: Dict[str, Any], started_from: str = "api") -> Run:
        """Insert a run in phase ``init``.

        Raises:
            ConflictError: a concurrent start already created an active run.
        """
        run = Run(
            project_id=project_id,
            started_by_user_id=user_id,
            started_from=started_from,
            phase=RunPhase.INIT.value,
            config=config,
            retry_count=0,
        )
        self.db.add(run)
        try:
            self.db.commit()
        except IntegrityError as e:
            self.db.rollback()
            raise ConflictError("Active run already exists for this project") from e
        self.db.refresh(run)
        return run

    def _conditional_update(self, *criteria, commit: bool = True, **values) -> bool:
        values.setdefault("updated_at", utcnow())
        result = self.db.execute(
            update(Run).where(*criteria).values(**values).execution_options(synchronize_session=False)
        )
        if commit:
            self.db.commit()
        return result.rowcount > 0

    def compare_and_swap_phase(self, run_id: int, expected, next_phase, **fields) -> bool:
        """Set ``phase=next_phase`` only if the run is still in ``expected``.

        Returns:
            True if this caller won, False if the run had already moved.
        """
        now = utcnow()
        return self._conditional_update(
            Run.id == run_id,
            Run.phase == _phase_value(expected),
            phase=_phase_value(next_phase),
            phase_changed_at=now,
            updated_at=now,
            **fields,
        )

    def cancel_active(self, run_id: int) -> bool:
        """Move a non-terminal run to ``canceled`` and clear its lock."""
        now = utcnow()
        return self._conditional_update(
            Run.id == run_id,
            Run.phase.notin_(_TERMINAL_VALUES),
            phase=RunPhase.CANCELED.value,
            phase_changed_at=now,
            locked_at=None,
            locked_until=None,
        )

    def rollback_failed(self, run_id: int, target, expected_retry_count: int) -> bool:
        """Retry back-edge: failed -> target, bump retry_count, clear error and lock."""
        now = utcnow()
        values = dict(
            phase=_phase_value(target),
            phase_changed_at=now,
            retry_count=expected_retry_count + 1,
            error_code=None,
            error_message=None,
            error_phase=None,
            locked_at=None,
            locked_until=None,
            completed_at=None,
        )
        if _phase_value(target) in (RunPhase.GENERATING_IMAGES.value, RunPhase.AWAITING_READY.value, RunPhase.FORMATTING.value):
            values["audio_job_id"] = None
        return self._conditional_update(
            Run.id == run_id,
            Run.phase == RunPhase.FAILED.value,
            Run.retry_count == expected_retry_count,
            **values,
        )

    def increment_retry_count(self, run_id: int, expected_count: int) -> bool:
        return self._conditional_update(
            Run.id == run_id,
            Run.retry_count == expected_count,
            retry_count=expected_count + 1,
        )

    def set_audio_job_id(self, run_id: int, job_id: str) -> bool:
        """Attach the bulk-audio job once; later writers lose."""
        return self._conditional_update(
            Run.id == run_id,
            Run.phase == RunPhase.GENERATING_AUDIO.value,
            Run.audio_job_id.is_(None),
            audio_job_id=job_id,
        )

    def attach_video_build(self, run_id: int, build_id: int) -> bool:
        return self._conditional_update(
            Run.id == run_id,
            Run.video_build_id.is_(None),
            video_build_id=build_id,
            video_build_attempted_at=utcnow(),
            video_build_error=None,
        )

    def claim_video_build_attempt(self, run_id: int, pending_before: datetime) -> bool:
        """Mark a build attempt as scheduled unless one was scheduled after ``pending_before``.

        Clears any earlier error; the caller checks the cooldown first.
        """
        return self._conditional_update(
            Run.id == run_id,
            Run.phase == RunPhase.READY.value,
            Run.video_build_id.is_(None),
            or_(Run.video_build_attempted_at.is_(None), Run.video_build_attempted_at < pending_before),
            video_build_attempted_at=utcnow(),
            video_build_error=None,
        )

    def record_video_build_attempt(self, run_id: int, error: Optional[str]) -> bool:
        return self._conditional_update(
            Run.id == run_id,
            Run.video_build_id.is_(None),
            video_build_attempted_at=utcnow(),
            video_build_error=error,
        )

    def set_archived(self, run_id: int, archived: bool) -> bool:
        return self._conditional_update(Run.id == run_id, is_archived=archived)

    # ------------------------------------------------------------------
    # Timed lock
    # ------------------------------------------------------------------

    @staticmethod
    def is_locked(run: Run, now: Optional[datetime] = None) -> bool:
        now = now or utcnow()
        return run.locked_until is not None and run.locked_until > now

    def acquire_lock(self, run_id: int, phase, seconds: int, commit: bool = True) -> bool:
        """Claim the run for ``seconds`` if it is in ``phase`` and unlocked.

        With ``commit=False`` the claim is left in the caller's transaction.
        """
        now = utcnow()
        won = self._conditional_update(
            Run.id == run_id,
            Run.phase == _phase_value(phase),
            or_(Run.locked_until.is_(None), Run.locked_until <= now),
            commit=commit,
            locked_at=now,
            locked_until=now + timedelta(seconds=seconds),
        )
        if not won:
            logger.info(f"Run {run_id}: lock not acquired (phase moved or lock held)")
        return won

    def release_lock(self, run_id: int) -> bool:
        return self._conditional_update(Run.id == run_id, locked_at=None, locked_until=None)

    def force_release_lock(self, run_id: int, observed_locked_until: datetime) -> bool:
        """Drop a lock judged stale, only if nobody re-locked in between."""
        won = self._conditional_update(
            Run.id == run_id,
            Run.locked_until == observed_locked_until,
            locked_at=None,
            locked_until=None,
        )
        if won:
            logger.warning(f"Run {run_id}: released stale lock (was until {observed_locked_until})")
        return won
