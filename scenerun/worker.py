"""Background sweeper for work abandoned by killed background tasks."""

import logging
import time
from datetime import datetime, timedelta
from typing import Callable, Dict, Optional

from sqlalchemy import update
from sqlalchemy.orm import Session

from scenerun.config import Settings, settings as default_settings
from scenerun.database import SessionLocal, utcnow
from scenerun.models.video_build import ACTIVE_BUILD_STATUSES, VideoBuild
from scenerun.orchestrator.images import reclaim_stale_generations

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)

logger = logging.getLogger(__name__)


def fail_stuck_builds(db: Session, cutoff: datetime) -> int:
    """Mark mirrored builds with no progress since ``cutoff`` as failed."""
    count = db.execute(
        update(VideoBuild)
        .where(VideoBuild.status.in_(ACTIVE_BUILD_STATUSES), VideoBuild.updated_at < cutoff)
        .values(
            status="failed",
            error_message="Build timed out without progress",
            updated_at=utcnow(),
        )
        .execution_options(synchronize_session=False)
    ).rowcount
    db.commit()
    if count:
        logger.warning(f"Marked {count} stuck video build(s) as failed")
    return count


class Worker:
    """Periodically reclaims stale image generations and stuck video builds."""

    def __init__(self, session_factory: Callable[[], Session] = SessionLocal, settings: Settings = default_settings):
        """Initialize worker."""
        self.session_factory = session_factory
        self.settings = settings
        self.poll_interval = settings.SWEEPER_POLL_INTERVAL

    def sweep_once(self, now: Optional[datetime] = None) -> Dict[str, int]:
        """One idempotent pass; every update re-checks the status it acts on."""
        now = now or utcnow()
        db = self.session_factory()
        try:
            images = reclaim_stale_generations(db, now - timedelta(seconds=self.settings.IMAGE_STALE_SECONDS))
            builds = fail_stuck_builds(db, now - timedelta(minutes=self.settings.VIDEO_BUILD_STUCK_MINUTES))
        finally:
            db.close()
        return {"images": images, "video_builds": builds}

    def run(self, stop_event=None):
        """Main sweeper loop.

        Args:
            stop_event: Optional threading.Event to signal the sweeper to stop
        """
        logger.info(f"Sweeper started (interval {self.poll_interval}s)")
        while True:
            if stop_event and stop_event.is_set():
                logger.info("Sweeper stop signal received")
                break

            try:
                swept = self.sweep_once()
                if any(swept.values()):
                    logger.info(f"Sweep: {swept}")
            except KeyboardInterrupt:
                logger.info("Sweeper shutting down")
                break
            except Exception as e:
                logger.error(f"Sweeper error: {e}", exc_info=True)

            if stop_event:
                stop_event.wait(self.poll_interval)
            else:
                time.sleep(self.poll_interval)


def worker_loop(stop_event=None):
    """Run sweeper loop (for use as background thread).

    Args:
        stop_event: Optional threading.Event to signal the sweeper to stop
    """
    worker = Worker()
    worker.run(stop_event=stop_event)


def main():
    """Entry point for standalone sweeper."""
    worker = Worker()
    worker.run()


if __name__ == "__main__":
    main()
