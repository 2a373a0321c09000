"""Schema/feature descriptor resolved once at startup."""

import logging
from dataclasses import dataclass
from typing import Optional

import sqlalchemy
from sqlalchemy.engine import Engine

from scenerun.config import Settings

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Capabilities:
    schema_revision: Optional[str]
    video_build_enabled: bool
    system_key_available: bool


def resolve_capabilities(engine: Engine, settings: Settings) -> Capabilities:
    """Inspect the database and settings once; components never re-probe."""
    inspector = sqlalchemy.inspect(engine)
    tables = set(inspector.get_table_names())

    revision = None
    if "alembic_version" in tables:
        with engine.connect() as conn:
            revision = conn.execute(sqlalchemy.text("SELECT version_num FROM alembic_version")).scalar()

    video_build_enabled = settings.VIDEO_BUILD_ENABLED and "video_builds" in tables
    if settings.VIDEO_BUILD_ENABLED and not video_build_enabled:
        logger.warning("VIDEO_BUILD_ENABLED is set but the video_builds table is missing; trigger disabled")

    caps = Capabilities(
        schema_revision=revision,
        video_build_enabled=video_build_enabled,
        system_key_available=bool(settings.SYSTEM_IMAGE_API_KEY),
    )
    logger.info(f"Capabilities resolved: {caps}")
    return caps
