"""Run model."""

import enum

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Index, Integer, String, Text, text

from scenerun.database import Base, JSONType, utcnow


class RunPhase(str, enum.Enum):
    """Phases of the orchestration DAG."""

    INIT = "init"
    FORMATTING = "formatting"
    AWAITING_READY = "awaiting_ready"
    GENERATING_IMAGES = "generating_images"
    GENERATING_AUDIO = "generating_audio"
    READY = "ready"
    FAILED = "failed"
    CANCELED = "canceled"


TERMINAL_PHASES = frozenset({RunPhase.READY, RunPhase.FAILED, RunPhase.CANCELED})


class Run(Base):
    """Run represents one end-to-end attempt to turn text into a finished asset."""

    __tablename__ = "runs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    project_id = Column(Integer, ForeignKey("projects.id", ondelete="CASCADE"), nullable=False)
    started_by_user_id = Column(Integer, ForeignKey("users.id", ondelete="SET NULL"))
    started_from = Column(Text)  # 'ui' | 'api'

    phase = Column(Text, nullable=False, default=RunPhase.INIT.value)
    config = Column(JSONType, nullable=False)  # RunConfig snapshot, frozen at creation

    retry_count = Column(Integer, nullable=False, default=0)

    locked_at = Column(DateTime)
    locked_until = Column(DateTime)

    error_code = Column(Text)
    error_message = Column(Text)
    error_phase = Column(Text)

    audio_job_id = Column(String(64))

    video_build_id = Column(Integer)
    video_build_attempted_at = Column(DateTime)
    video_build_error = Column(Text)

    is_archived = Column(Boolean, nullable=False, default=False)

    phase_changed_at = Column(DateTime, default=utcnow)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)
    completed_at = Column(DateTime)

    __table_args__ = (
        Index("idx_runs_project_id", "project_id"),
        Index("idx_runs_user_phase", "started_by_user_id", "phase"),
        # One active run per project; terminal phases are excluded
        Index(
            "uq_runs_one_active_per_project",
            "project_id",
            unique=True,
            sqlite_where=text("phase NOT IN ('ready', 'failed', 'canceled')"),
            postgresql_where=text("phase NOT IN ('ready', 'failed', 'canceled')"),
        ),
    )

    @property
    def is_terminal(self) -> bool:
        return self.phase in TERMINAL_PHASES

    def __repr__(self):
        return f"<Run(id={self.id}, project_id={self.project_id}, phase={self.phase})>"
