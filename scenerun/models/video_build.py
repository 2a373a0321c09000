"""Local mirror of downstream video builds."""

from sqlalchemy import Column, DateTime, ForeignKey, Index, Integer, Text

from scenerun.database import Base, utcnow

ACTIVE_BUILD_STATUSES = ("submitted", "queued", "rendering", "uploading", "validating")
FINAL_BUILD_STATUSES = ("completed", "failed", "canceled")

# Webhook updates never move a build to a lower rank
BUILD_STATUS_RANK = {status: rank for rank, status in enumerate(ACTIVE_BUILD_STATUSES)}
BUILD_STATUS_RANK.update({status: len(ACTIVE_BUILD_STATUSES) for status in FINAL_BUILD_STATUSES})


class VideoBuild(Base):
    """Build state as last reported by the render pipeline."""

    __tablename__ = "video_builds"

    id = Column(Integer, primary_key=True)  # id assigned by the build API
    project_id = Column(Integer, ForeignKey("projects.id", ondelete="CASCADE"), nullable=False)
    status = Column(Text, nullable=False, default="submitted")
    progress_percent = Column(Integer)
    download_url = Column(Text)
    error_message = Column(Text)
    last_event_id = Column(Text)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    __table_args__ = (Index("idx_video_builds_project_status", "project_id", "status"),)
