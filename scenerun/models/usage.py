"""Cost-accounting ledger model."""

from sqlalchemy import Column, DateTime, Float, ForeignKey, Index, Integer, Text

from scenerun.database import Base, JSONType, utcnow


class ApiUsageLog(Base):
    """Exactly one row per billable provider call, success or failure."""

    __tablename__ = "api_usage_logs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="SET NULL"))
    project_id = Column(Integer, ForeignKey("projects.id", ondelete="SET NULL"))
    run_id = Column(Integer, ForeignKey("runs.id", ondelete="SET NULL"))
    provider = Column(Text, nullable=False)
    model = Column(Text)
    operation = Column(Text, nullable=False)  # 'image_generation'
    api_key_source = Column(Text, nullable=False)  # 'user', 'sponsor', 'system'
    sponsored_by_user_id = Column(Integer)
    status = Column(Text, nullable=False)  # 'success', 'failed'
    estimated_cost_usd = Column(Float, nullable=False, default=0.0)
    duration_ms = Column(Integer)
    metadata_json = Column("metadata", JSONType)
    created_at = Column(DateTime, default=utcnow)

    __table_args__ = (
        Index("idx_api_usage_logs_user_id", "user_id"),
        Index("idx_api_usage_logs_project_id", "project_id"),
    )
