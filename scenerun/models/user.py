"""User and stored provider-key models."""

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Index, Integer, Text

from scenerun.database import Base, utcnow


class User(Base):
    """Account. ``api_sponsor_id`` points at the user who pays for this user's calls."""

    __tablename__ = "users"

    id = Column(Integer, primary_key=True, autoincrement=True)
    email = Column(Text, nullable=False, unique=True)
    api_sponsor_id = Column(Integer, ForeignKey("users.id", ondelete="SET NULL"))
    created_at = Column(DateTime, default=utcnow)


class UserApiKey(Base):
    """Provider key stored encrypted (Fernet) for a user."""

    __tablename__ = "user_api_keys"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    provider = Column(Text, nullable=False)
    encrypted_key = Column(Text, nullable=False)
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    __table_args__ = (Index("idx_user_api_keys_user_provider", "user_id", "provider"),)
