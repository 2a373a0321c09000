"""Project, scene, utterance and image-generation models."""

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Index, Integer, Text
from sqlalchemy.orm import relationship

from scenerun.database import Base, JSONType, utcnow


class Project(Base):
    """Content unit owned by a user; a run drives one project."""

    __tablename__ = "projects"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    title = Column(Text, nullable=False)
    source_text = Column(Text)
    status = Column(Text, nullable=False, default="created")  # 'created', 'uploaded', 'formatting', 'formatted', 'failed'
    output_preset = Column(Text)
    settings_json = Column(JSONType)
    is_deleted = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    scenes = relationship("Scene", back_populates="project", cascade="all, delete-orphan")


class Scene(Base):
    """Scene written by the format service. Visible scenes are the unit of image work."""

    __tablename__ = "scenes"

    id = Column(Integer, primary_key=True, autoincrement=True)
    project_id = Column(Integer, ForeignKey("projects.id", ondelete="CASCADE"), nullable=False)
    idx = Column(Integer, nullable=False)
    title = Column(Text)
    dialogue = Column(Text)
    image_prompt = Column(Text)
    is_hidden = Column(Boolean, nullable=False, default=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    project = relationship("Project", back_populates="scenes")
    utterances = relationship("SceneUtterance", back_populates="scene", cascade="all, delete-orphan")

    __table_args__ = (Index("idx_scenes_project_idx", "project_id", "idx"),)


class SceneUtterance(Base):
    """One narration line of a scene."""

    __tablename__ = "scene_utterances"

    id = Column(Integer, primary_key=True, autoincrement=True)
    scene_id = Column(Integer, ForeignKey("scenes.id", ondelete="CASCADE"), nullable=False)
    order_no = Column(Integer, nullable=False, default=0)
    text = Column(Text, nullable=False)
    audio_status = Column(Text)  # None, 'completed', 'failed'

    scene = relationship("Scene", back_populates="utterances")

    __table_args__ = (Index("idx_scene_utterances_scene_id", "scene_id"),)


class ImageGeneration(Base):
    """One image attempt for a scene.

    Only the ``is_active`` record counts as the scene's image. Older and
    failed records are deactivated, never deleted.
    """

    __tablename__ = "image_generations"

    id = Column(Integer, primary_key=True, autoincrement=True)
    scene_id = Column(Integer, ForeignKey("scenes.id", ondelete="CASCADE"), nullable=False)
    prompt = Column(Text)
    status = Column(Text, nullable=False)  # 'generating', 'completed', 'failed', 'policy_violation'
    is_active = Column(Boolean, nullable=False, default=True)
    blob_key = Column(Text)
    error_message = Column(Text)
    started_at = Column(DateTime, default=utcnow)
    completed_at = Column(DateTime)
    created_at = Column(DateTime, default=utcnow)

    __table_args__ = (
        Index("idx_image_generations_scene_active", "scene_id", "is_active"),
        Index("idx_image_generations_status", "status"),
    )
