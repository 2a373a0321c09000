"""Style preset and character models (managed elsewhere, read here)."""

from sqlalchemy import Boolean, Column, ForeignKey, Integer, Text

from scenerun.database import Base


class StylePreset(Base):
    __tablename__ = "style_presets"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(Text, nullable=False)
    prompt_prefix = Column(Text)
    prompt_suffix = Column(Text)
    is_active = Column(Boolean, nullable=False, default=True)


class Character(Base):
    """Library character with an optional reference image in the blob store."""

    __tablename__ = "characters"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    name = Column(Text, nullable=False)
    appearance = Column(Text)
    reference_image_key = Column(Text)
