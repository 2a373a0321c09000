"""SQLAlchemy ORM models."""

from scenerun.models.user import User, UserApiKey
from scenerun.models.project import ImageGeneration, Project, Scene, SceneUtterance
from scenerun.models.style import Character, StylePreset
from scenerun.models.run import Run, RunPhase, TERMINAL_PHASES
from scenerun.models.usage import ApiUsageLog
from scenerun.models.video_build import VideoBuild

__all__ = [
    "User",
    "UserApiKey",
    "Project",
    "Scene",
    "SceneUtterance",
    "ImageGeneration",
    "StylePreset",
    "Character",
    "Run",
    "RunPhase",
    "TERMINAL_PHASES",
    "ApiUsageLog",
    "VideoBuild",
]
