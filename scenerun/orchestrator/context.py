"""Collaborators and configuration handed to every orchestration component."""

from dataclasses import dataclass
from typing import Callable

from sqlalchemy.orm import Session

from scenerun.capabilities import Capabilities
from scenerun.config import Settings
from scenerun.services.audio_client import AudioJobClient
from scenerun.services.blob_store import BlobStore
from scenerun.services.format_client import FormatClient
from scenerun.services.image_client import ImageClient
from scenerun.services.tasks import TaskRunner
from scenerun.services.video_build_client import VideoBuildClient


@dataclass
class OrchestratorContext:
    settings: Settings
    capabilities: Capabilities
    session_factory: Callable[[], Session]
    tasks: TaskRunner
    blob_store: BlobStore
    format_client: FormatClient
    image_client: ImageClient
    audio_client: AudioJobClient
    video_build_client: VideoBuildClient
