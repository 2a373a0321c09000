"""Pytest configuration and fixtures."""

import base64
import json
from typing import Any, Callable, Dict, List, Optional

import httpx
import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

import scenerun.models  # noqa: F401
from scenerun.capabilities import Capabilities
from scenerun.config import Settings
from scenerun.database import Base, utcnow
from scenerun.models.project import Project, Scene, SceneUtterance
from scenerun.models.run import Run, RunPhase
from scenerun.models.user import User, UserApiKey
from scenerun.orchestrator.context import OrchestratorContext
from scenerun.schemas.run import RunConfig
from scenerun.services.audio_client import AudioJobClient
from scenerun.services.blob_store import LocalBlobStore
from scenerun.services.crypto import encrypt_api_key
from scenerun.services.format_client import FormatClient
from scenerun.services.image_client import ImageClient
from scenerun.services.tasks import TaskRunner
from scenerun.services.video_build_client import VideoBuildClient

TEST_SECRET = "test-credentials-secret"
PNG_BYTES = b"\x89PNG\r\n\x1a\nfake-image"


@pytest.fixture(scope="function")
def engine():
    """In-memory SQLite shared across sessions of one test."""
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture(scope="function")
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture(scope="function")
def test_db(session_factory):
    """Create a test database session for each test."""
    db = session_factory()
    yield db
    db.close()


@pytest.fixture
def test_settings(tmp_path):
    return Settings(
        DATABASE_URL="sqlite://",
        FORMAT_SERVICE_URL="http://format.test",
        AUDIO_SERVICE_URL="http://audio.test",
        IMAGE_API_BASE_URL="http://images.test/v1beta",
        VIDEO_BUILD_API_URL="http://builds.test/api",
        VIDEO_BUILD_ENABLED=True,
        VIDEO_BUILD_WEBHOOK_SECRET="whsec-test",
        SYSTEM_IMAGE_API_KEY="system-key",
        CREDENTIALS_ENCRYPTION_KEY=TEST_SECRET,
        BLOB_STORE_ROOT=str(tmp_path / "blobs"),
    )


# ----------------------------------------------------------------------
# Background work
# ----------------------------------------------------------------------


class RecordingTaskRunner(TaskRunner):
    """Holds submitted work so a test can run it, or drop it like a killed host."""

    def __init__(self):
        self.submitted: List[tuple] = []

    def submit(self, fn, *args, **kwargs) -> None:
        self.submitted.append((fn, args, kwargs))

    def methods(self) -> List[str]:
        # run_in_session(ctx, handler_cls, method, *args)
        return [f"{args[1].__name__}.{args[2]}" for _, args, _ in self.submitted]

    def run_all(self) -> None:
        pending, self.submitted = self.submitted, []
        for fn, args, kwargs in pending:
            fn(*args, **kwargs)

    def drop_all(self) -> None:
        self.submitted = []


@pytest.fixture
def tasks():
    return RecordingTaskRunner()


# ----------------------------------------------------------------------
# Collaborator fakes served through httpx.MockTransport
# ----------------------------------------------------------------------


class FakeFormatService:
    def __init__(self):
        self.statuses: Dict[int, Dict[str, Any]] = {}
        self.started: List[int] = []
        self.start_status = 202

    def handler(self, request: httpx.Request) -> httpx.Response:
        parts = request.url.path.strip("/").split("/")
        project_id = int(parts[1])
        if request.method == "POST":
            self.started.append(project_id)
            if self.start_status < 400:
                self.statuses.setdefault(project_id, {"status": "running", "chunks": {"total": 3, "done": 0}})
            return httpx.Response(self.start_status, json={})
        if project_id not in self.statuses:
            return httpx.Response(404, json={})
        return httpx.Response(200, json=self.statuses[project_id])


class FakeAudioService:
    def __init__(self):
        self.jobs: Dict[str, Dict[str, Any]] = {}
        self.latest: Dict[int, str] = {}
        self.started: List[int] = []
        self.canceled: List[str] = []

    def add_job(self, project_id: int, status: str = "queued") -> str:
        job_id = f"job-{len(self.jobs) + 1}"
        self.jobs[job_id] = {"job_id": job_id, "status": status, "total_utterances": 4, "processed_utterances": 0}
        self.latest[project_id] = job_id
        return job_id

    def handler(self, request: httpx.Request) -> httpx.Response:
        parts = request.url.path.strip("/").split("/")
        if parts[0] == "projects" and parts[-1] == "bulk-generate":
            project_id = int(parts[1])
            self.started.append(project_id)
            return httpx.Response(201, json={"job_id": self.add_job(project_id)})
        if parts[0] == "projects" and parts[-1] == "bulk-status":
            job_id = self.latest.get(int(parts[1]))
            if job_id is None:
                return httpx.Response(404, json={})
            return httpx.Response(200, json={"job": self.jobs[job_id]})
        if parts[-1] == "cancel":
            self.canceled.append(parts[2])
            self.jobs[parts[2]]["status"] = "canceled"
            return httpx.Response(200, json={})
        job = self.jobs.get(parts[2])
        if job is None:
            return httpx.Response(404, json={})
        return httpx.Response(200, json=job)


class FakeImageProvider:
    """Answers queued responses in order, then succeeds."""

    def __init__(self):
        self.queue: List[httpx.Response] = []
        self.requests: List[Dict[str, Any]] = []
        # Called while the request is in flight
        self.on_request: Optional[Callable[[], None]] = None

    @staticmethod
    def success() -> httpx.Response:
        data = base64.b64encode(PNG_BYTES).decode("ascii")
        return httpx.Response(
            200,
            json={"candidates": [{"content": {"parts": [{"inlineData": {"mimeType": "image/png", "data": data}}]}}]},
        )

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append({"headers": dict(request.headers), "json": json.loads(request.content)})
        if self.on_request:
            self.on_request()
        if self.queue:
            return self.queue.pop(0)
        return self.success()


class FakeVideoBuildAPI:
    def __init__(self):
        # (status, json) answered for every call
        self.preflight = (200, {"is_ready": True, "missing": []})
        self.create = (201, {"build": {"id": 501, "status": "submitted"}})
        self.calls: List[str] = []
        self.auth_headers: List[Optional[str]] = []

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.auth_headers.append(request.headers.get("Authorization"))
        if request.url.path.endswith("/preflight"):
            self.calls.append("preflight")
            return httpx.Response(self.preflight[0], json=self.preflight[1])
        self.calls.append("create")
        return httpx.Response(self.create[0], json=self.create[1])


@pytest.fixture
def format_service():
    return FakeFormatService()


@pytest.fixture
def audio_service():
    return FakeAudioService()


@pytest.fixture
def image_provider():
    return FakeImageProvider()


@pytest.fixture
def build_api():
    return FakeVideoBuildAPI()


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def ctx(test_settings, session_factory, tasks, format_service, audio_service, image_provider, build_api, sleeps):
    return OrchestratorContext(
        settings=test_settings,
        capabilities=Capabilities(schema_revision="001", video_build_enabled=True, system_key_available=True),
        session_factory=session_factory,
        tasks=tasks,
        blob_store=LocalBlobStore(test_settings.BLOB_STORE_ROOT),
        format_client=FormatClient(test_settings, transport=httpx.MockTransport(format_service.handler)),
        image_client=ImageClient(
            test_settings,
            transport=httpx.MockTransport(image_provider.handler),
            sleep=sleeps.append,
        ),
        audio_client=AudioJobClient(test_settings, transport=httpx.MockTransport(audio_service.handler)),
        video_build_client=VideoBuildClient(test_settings, transport=httpx.MockTransport(build_api.handler)),
    )


# ----------------------------------------------------------------------
# Data factory
# ----------------------------------------------------------------------


class Factory:
    def __init__(self, db):
        self.db = db

    def user(self, email: str = "writer@example.com", sponsor_id: Optional[int] = None) -> User:
        user = User(email=email, api_sponsor_id=sponsor_id)
        self.db.add(user)
        self.db.commit()
        return user

    def api_key(self, user: User, key: str, provider: str = "gemini", active: bool = True) -> UserApiKey:
        row = UserApiKey(
            user_id=user.id,
            provider=provider,
            encrypted_key=encrypt_api_key(key, TEST_SECRET),
            is_active=active,
        )
        self.db.add(row)
        self.db.commit()
        return row

    def project(self, user: User, scenes: int = 3, utterances: int = 1) -> Project:
        project = Project(user_id=user.id, title="Story", source_text="x" * 200, status="uploaded")
        self.db.add(project)
        self.db.flush()
        for idx in range(scenes):
            self.scene(project, idx, utterances=utterances)
        self.db.commit()
        return project

    def scene(self, project: Project, idx: int, utterances: int = 1, hidden: bool = False) -> Scene:
        scene = Scene(
            project_id=project.id,
            idx=idx,
            title=f"Scene {idx}",
            dialogue=f"Line {idx}",
            image_prompt=f"A quiet harbor at dawn, shot {idx}",
            is_hidden=hidden,
        )
        self.db.add(scene)
        self.db.flush()
        for order in range(utterances):
            self.db.add(SceneUtterance(scene_id=scene.id, order_no=order, text=f"Narration {idx}.{order}"))
        self.db.commit()
        return scene

    def run(self, user: User, project: Project, phase: RunPhase = RunPhase.FORMATTING, **fields) -> Run:
        config = fields.pop("config", None) or RunConfig(target_scene_count=3).model_dump()
        run = Run(
            project_id=project.id,
            started_by_user_id=user.id,
            started_from="api",
            phase=RunPhase(phase).value,
            config=config,
            retry_count=fields.pop("retry_count", 0),
            phase_changed_at=fields.pop("phase_changed_at", utcnow()),
            **fields,
        )
        self.db.add(run)
        self.db.commit()
        return run


@pytest.fixture
def factory(test_db):
    return Factory(test_db)
