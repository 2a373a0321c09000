"""Tests for the ready phase and the three-gate video build trigger."""

import dataclasses
from datetime import timedelta

import pytest

from scenerun.capabilities import Capabilities
from scenerun.database import utcnow
from scenerun.models.run import RunPhase
from scenerun.models.video_build import VideoBuild
from scenerun.orchestrator import video_build
from scenerun.orchestrator.advance import AdvanceDriver
from scenerun.orchestrator.video_build import ReadyHandler
from scenerun.services.run_store import RunStore


@pytest.fixture
def setup(factory):
    user = factory.user()
    project = factory.project(user)
    run = factory.run(user, project, RunPhase.READY)
    return user, project, run


def _trigger(ctx, db, run, auth="Bearer token"):
    return ReadyHandler(ctx, db).trigger(run.id, auth)


def test_creates_build_with_forwarded_credentials(ctx, test_db, setup, build_api):
    user, project, run = setup

    assert _trigger(ctx, test_db, run) == video_build.CREATED

    assert build_api.calls == ["preflight", "create"]
    assert build_api.auth_headers == ["Bearer token", "Bearer token"]
    stored = RunStore(test_db).get(run.id)
    assert stored.video_build_id == 501
    assert stored.video_build_error is None
    assert stored.video_build_attempted_at is not None
    assert test_db.get(VideoBuild, 501).project_id == project.id


def test_attached_run_is_skipped(ctx, test_db, factory, build_api):
    user = factory.user()
    run = factory.run(user, factory.project(user), RunPhase.READY, video_build_id=42)

    assert _trigger(ctx, test_db, run) == video_build.ALREADY_ATTACHED
    assert build_api.calls == []


def test_active_build_of_project_is_attached(ctx, test_db, setup, build_api):
    user, project, run = setup
    test_db.add(VideoBuild(id=77, project_id=project.id, status="rendering"))
    test_db.commit()

    assert _trigger(ctx, test_db, run) == video_build.ATTACHED_EXISTING
    assert build_api.calls == []
    assert RunStore(test_db).get(run.id).video_build_id == 77


def test_preflight_auth_failure_is_silent(ctx, test_db, setup, build_api):
    user, project, run = setup
    build_api.preflight = (403, {"error": {"code": "FORBIDDEN"}})

    assert _trigger(ctx, test_db, run) == video_build.PREFLIGHT_AUTH_SKIPPED

    assert build_api.calls == ["preflight"]
    stored = RunStore(test_db).get(run.id)
    assert stored.video_build_id is None
    assert stored.video_build_error == "PREFLIGHT_AUTH_SKIPPED"


def test_preflight_not_ready_is_recorded(ctx, test_db, setup, build_api):
    user, project, run = setup
    build_api.preflight = (200, {"is_ready": False, "missing": ["scene_3_audio"]})

    assert _trigger(ctx, test_db, run) == video_build.PREFLIGHT_NOT_READY
    assert RunStore(test_db).get(run.id).video_build_error == "PREFLIGHT_NOT_READY: scene_3_audio"


def test_conflict_recovers_existing_build(ctx, test_db, setup, build_api):
    user, project, run = setup
    build_api.create = (409, {"error": {"code": "BUILD_IN_PROGRESS", "details": {"existing_build_id": 777}}})

    assert _trigger(ctx, test_db, run) == video_build.RECOVERED
    assert RunStore(test_db).get(run.id).video_build_id == 777


def test_create_failure_starts_cooldown(ctx, test_db, setup, build_api):
    user, project, run = setup
    build_api.create = (500, {"error": "render farm down"})

    assert _trigger(ctx, test_db, run) == video_build.CREATE_FAILED
    assert RunStore(test_db).get(run.id).video_build_error.startswith("BUILD_CREATE_FAILED")

    assert _trigger(ctx, test_db, run) == video_build.COOLDOWN
    assert build_api.calls == ["preflight", "create"]


def test_cooldown_expires(ctx, test_db, factory, build_api):
    user = factory.user()
    run = factory.run(
        user,
        factory.project(user),
        RunPhase.READY,
        video_build_error="BUILD_CREATE_FAILED: boom",
        video_build_attempted_at=utcnow() - timedelta(minutes=31),
    )

    assert _trigger(ctx, test_db, run) == video_build.CREATED


def test_trigger_rechecks_phase(ctx, test_db, factory, build_api):
    user = factory.user()
    run = factory.run(user, factory.project(user), RunPhase.CANCELED)

    assert _trigger(ctx, test_db, run) == video_build.SKIPPED_PHASE
    assert build_api.calls == []


def test_ready_step_schedules_trigger(ctx, test_db, setup, tasks):
    user, project, run = setup

    result = ReadyHandler(ctx, test_db, auth_header="Bearer t").execute(run)

    assert result.action == "video_build_scheduled"
    assert result.new_phase == "ready"
    assert tasks.methods() == ["ReadyHandler.trigger"]


def test_ready_step_waits_when_disabled(ctx, test_db, setup, tasks):
    user, project, run = setup
    disabled = dataclasses.replace(
        ctx, capabilities=Capabilities(schema_revision="001", video_build_enabled=False, system_key_available=True)
    )

    result = ReadyHandler(disabled, test_db).execute(run)

    assert result.action == "waiting"
    assert tasks.submitted == []


def test_ready_step_schedules_once(ctx, test_db, setup, tasks):
    user, project, run = setup
    driver = AdvanceDriver(ctx, test_db)

    first = driver.advance(project.id, user.id, "Bearer t")
    second = driver.advance(project.id, user.id, "Bearer t")

    assert first.action == "video_build_scheduled"
    assert second.action == "waiting"
    assert second.message == "Video build already scheduled"
    assert tasks.methods() == ["ReadyHandler.trigger"]
    assert RunStore(test_db).get(run.id).video_build_attempted_at is not None


def test_unfinished_attempt_is_rescheduled(ctx, test_db, factory, tasks):
    user = factory.user()
    project = factory.project(user)
    run = factory.run(user, project, RunPhase.READY, video_build_attempted_at=utcnow() - timedelta(minutes=5))

    result = ReadyHandler(ctx, test_db).execute(run)

    assert result.action == "video_build_scheduled"
    assert tasks.methods() == ["ReadyHandler.trigger"]


def test_scheduled_trigger_still_builds(ctx, test_db, setup, tasks, build_api):
    user, project, run = setup
    ReadyHandler(ctx, test_db, auth_header="Bearer t").execute(run)

    tasks.run_all()

    assert build_api.calls == ["preflight", "create"]
    assert RunStore(test_db).get(run.id).video_build_id == 501
