"""Tests for run start, retry, cancel, archive and status."""

import pytest

from scenerun.errors import (
    ConflictError,
    InvalidPhaseError,
    RetryExhaustedError,
    UnauthorizedError,
    ValidationError,
)
from scenerun.models.project import ImageGeneration, Project
from scenerun.models.run import Run, RunPhase
from scenerun.models.style import Character, StylePreset
from scenerun.orchestrator.service import RunService
from scenerun.schemas.run import RunStartRequest
from scenerun.services.run_store import RunStore

STORY = "Two sisters walked the old canal path, trading stories about the houses they passed. " * 2


@pytest.fixture
def service(ctx, test_db):
    return RunService(ctx, test_db)


def test_start_creates_project_and_kicks_formatting(service, factory, test_db, tasks):
    user = factory.user()

    run = service.start(user.id, RunStartRequest(text=f"  {STORY}  ", title="Canal"))

    assert run.phase == "formatting"
    assert run.retry_count == 0
    assert run.config["target_scene_count"] == 5
    assert run.config["output_preset"] == "yt_long"
    assert run.config["narration_voice"] == {"provider": "google", "voice_id": "ja-JP-Neural2-B"}
    project = test_db.get(Project, run.project_id)
    assert project.title == "Canal"
    assert project.source_text == STORY.strip()
    assert tasks.methods() == ["FormattingHandler.kickoff"]


def test_start_rejects_second_active_run(service, factory):
    user = factory.user()
    first = service.start(user.id, RunStartRequest(text=STORY))

    with pytest.raises(ConflictError) as exc_info:
        service.start(user.id, RunStartRequest(text=STORY))

    assert exc_info.value.details["run_id"] == first.id
    assert exc_info.value.details["phase"] == "formatting"


def test_start_requires_known_user(service):
    with pytest.raises(UnauthorizedError):
        service.start(999, RunStartRequest(text=STORY))


def test_start_validates_style_and_characters(service, factory, test_db):
    user = factory.user()
    stranger = factory.user("stranger@example.com")
    retired = StylePreset(name="Retired", is_active=False)
    foreign = Character(user_id=stranger.id, name="Not yours")
    test_db.add_all([retired, foreign])
    test_db.commit()

    with pytest.raises(ValidationError):
        service.start(user.id, RunStartRequest(text=STORY, style_preset_id=retired.id))
    with pytest.raises(ValidationError) as exc_info:
        service.start(user.id, RunStartRequest(text=STORY, selected_character_ids=[foreign.id]))
    assert exc_info.value.details["character_ids"] == [foreign.id]
    assert test_db.query(Project).count() == 0


def test_concurrent_start_keeps_oldest_run(service, factory, test_db):
    user = factory.user()
    existing = factory.run(user, factory.project(user), RunPhase.FORMATTING)
    # Simulate the second request passing the pre-check before the first committed
    service.store.get_active_for_user = lambda user_id: None

    with pytest.raises(ConflictError) as exc_info:
        service.start(user.id, RunStartRequest(text=STORY))

    assert exc_info.value.details["run_id"] == existing.id
    assert [r.id for r in RunStore(test_db).list_for_user(user.id)] == [existing.id]
    test_db.expire_all()
    loser = test_db.query(Project).filter(Project.id != existing.project_id).one()
    assert loser.is_deleted is True
    assert test_db.query(Run).filter(Run.project_id == loser.id).one().phase == "canceled"


def test_retry_after_image_failure_rolls_back(service, factory, test_db):
    user = factory.user()
    project = factory.project(user, scenes=1)
    run = factory.run(
        user,
        project,
        RunPhase.FAILED,
        error_code="IMAGE_GENERATION_FAILED",
        error_message="boom",
        error_phase="generating_images",
    )
    test_db.add(ImageGeneration(scene_id=project.scenes[0].id, status="failed"))
    test_db.commit()

    result = service.retry(project.id, user.id)

    assert result.action == "retried"
    assert result.new_phase == "awaiting_ready"
    stored = RunStore(test_db).get(run.id)
    assert stored.retry_count == 1
    assert stored.error_code is None
    assert stored.error_phase is None
    assert test_db.query(ImageGeneration).one().is_active is False


def test_retry_after_audio_failure_clears_job(service, factory, test_db):
    user = factory.user()
    project = factory.project(user)
    run = factory.run(
        user,
        project,
        RunPhase.FAILED,
        error_code="AUDIO_GENERATION_FAILED",
        error_phase="generating_audio",
        audio_job_id="job-9",
    )

    result = service.retry(project.id, user.id)

    assert result.new_phase == "generating_images"
    assert RunStore(test_db).get(run.id).audio_job_id is None


def test_retry_after_format_failure_restarts_formatting(service, factory, tasks):
    user = factory.user()
    project = factory.project(user, scenes=0)
    factory.run(user, project, RunPhase.FAILED, error_code="FORMAT_FAILED", error_phase="formatting")

    result = service.retry(project.id, user.id)

    assert result.new_phase == "formatting"
    assert tasks.methods() == ["FormattingHandler.kickoff"]


def test_retry_limits(service, factory):
    user = factory.user()
    exhausted = factory.project(user)
    factory.run(user, exhausted, RunPhase.FAILED, error_phase="formatting", retry_count=3)
    running = factory.project(user)
    factory.run(user, running, RunPhase.GENERATING_AUDIO)

    with pytest.raises(RetryExhaustedError):
        service.retry(exhausted.id, user.id)
    with pytest.raises(InvalidPhaseError):
        service.retry(running.id, user.id)


def test_retry_blocked_by_another_active_run(service, factory):
    user = factory.user()
    failed = factory.project(user)
    factory.run(user, failed, RunPhase.FAILED, error_phase="formatting")
    factory.run(user, factory.project(user), RunPhase.FORMATTING)

    with pytest.raises(ConflictError):
        service.retry(failed.id, user.id)


def test_cancel_clears_lock_and_cancels_audio(service, factory, test_db, audio_service):
    user = factory.user()
    project = factory.project(user)
    job_id = audio_service.add_job(project.id, status="running")
    run = factory.run(user, project, RunPhase.GENERATING_AUDIO, audio_job_id=job_id)
    RunStore(test_db).acquire_lock(run.id, RunPhase.GENERATING_AUDIO, 300)

    result = service.cancel(project.id, user.id)

    assert result.action == "canceled"
    assert result.previous_phase == "generating_audio"
    stored = RunStore(test_db).get(run.id)
    assert stored.phase == "canceled"
    assert stored.locked_until is None
    assert audio_service.canceled == [job_id]


def test_cancel_finished_run_conflicts(service, factory):
    user = factory.user()
    project = factory.project(user)
    factory.run(user, project, RunPhase.READY)

    with pytest.raises(ConflictError):
        service.cancel(project.id, user.id)


def test_archive_hides_run_from_list(service, factory):
    user = factory.user()
    done = factory.project(user)
    factory.run(user, done, RunPhase.READY)
    active = factory.project(user)
    factory.run(user, active, RunPhase.FORMATTING)

    archived = service.set_archived(done.id, user.id, True)

    assert archived.is_archived is True
    assert [r.project_id for r in service.list_runs(user.id)] == [active.id]
    assert len(service.list_runs(user.id, include_archived=True)) == 2
    with pytest.raises(InvalidPhaseError):
        service.set_archived(active.id, user.id, True)

    service.set_archived(done.id, user.id, False)
    assert len(service.list_runs(user.id)) == 2


def test_status_reports_progress(service, factory, test_db):
    user = factory.user()
    project = factory.project(user, scenes=2, utterances=2)
    run = factory.run(user, project, RunPhase.GENERATING_IMAGES)
    test_db.add(ImageGeneration(scene_id=project.scenes[0].id, status="completed", blob_key="images/a.png"))
    test_db.commit()

    status = service.status(project.id, user.id)

    assert status["run_id"] == run.id
    assert status["phase"] == "generating_images"
    assert status["error"] is None
    progress = status["progress"]
    assert progress["scenes_ready"]["visible_count"] == 2
    assert progress["scenes_ready"]["utterances_ready"] is True
    assert progress["images"]["completed"] == 1
    assert progress["images"]["total"] == 2
    assert progress["audio"]["state"] == "pending"
    assert progress["audio"]["total_utterances"] == 4
    assert progress["video"]["build_id"] is None


def test_status_includes_error(service, factory):
    user = factory.user()
    project = factory.project(user)
    factory.run(user, project, RunPhase.FAILED, error_code="NO_API_KEY", error_message="No key", error_phase="generating_images")

    status = service.status(project.id, user.id)

    assert status["error"] == {"code": "NO_API_KEY", "message": "No key", "phase": "generating_images"}
