"""HTTP tests for the run routes."""

import pytest
from fastapi.testclient import TestClient

from scenerun.database import get_db
from scenerun.main import app
from scenerun.models.run import RunPhase

STORY = "A retired baker opened her shop one last time for the children of the village. " * 2


@pytest.fixture
def client(ctx, session_factory):
    def override_get_db():
        db = session_factory()
        try:
            yield db
        finally:
            db.close()

    app.state.context = ctx
    app.dependency_overrides[get_db] = override_get_db
    yield TestClient(app)
    app.dependency_overrides.clear()


def _headers(user):
    return {"X-User-Id": str(user.id)}


def test_health(client):
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json() == {"status": "healthy"}


def test_start_run(client, factory, tasks):
    user = factory.user()

    response = client.post("/run/start", json={"text": STORY, "target_scene_count": 4}, headers=_headers(user))

    assert response.status_code == 201
    body = response.json()
    assert body["phase"] == "formatting"
    assert body["config"]["target_scene_count"] == 4
    assert tasks.methods() == ["FormattingHandler.kickoff"]


def test_start_requires_identity(client):
    response = client.post("/run/start", json={"text": STORY})

    assert response.status_code == 401
    assert response.json()["error"]["code"] == "UNAUTHORIZED"


def test_start_rejects_short_text(client, factory):
    user = factory.user()

    response = client.post("/run/start", json={"text": "too short"}, headers=_headers(user))

    assert response.status_code == 400
    assert response.json()["error"]["code"] == "INVALID_REQUEST"


def test_second_start_conflicts(client, factory):
    user = factory.user()
    client.post("/run/start", json={"text": STORY}, headers=_headers(user))

    response = client.post("/run/start", json={"text": STORY}, headers=_headers(user))

    assert response.status_code == 409
    error = response.json()["error"]
    assert error["code"] == "CONFLICT"
    assert error["details"]["phase"] == "formatting"


def test_active_run(client, factory):
    user = factory.user()
    assert client.get("/run/active", headers=_headers(user)).status_code == 404

    project = factory.project(user)
    run = factory.run(user, project, RunPhase.AWAITING_READY)

    response = client.get("/run/active", headers=_headers(user))
    assert response.status_code == 200
    assert response.json() == {"run_id": run.id, "project_id": project.id, "phase": "awaiting_ready"}


def test_advance_and_status(client, factory):
    user = factory.user()
    project = factory.project(user, scenes=2)
    run = factory.run(user, project, RunPhase.AWAITING_READY)

    response = client.post(f"/run/{project.id}/advance", headers=_headers(user))
    assert response.status_code == 200
    assert response.json()["action"] == "transitioned"
    assert response.json()["new_phase"] == "generating_images"

    status = client.get(f"/run/{project.id}/status", headers=_headers(user))
    assert status.status_code == 200
    body = status.json()
    assert body["run_id"] == run.id
    assert body["phase"] == "generating_images"
    assert body["locked_until"] is not None
    assert body["progress"]["images"]["pending"] == 2


def test_other_users_run_is_forbidden(client, factory):
    owner = factory.user("owner@example.com")
    other = factory.user("other@example.com")
    project = factory.project(owner)
    factory.run(owner, project, RunPhase.FORMATTING)

    response = client.post(f"/run/{project.id}/advance", headers=_headers(other))

    assert response.status_code == 403
    assert response.json()["error"]["code"] == "FORBIDDEN"


def test_cancel_then_list_and_archive(client, factory):
    user = factory.user()
    project = factory.project(user)
    factory.run(user, project, RunPhase.AWAITING_READY)

    cancel = client.post(f"/run/{project.id}/cancel", headers=_headers(user))
    assert cancel.json()["new_phase"] == "canceled"

    archive = client.post(f"/run/{project.id}/archive", headers=_headers(user))
    assert archive.status_code == 200
    assert archive.json()["is_archived"] is True

    assert client.get("/run/list", headers=_headers(user)).json() == []
    listed = client.get("/run/list?include_archived=true", headers=_headers(user)).json()
    assert [r["phase"] for r in listed] == ["canceled"]


def test_retry_non_failed_run_is_rejected(client, factory):
    user = factory.user()
    project = factory.project(user)
    factory.run(user, project, RunPhase.READY)

    response = client.post(f"/run/{project.id}/retry", headers=_headers(user))

    assert response.status_code == 400
    assert response.json()["error"]["code"] == "INVALID_PHASE"
