"""Run routes."""

import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, Header
from sqlalchemy.orm import Session

from scenerun.database import get_db
from scenerun.dependencies import get_context, get_current_user_id
from scenerun.models.run import Run
from scenerun.orchestrator.context import OrchestratorContext
from scenerun.orchestrator.service import RunService
from scenerun.schemas.run import (
    ActiveRunResponse,
    AdvanceResponse,
    RunConfig,
    RunStartRequest,
    RunStartResponse,
    RunStatusResponse,
    RunSummary,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/run", tags=["run"])


def get_service(
    ctx: OrchestratorContext = Depends(get_context),
    db: Session = Depends(get_db),
) -> RunService:
    return RunService(ctx, db)


def _summary(run: Run) -> RunSummary:
    return RunSummary(
        run_id=run.id,
        project_id=run.project_id,
        phase=run.phase,
        is_archived=run.is_archived,
        error_code=run.error_code,
        created_at=run.created_at,
        completed_at=run.completed_at,
    )


@router.post("/start", response_model=RunStartResponse, status_code=201)
def start_run(
    data: RunStartRequest,
    user_id: int = Depends(get_current_user_id),
    service: RunService = Depends(get_service),
):
    """Create a project from text and start its run."""
    run = service.start(user_id, data)
    return RunStartResponse(
        run_id=run.id,
        project_id=run.project_id,
        phase=run.phase,
        config=RunConfig(**run.config),
    )


@router.get("/active", response_model=ActiveRunResponse)
def get_active_run(
    user_id: int = Depends(get_current_user_id),
    service: RunService = Depends(get_service),
):
    """The caller's non-terminal run."""
    run = service.get_active(user_id)
    return ActiveRunResponse(run_id=run.id, project_id=run.project_id, phase=run.phase)


@router.get("/list", response_model=List[RunSummary])
def list_runs(
    include_archived: bool = False,
    user_id: int = Depends(get_current_user_id),
    service: RunService = Depends(get_service),
):
    """List the caller's runs, newest first."""
    return [_summary(r) for r in service.list_runs(user_id, include_archived=include_archived)]


@router.get("/{project_id}/status", response_model=RunStatusResponse)
def get_run_status(
    project_id: int,
    user_id: int = Depends(get_current_user_id),
    service: RunService = Depends(get_service),
):
    return service.status(project_id, user_id)


@router.post("/{project_id}/advance", response_model=AdvanceResponse)
def advance_run(
    project_id: int,
    user_id: int = Depends(get_current_user_id),
    authorization: Optional[str] = Header(default=None),
    service: RunService = Depends(get_service),
):
    """Perform one step of the project's run."""
    return service.advance(project_id, user_id, auth_header=authorization).to_dict()


@router.post("/{project_id}/retry", response_model=AdvanceResponse)
def retry_run(
    project_id: int,
    user_id: int = Depends(get_current_user_id),
    service: RunService = Depends(get_service),
):
    return service.retry(project_id, user_id).to_dict()


@router.post("/{project_id}/cancel", response_model=AdvanceResponse)
def cancel_run(
    project_id: int,
    user_id: int = Depends(get_current_user_id),
    service: RunService = Depends(get_service),
):
    return service.cancel(project_id, user_id).to_dict()


@router.post("/{project_id}/archive", response_model=RunSummary)
def archive_run(
    project_id: int,
    user_id: int = Depends(get_current_user_id),
    service: RunService = Depends(get_service),
):
    return _summary(service.set_archived(project_id, user_id, True))


@router.post("/{project_id}/unarchive", response_model=RunSummary)
def unarchive_run(
    project_id: int,
    user_id: int = Depends(get_current_user_id),
    service: RunService = Depends(get_service),
):
    return _summary(service.set_archived(project_id, user_id, False))
