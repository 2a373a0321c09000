"""FastAPI dependencies shared by the routers."""

from typing import Optional

from fastapi import Header, Request

from scenerun.errors import UnauthorizedError
from scenerun.orchestrator.context import OrchestratorContext


def get_context(request: Request) -> OrchestratorContext:
    """Context built at startup and stored on the app."""
    return request.app.state.context


def get_current_user_id(x_user_id: Optional[str] = Header(default=None)) -> int:
    """Caller identity, set by the authenticating proxy in front of this service."""
    if not x_user_id:
        raise UnauthorizedError("Missing X-User-Id header")
    try:
        return int(x_user_id)
    except ValueError as e:
        raise UnauthorizedError("Invalid X-User-Id header") from e
