"""Client for the downstream video-build API."""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import httpx

from scenerun.config import Settings, settings as default_settings
from scenerun.errors import UpstreamError

logger = logging.getLogger(__name__)


@dataclass
class PreflightResult:
    is_ready: bool
    missing: List[str] = field(default_factory=list)


@dataclass
class CreateBuildResult:
    build_id: int
    status: str
    recovered: bool = False  # id recovered from a 409 instead of a new build


class VideoBuildClient:
    """Calls are made with the caller's own credentials, forwarded as-is."""

    def __init__(self, settings: Settings = default_settings, transport: Optional[httpx.BaseTransport] = None):
        self.base_url = settings.VIDEO_BUILD_API_URL.rstrip("/")
        self.timeout = settings.VIDEO_BUILD_TIMEOUT_SECONDS
        self._transport = transport

    def _request(self, method: str, url: str, auth_header: Optional[str], **kwargs) -> httpx.Response:
        headers = {"Authorization": auth_header} if auth_header else {}
        try:
            with httpx.Client(base_url=self.base_url, timeout=self.timeout, transport=self._transport) as client:
                return client.request(method, url, headers=headers, **kwargs)
        except httpx.HTTPError as e:
            raise UpstreamError(f"Video build API unreachable: {e}", permanent=False) from e

    @staticmethod
    def _error(response: httpx.Response, what: str) -> UpstreamError:
        try:
            body = response.json()
        except ValueError:
            body = None
        return UpstreamError(f"{what} failed with HTTP {response.status_code}", upstream_status=response.status_code, body=body)

    def preflight(self, project_id: int, auth_header: Optional[str]) -> PreflightResult:
        response = self._request("GET", f"/projects/{project_id}/video-builds/preflight", auth_header)
        if response.status_code >= 400:
            raise self._error(response, "Preflight")
        data = response.json() or {}
        return PreflightResult(is_ready=bool(data.get("is_ready")), missing=list(data.get("missing") or []))

    def create_build(self, project_id: int, auth_header: Optional[str], build_settings: Dict[str, Any]) -> CreateBuildResult:
        """Request a build. A 409 naming an existing build is recovered, not raised."""
        response = self._request(
            "POST",
            f"/projects/{project_id}/video-builds",
            auth_header,
            json={"build_settings": build_settings},
        )
        if response.status_code == 409:
            existing = _existing_build_id(response)
            if existing is not None:
                logger.info(f"Build already exists for project {project_id}: {existing}")
                return CreateBuildResult(build_id=existing, status="submitted", recovered=True)
        if response.status_code >= 400:
            raise self._error(response, "Build creation")
        data = response.json() or {}
        build = data.get("build") or data
        return CreateBuildResult(build_id=int(build["id"]), status=build.get("status", "submitted"))


def _existing_build_id(response: httpx.Response) -> Optional[int]:
    try:
        data = response.json() or {}
    except ValueError:
        return None
    error = data.get("error") or {}
    details = error.get("details") or {} if isinstance(error, dict) else {}
    for candidate in (data.get("existing_build_id"), details.get("existing_build_id"), data.get("build_id")):
        if candidate is not None:
            try:
                return int(candidate)
            except (TypeError, ValueError):
                continue
    return None
