"""Client for the text-formatting service (start + poll)."""

import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

import httpx
from tenacity import retry, retry_if_exception, stop_after_attempt, wait_exponential

from scenerun.config import Settings, settings as default_settings
from scenerun.errors import UpstreamError

logger = logging.getLogger(__name__)

FORMAT_NOT_STARTED = "not_started"
FORMAT_RUNNING = "running"
FORMAT_DONE = "formatted"
FORMAT_FAILED = "failed"


@dataclass
class FormatStatus:
    status: str
    scene_count: int = 0
    chunks_total: int = 0
    chunks_done: int = 0
    chunks_failed: int = 0
    error: Optional[str] = None


def _transient(exc: BaseException) -> bool:
    return isinstance(exc, UpstreamError) and not exc.permanent


def _raise_for_status(response: httpx.Response, what: str) -> None:
    if response.status_code >= 400:
        try:
            body = response.json()
        except ValueError:
            body = response.text
        raise UpstreamError(f"{what} failed with HTTP {response.status_code}", upstream_status=response.status_code, body=body)


class FormatClient:
    """Wraps the format service. 4xx answers are permanent, 5xx are retried."""

    def __init__(self, settings: Settings = default_settings, transport: Optional[httpx.BaseTransport] = None):
        self.base_url = settings.FORMAT_SERVICE_URL
        self.timeout = settings.FORMAT_TIMEOUT_SECONDS
        self._transport = transport

    def _client(self) -> httpx.Client:
        return httpx.Client(base_url=self.base_url, timeout=self.timeout, transport=self._transport)

    def start(self, project_id: int, text: str, target_scene_count: int, split_mode: str = "ai") -> None:
        """Ask the service to format ``text`` into scenes of ``project_id``."""
        payload: Dict[str, Any] = {
            "text": text,
            "target_scene_count": target_scene_count,
            "split_mode": split_mode,
        }
        try:
            with self._client() as client:
                response = client.post(f"/projects/{project_id}/format", json=payload)
        except httpx.HTTPError as e:
            raise UpstreamError(f"Format service unreachable: {e}", permanent=False) from e
        if response.status_code == 409:
            logger.info(f"Formatting already running for project {project_id}")
            return
        _raise_for_status(response, "Format start")
        logger.info(f"Formatting started for project {project_id}")

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=1, max=5),
        retry=retry_if_exception(_transient),
        reraise=True,
    )
    def get_status(self, project_id: int) -> FormatStatus:
        """Current formatting state; a 404 means it was never started."""
        try:
            with self._client() as client:
                response = client.get(f"/projects/{project_id}/format/status")
        except httpx.HTTPError as e:
            raise UpstreamError(f"Format service unreachable: {e}", permanent=False) from e
        if response.status_code == 404:
            return FormatStatus(status=FORMAT_NOT_STARTED)
        _raise_for_status(response, "Format status")

        data = response.json()
        chunks = data.get("chunks") or {}
        return FormatStatus(
            status=data.get("status", FORMAT_RUNNING),
            scene_count=int(data.get("scene_count") or 0),
            chunks_total=int(chunks.get("total") or 0),
            chunks_done=int(chunks.get("done") or 0),
            chunks_failed=int(chunks.get("failed") or 0),
            error=data.get("error"),
        )
