"""Client for the bulk narration job service."""

import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

import httpx

from scenerun.config import Settings, settings as default_settings
from scenerun.errors import UpstreamError

logger = logging.getLogger(__name__)

JOB_ACTIVE_STATUSES = ("queued", "running")


@dataclass
class AudioJob:
    job_id: str
    status: str  # 'queued', 'running', 'completed', 'failed', 'canceled'
    total_utterances: int = 0
    processed: int = 0
    failed: int = 0
    error: Optional[str] = None

    @classmethod
    def from_json(cls, data: Dict[str, Any]) -> "AudioJob":
        return cls(
            job_id=str(data.get("job_id") or data.get("id")),
            status=data.get("status", "queued"),
            total_utterances=int(data.get("total_utterances") or 0),
            processed=int(data.get("processed_utterances") or data.get("processed") or 0),
            failed=int(data.get("failed_utterances") or data.get("failed") or 0),
            error=data.get("last_error") or data.get("error"),
        )


class AudioJobClient:
    def __init__(self, settings: Settings = default_settings, transport: Optional[httpx.BaseTransport] = None):
        self.base_url = settings.AUDIO_SERVICE_URL
        self.timeout = settings.AUDIO_TIMEOUT_SECONDS
        self._transport = transport

    def _request(self, method: str, url: str, **kwargs) -> httpx.Response:
        try:
            with httpx.Client(base_url=self.base_url, timeout=self.timeout, transport=self._transport) as client:
                return client.request(method, url, **kwargs)
        except httpx.HTTPError as e:
            raise UpstreamError(f"Audio service unreachable: {e}", permanent=False) from e

    def start_job(self, project_id: int, voice: Dict[str, str], user_id: Optional[int] = None) -> str:
        """
        Start a bulk narration job for every visible scene of the project.

        Returns:
            The job id. If the service reports a job already running (409),
            that job's id is returned instead of creating a second one.
        """
        response = self._request(
            "POST",
            f"/projects/{project_id}/audio/bulk-generate",
            json={"mode": "missing", "voice": voice, "requested_by_user_id": user_id},
        )
        if response.status_code == 409:
            existing = (response.json() or {}).get("job_id")
            if existing:
                logger.info(f"Audio job already active for project {project_id}: {existing}")
                return str(existing)
        if response.status_code >= 400:
            raise UpstreamError(f"Audio job start failed with HTTP {response.status_code}", upstream_status=response.status_code)
        job_id = str(response.json()["job_id"])
        logger.info(f"Started audio job {job_id} for project {project_id}")
        return job_id

    def get_job(self, job_id: str) -> AudioJob:
        response = self._request("GET", f"/audio/jobs/{job_id}")
        if response.status_code >= 400:
            raise UpstreamError(f"Audio job lookup failed with HTTP {response.status_code}", upstream_status=response.status_code)
        return AudioJob.from_json(response.json())

    def find_latest_job(self, project_id: int) -> Optional[AudioJob]:
        """Most recent job of the project, or None."""
        response = self._request("GET", f"/projects/{project_id}/audio/bulk-status")
        if response.status_code == 404:
            return None
        if response.status_code >= 400:
            raise UpstreamError(f"Audio job lookup failed with HTTP {response.status_code}", upstream_status=response.status_code)
        data = response.json() or {}
        job = data.get("job") if "job" in data else data
        if not job:
            return None
        return AudioJob.from_json(job)

    def cancel_job(self, job_id: str) -> bool:
        response = self._request("POST", f"/audio/jobs/{job_id}/cancel")
        return response.status_code < 400
