"""Error taxonomy shared by the orchestrator, its collaborators and the HTTP layer."""

from typing import Any, Dict, Optional


class OrchestratorError(Exception):
    """Base error carrying a stable code and an HTTP status."""

    code = "INTERNAL_ERROR"
    status_code = 500

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None, code: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}
        if code:
            self.code = code

    def to_dict(self) -> Dict[str, Any]:
        return {"error": {"code": self.code, "message": self.message, "details": self.details}}


class ValidationError(OrchestratorError):
    """Bad input. Never mutates state."""

    code = "INVALID_REQUEST"
    status_code = 400


class UnauthorizedError(OrchestratorError):
    code = "UNAUTHORIZED"
    status_code = 401


class ForbiddenError(OrchestratorError):
    """Caller does not own the run."""

    code = "FORBIDDEN"
    status_code = 403


class NotFoundError(OrchestratorError):
    code = "NOT_FOUND"
    status_code = 404


class ConflictError(OrchestratorError):
    """Lock held or already transitioned. Always safe to retry later."""

    code = "CONFLICT"
    status_code = 409


class InvalidPhaseError(OrchestratorError):
    code = "INVALID_PHASE"
    status_code = 400


class RetryExhaustedError(OrchestratorError):
    code = "RETRY_EXHAUSTED"
    status_code = 400


class NoCredentialError(OrchestratorError):
    """No usable provider key in the sponsor/user/system chain."""

    code = "NO_API_KEY"
    status_code = 402


class UpstreamError(OrchestratorError):
    """A collaborator answered with an error status or could not be reached.

    4xx answers are permanent; 5xx and transport errors are transient.
    """

    code = "UPSTREAM_ERROR"
    status_code = 502

    def __init__(
        self,
        message: str,
        upstream_status: Optional[int] = None,
        permanent: Optional[bool] = None,
        body: Any = None,
    ):
        super().__init__(message, details={"upstream_status": upstream_status})
        self.upstream_status = upstream_status
        self.body = body
        if permanent is None:
            permanent = upstream_status is not None and 400 <= upstream_status < 500
        self.permanent = permanent


class RateLimitError(UpstreamError):
    """Provider answered 429."""

    code = "RATE_LIMITED"

    def __init__(self, message: str, retry_after: Optional[float] = None):
        super().__init__(message, upstream_status=429, permanent=False)
        self.retry_after = retry_after


class GenerationTimeoutError(UpstreamError):
    """A single provider call exceeded its timeout."""

    code = "GENERATION_TIMEOUT"

    def __init__(self, message: str):
        super().__init__(message, upstream_status=None, permanent=False)


class GenerationFailedError(OrchestratorError):
    """Scene-level generation failure, retried at the run level."""

    code = "GENERATION_FAILED"
    status_code = 502


class PolicyViolationError(GenerationFailedError):
    """Provider refused the prompt on content-policy grounds."""

    code = "POLICY_VIOLATION"
