"""
Custom exception classes and error handling.

Two families live here:

* ``APIException`` - HTTP-facing errors raised directly by routers.
* ``CommitEngineError`` - domain errors raised by the commit engine
  (orchestrator, GitHub client, pattern mapper). They carry a stable
  machine-readable ``error_code``, a human message and optional details, and
  are translated to JSON responses by the handler registered in ``main``.
"""
from fastapi import HTTPException, status
from typing import Optional, Dict, Any


class APIException(HTTPException):
    """Base API exception with consistent structure."""

    def __init__(
        self,
        status_code: int,
        detail: str,
        error_code: Optional[str] = None,
        headers: Optional[Dict[str, Any]] = None
    ):
        super().__init__(status_code=status_code, detail=detail, headers=headers)
        self.error_code = error_code


class NotFoundError(APIException):
    """Resource not found."""

    def __init__(self, resource: str, identifier: str):
        super().__init__(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"{resource} not found: {identifier}",
            error_code="NOT_FOUND"
        )


class UnauthorizedError(APIException):
    """Authentication required."""

    def __init__(self, detail: str = "Authentication required"):
        super().__init__(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=detail,
            error_code="UNAUTHORIZED",
            headers={"WWW-Authenticate": "Bearer"}
        )


# ---------------------------------------------------------------------------
# Commit engine errors
# ---------------------------------------------------------------------------


class CommitEngineError(Exception):
    """Base class for commit engine failures."""

    error_code = "COMMIT_ENGINE_ERROR"
    http_status = status.HTTP_500_INTERNAL_SERVER_ERROR

    def __init__(self, message: str, *, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        return {
            "code": self.error_code,
            "message": self.message,
            "details": self.details,
        }


class UserNotFoundError(CommitEngineError):
    error_code = "USER_NOT_FOUND"
    http_status = status.HTTP_404_NOT_FOUND


class NoActiveRepositoryError(CommitEngineError):
    error_code = "NO_ACTIVE_REPOSITORY"
    http_status = status.HTTP_400_BAD_REQUEST

    def __init__(self, message: str = "No active repository found", **kwargs):
        super().__init__(message, **kwargs)


class AlreadyCommittedTodayError(CommitEngineError):
    """Idempotent success marker; never stored as a failure."""

    error_code = "ALREADY_COMMITTED_TODAY"
    http_status = status.HTTP_200_OK

    def __init__(self, message: str = "Already committed today", **kwargs):
        super().__init__(message, **kwargs)


class TrialExpiredError(CommitEngineError):
    error_code = "TRIAL_EXPIRED"
    http_status = status.HTTP_403_FORBIDDEN

    def __init__(self, message: str = "Trial period has expired. Upgrade to continue using auto commits.", **kwargs):
        super().__init__(message, **kwargs)


class TierRequiredError(CommitEngineError):
    error_code = "TIER_REQUIRED"
    http_status = status.HTTP_403_FORBIDDEN


class CommitValidationError(CommitEngineError):
    """Pattern text or date range rejected before any record is created."""

    error_code = "VALIDATION_ERROR"
    http_status = status.HTTP_400_BAD_REQUEST


class RemoteError(CommitEngineError):
    """Failure reported by (or while talking to) the hosted git provider."""

    http_status = status.HTTP_502_BAD_GATEWAY

    def __init__(self, message: str, *, status_code: Optional[int] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.status_code = status_code


class RemoteAuthError(RemoteError):
    error_code = "REMOTE_AUTH_FAILURE"
    http_status = status.HTTP_401_UNAUTHORIZED


class RemoteNotFoundError(RemoteError):
    error_code = "REMOTE_NOT_FOUND"
    http_status = status.HTTP_404_NOT_FOUND


class RemoteConflictError(RemoteError):
    """Non-fast-forward ref update; recoverable at the item level."""

    error_code = "REMOTE_CONFLICT"
    http_status = status.HTTP_409_CONFLICT


class RemoteRateLimitedError(RemoteError):
    error_code = "REMOTE_RATE_LIMITED"
    http_status = status.HTTP_429_TOO_MANY_REQUESTS

    def __init__(self, message: str, *, retry_after_s: int, **kwargs):
        super().__init__(message, **kwargs)
        self.retry_after_s = int(retry_after_s)
        self.details.setdefault("retry_after_s", self.retry_after_s)


class UnknownRemoteError(RemoteError):
    error_code = "UNKNOWN_REMOTE_FAILURE"


class BulkRunAbortedError(CommitEngineError):
    error_code = "BULK_RUN_ABORTED"
    http_status = status.HTTP_502_BAD_GATEWAY


class BulkRunInProgressError(CommitEngineError):
    """Another bulk run for the same user holds the lock."""

    error_code = "BULK_RUN_IN_PROGRESS"
    http_status = status.HTTP_409_CONFLICT
