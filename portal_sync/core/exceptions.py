"""Application exceptions."""

from typing import Any


class AppException(Exception):
    """Base application exception."""

    status_code = 500

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)


class SyncError(AppException):
    """Synchronization error.

    ``retryable`` tells the dispatcher whether another attempt may succeed.
    """

    retryable = False


class TerminalSyncError(SyncError):
    """Sync cannot succeed without operator action (bad payload, missing parent)."""

    retryable = False


class WorkspaceAPIError(SyncError):
    """External workspace API error."""

    retryable = False

    def __init__(
        self,
        message: str,
        details: dict[str, Any] | None = None,
        status_code: int | None = None,
    ):
        super().__init__(message, details)
        self.http_status = status_code


class WorkspaceRateLimitError(WorkspaceAPIError):
    """Workspace rate limit exceeded (HTTP 429)."""

    retryable = True

    def __init__(
        self,
        message: str,
        details: dict[str, Any] | None = None,
        status_code: int | None = 429,
        retry_after: float | None = None,
    ):
        super().__init__(message, details, status_code)
        self.retry_after = retry_after


class WorkspaceServerError(WorkspaceAPIError):
    """Workspace returned a 5xx response."""

    retryable = True


class WorkspaceTimeoutError(WorkspaceAPIError):
    """Workspace request timed out."""

    retryable = True


class WorkspaceConnectionError(WorkspaceAPIError):
    """Network failure talking to the workspace."""

    retryable = True


class WorkspaceNotFoundError(WorkspaceAPIError):
    """Workspace resource does not exist (or is no longer accessible)."""

    retryable = False


class WorkspaceValidationError(WorkspaceAPIError):
    """Workspace rejected the request payload (4xx)."""

    retryable = False


class WorkspaceAuthError(WorkspaceAPIError):
    """Workspace rejected the integration token."""

    retryable = False


class InvalidTaskError(AppException):
    """Task failed validation at enqueue time."""

    status_code = 400


class TaskNotFoundError(AppException):
    """No task with the given id is known to the store."""

    status_code = 404


class InvalidTaskTransitionError(AppException):
    """Task is not in a state that allows the requested transition."""

    status_code = 409


class EntityNotFoundError(AppException):
    """Domain record does not exist locally."""

    status_code = 404


class DatabaseError(AppException):
    """Database operation error."""

    pass


class ServiceNotInitializedError(AppException):
    """Sync service was not started (workspace not configured or disabled)."""

    status_code = 503


def is_retryable(error: BaseException) -> bool:
    """Classify an executor failure.

    Sync errors carry their own flag. Timeouts and connection errors are
    transient; anything else is treated as terminal.
    """
    if isinstance(error, SyncError):
        return error.retryable
    if isinstance(error, (TimeoutError, ConnectionError)):
        return True
    return False


def retry_after_hint(error: BaseException) -> float | None:
    """Seconds the workspace asked us to wait, if it said so."""
    return getattr(error, "retry_after", None)
