"""
Service-level exceptions.

Each exception carries a stable `code` that triggers and CLIs can surface
instead of parsing messages.
"""


class ReconcilerError(Exception):
    """Base exception for reconciliation services."""

    code = "ERROR"


class InvalidSearchRequest(ReconcilerError):
    """Malformed request: rejected before any job is created."""

    code = "INVALID_REQUEST"


class SourceNotFound(ReconcilerError):
    """No source matches the given id or external account id."""

    code = "SOURCE_NOT_FOUND"


class SourceUnavailable(ReconcilerError):
    """Source is paused or disconnected."""

    code = "SOURCE_UNAVAILABLE"


class SyncAlreadyRunning(ReconcilerError):
    """A pending or processing job already exists for the source."""

    code = "SYNC_IN_PROGRESS"

    def __init__(self, job_id: int):
        self.job_id = job_id
        super().__init__(f"Sync already in progress (job #{job_id})")


class SyncRateLimited(ReconcilerError):
    """Manual sync requested again inside the rate limit window."""

    code = "RATE_LIMITED"

    def __init__(self, retry_after_seconds: int):
        self.retry_after_seconds = retry_after_seconds
        super().__init__(f"Sync rate limited, retry in {retry_after_seconds}s")


class ReauthRequired(ReconcilerError):
    """The source credential was rejected; a fresh authorization is needed."""

    code = "REAUTH_REQUIRED"

    def __init__(self, source_id: int, message: str = "Source needs re-authorization"):
        self.source_id = source_id
        super().__init__(message)


class JobTimeout(ReconcilerError):
    """Job exceeded its execution ceiling."""

    code = "TIMEOUT"


# Job error codes stored on failed jobs
ERROR_REAUTH_REQUIRED = ReauthRequired.code
ERROR_TIMEOUT = JobTimeout.code
ERROR_STALE = "STALE"
ERROR_ALL_STRATEGIES_FAILED = "ALL_STRATEGIES_FAILED"
ERROR_SYNC_FAILED = "SYNC_FAILED"
ERROR_SOURCE_UNAVAILABLE = SourceUnavailable.code
