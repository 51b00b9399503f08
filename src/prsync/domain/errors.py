"""Error taxonomy for planning, fetching and committing sync work.

Every error carries a stable ``code`` so run summaries and logs can group
failures without parsing messages. ``retryable`` marks errors the orchestrator
may retry; ``repository_fatal`` marks errors that make every remaining gap of
the same repository pointless to attempt.
"""
from __future__ import annotations


class PrsyncError(Exception):
    code = "PRSYNC_ERROR"
    retryable = False
    repository_fatal = False

    def to_dict(self) -> dict[str, object]:
        return {"code": self.code, "type": type(self).__name__, "message": str(self)}


class InvalidInterval(PrsyncError, ValueError):
    code = "INVALID_INTERVAL"


class ConfigurationError(PrsyncError):
    code = "CONFIG_ERROR"

    def __init__(self, message: str, key: str | None = None) -> None:
        super().__init__(f"{key}: {message}" if key else message)
        self.key = key


# ── remote source ───────────────────────────────────────────────

class RemoteError(PrsyncError):
    code = "REMOTE_ERROR"


class RateLimited(RemoteError):
    code = "RATE_LIMITED"
    retryable = True

    def __init__(self, retry_after: float | None = None, message: str | None = None) -> None:
        super().__init__(message or (
            f"rate limit exceeded; retry after {retry_after:.0f}s" if retry_after is not None
            else "rate limit exceeded"
        ))
        self.retry_after = retry_after

    def to_dict(self) -> dict[str, object]:
        return {**super().to_dict(), "retry_after": self.retry_after}


class TransientNetworkError(RemoteError):
    code = "TRANSIENT_NETWORK"
    retryable = True


class AuthError(RemoteError):
    code = "AUTH_FAILED"
    repository_fatal = True


class NotFound(RemoteError):
    code = "NOT_FOUND"
    repository_fatal = True

    def __init__(self, repository: str, message: str | None = None) -> None:
        super().__init__(message or f"repository not found: {repository}")
        self.repository = repository

    def to_dict(self) -> dict[str, object]:
        return {**super().to_dict(), "repository": self.repository}


class MalformedResponse(RemoteError):
    code = "MALFORMED_RESPONSE"


# ── persistence ─────────────────────────────────────────────────

class PersistenceError(PrsyncError):
    code = "PERSISTENCE_ERROR"


class ConcurrentUpdateError(PersistenceError):
    """A coverage row changed between load and save."""
    code = "CONCURRENT_UPDATE"

    def __init__(self, repository: str, expected_version: int) -> None:
        super().__init__(f"coverage for {repository} changed since version {expected_version}")
        self.repository = repository
        self.expected_version = expected_version


class CancelledSync(PrsyncError):
    code = "CANCELLED"


def describe(exc: BaseException) -> str:
    """One-line ``Type: message`` form used in summaries."""
    return f"{type(exc).__name__}: {exc}"
