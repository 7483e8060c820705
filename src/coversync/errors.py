"""Error taxonomy for the sync engine."""

from __future__ import annotations

from coversync.keys import QueryKey


class SyncError(Exception):
    """Base class for every error raised by coversync."""


class HttpError(SyncError):
    """A failed request to the REST API."""

    def __init__(self, message: str, *, status: int | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.status = status

    @property
    def retryable(self) -> bool:
        return False


class TransientNetworkError(HttpError):
    """Network failure or 5xx response; retried with backoff."""

    @property
    def retryable(self) -> bool:
        return True


class ValidationError(HttpError):
    """4xx response other than auth failures; surfaced with the server message."""


class AuthError(HttpError):
    """401/403 response. A 401 also clears the stored session token."""


class DecodeError(SyncError):
    """A push frame that is not valid JSON or lacks a usable ``type``."""

    def __init__(self, message: str, *, frame: object = None) -> None:
        super().__init__(message)
        self.frame = frame


class StaleOptimisticRollbackError(SyncError):
    """An optimistic mutation failed and its provisional value was reverted."""

    def __init__(self, effect: str, key: QueryKey | None, cause: BaseException) -> None:
        super().__init__(f"{effect} failed: {cause}")
        self.effect = effect
        self.key = key
        self.cause = cause


def is_retryable(error: BaseException) -> bool:
    """Whether a fetch failure should be retried."""
    if isinstance(error, HttpError):
        return error.retryable
    # Connection resets and timeouts raised below the transport
    return isinstance(error, (ConnectionError, TimeoutError))
