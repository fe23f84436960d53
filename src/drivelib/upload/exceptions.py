"""Typed errors raised by the resumable upload engine.

Callers of :class:`~drivelib.upload.controller.UploadController` see exactly
one of :class:`RetriesExhaustedError`, :class:`SessionExpiredError`,
:class:`ProtocolError` (or a subclass) and :class:`UploadAbortedError`.
:class:`RetryableUploadError` subclasses are handled inside the controller.
"""

from __future__ import annotations


class UploadError(Exception):
    """Base class for all upload engine errors."""


# ---------------------------------------------------------------------------
# Retryable (internal)
# ---------------------------------------------------------------------------


class RetryableUploadError(UploadError):
    """A failure the controller answers with backoff and a fresh probe."""

    retry_after: float | None = None


class TransientError(RetryableUploadError):
    """Raised on 5xx responses and on network errors before a response."""


class RateLimitError(RetryableUploadError):
    """Raised when the store answers 403/429 (quota or rate limit)."""

    def __init__(self, message: str, retry_after: float | None = None) -> None:
        super().__init__(message)
        self.retry_after = retry_after


# ---------------------------------------------------------------------------
# Surfaced to the caller
# ---------------------------------------------------------------------------


class RetriesExhaustedError(UploadError):
    """Raised when retryable failures persist past the attempt budget."""

    def __init__(self, message: str, attempts: int) -> None:
        super().__init__(message)
        self.attempts = attempts


class SessionExpiredError(UploadError):
    """Raised when the session endpoint answers 404."""


class ProtocolError(UploadError):
    """The store or the content source broke the protocol contract."""


class SessionInitiationError(ProtocolError):
    """Raised when a session cannot be opened (non-2xx or no ``Location``)."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class UnexpectedStatusError(ProtocolError):
    """Raised on a status code the protocol does not define for the step."""

    def __init__(self, step: str, status_code: int, body: str = "") -> None:
        super().__init__(f"{step}: unexpected HTTP {status_code}")
        self.step = step
        self.status_code = status_code
        self.body = body


class InvalidSourceError(ProtocolError):
    """Raised when the byte source does not yield a readable stream of the declared length."""


class UploadAbortedError(UploadError):
    """Raised when the caller aborts an upload."""
