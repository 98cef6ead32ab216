from __future__ import annotations


class StorageBackendError(RuntimeError):
    """Base error raised by a key/value backend.

    `name` mirrors the host exception name (e.g. "QuotaExceededError") so it
    can be kept for diagnostics without ever being shown to the user.
    """

    name = "StorageError"


class QuotaExceededError(StorageBackendError):
    """The write would exceed the backend's byte budget."""

    name = "QuotaExceededError"


class StorageSecurityError(StorageBackendError):
    """The host environment blocks access to the backend."""

    name = "SecurityError"


class EnvelopeDecodeError(ValueError):
    """A stored value is not a readable record envelope."""


class StorageWriteError(RuntimeError):
    """A persisted write failed after local recovery was exhausted.

    Raised only to feed error classification; never propagated to the UI.
    """

    def __init__(self, message: str, *, original_error: str | None = None) -> None:
        super().__init__(message)
        self.original_error = original_error
