"""Error taxonomy shared by the relay, the backend client and the store.

Every error knows the HTTP status it surfaces as, so the web layer can turn
any of them into a ``{"error": message}`` reply without a lookup table.
"""

from __future__ import annotations


class RelayError(Exception):
    """Base class for all chatrelay errors."""

    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(RelayError):
    """Bad caller input. Never retried."""

    status_code = 400


class BackendUnavailableError(RelayError):
    """Connection-level failure talking to the inference server."""

    status_code = 503


class BackendError(RelayError):
    """The inference server answered with a non-success status."""

    def __init__(self, message: str, status_code: int):
        super().__init__(message)
        self.backend_status = status_code


class BackendProtocolError(RelayError):
    """The inference server answered with a malformed payload."""


class StorageError(RelayError):
    """Store not initialized, or a transaction failed."""


class StreamTerminatedError(RelayError):
    """The outbound consumer went away mid-stream."""

    status_code = 499
