"""Error taxonomy for the chat relay.

Every failure that crosses a module boundary derives from RelayError so the
orchestrator and the HTTP layer can map it to a response in one place.
"""

from __future__ import annotations


class RelayError(Exception):
    """Base relay error.

    Attributes:
        code: machine readable error code, e.g. "STORE_READ_ERROR".
        message: human readable description.
        http_status: status code to use when surfaced over HTTP.
    """

    def __init__(self, code: str, message: str, http_status: int = 500):
        self.code = code
        self.message = message
        self.http_status = http_status
        super().__init__(message)


class ValidationError(RelayError):
    """Missing or malformed request parameters."""

    def __init__(self, code: str, message: str, http_status: int = 400):
        super().__init__(code, message, http_status)


class ImageFetchFailure(RelayError):
    """Image could not be retrieved. Callers degrade to a text-only turn."""


class RemoteCallFailure(RelayError):
    """Model call failed: transport, non-2xx, timeout or unusable body."""


class StorageFailure(RelayError):
    """Conversation table could not be read, parsed or written."""
