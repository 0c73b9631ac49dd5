"""Errors raised while ingesting a batch.

Every error carries the HTTP status and a generic message that is safe to
return to the caller. Details about the offending input belong in the log,
never in ``message``.
"""

from http import HTTPStatus


class IngestionError(Exception):
    status_code: int = HTTPStatus.BAD_REQUEST
    message: str = "Invalid request data."

    def __init__(self, message: str | None = None) -> None:
        if message is not None:
            self.message = message
        super().__init__(self.message)


class ClientError(IngestionError):
    """Malformed or invalid batch."""


class RateLimitError(IngestionError):
    status_code = HTTPStatus.TOO_MANY_REQUESTS
    message = "Too many requests."


class StorageError(IngestionError):
    """The storage gateway failed. Surfaced to the caller as a client error."""

    message = "Invalid data."
