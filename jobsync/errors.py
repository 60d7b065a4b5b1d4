from __future__ import annotations

from typing import Optional


class ValidationFailed(ValueError):
    """Rejected on the client before any network call."""


class GatewayError(RuntimeError):
    """A remote call failed."""


class NetworkError(GatewayError):
    """The outcome of the request is unknown: it never arrived or the answer was lost."""


class ServerRejected(GatewayError):
    """The server answered with a non-2xx status."""

    def __init__(self, status: int, message: str, error: Optional[str] = None) -> None:
        super().__init__(message)
        self.status = status
        self.message = message
        self.error = error

    @property
    def is_conflict(self) -> bool:
        return self.status == 409

    @property
    def is_unauthorized(self) -> bool:
        return self.status == 401


class MalformedResponse(NetworkError):
    """A 2xx answer whose body is not the expected record; the change may have been applied."""
