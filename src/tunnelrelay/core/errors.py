"""Error types raised by the relay core and mapped to HTTP by the server."""

from __future__ import annotations

from enum import IntEnum


class ErrorCode(IntEnum):
    """Error codes reported alongside relay errors."""

    VALIDATION_FAILED = 1
    TUNNEL_NOT_FOUND = 2
    UNAUTHORIZED = 3
    RATE_LIMITED = 4
    INTERNAL_ERROR = 255


class RelayError(Exception):
    """Base class for every error the relay surfaces to callers."""

    code: ErrorCode = ErrorCode.INTERNAL_ERROR
    status: int = 500

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict[str, object]:
        return {"error": self.message, "code": int(self.code)}


class ValidationError(RelayError):
    """A required identifier or field is missing or malformed."""

    code = ErrorCode.VALIDATION_FAILED
    status = 400


class TunnelNotFoundError(RelayError):
    code = ErrorCode.TUNNEL_NOT_FOUND
    status = 404

    def __init__(self, tunnel_id: str) -> None:
        super().__init__("No tunnel with this id exists.")
        self.tunnel_id = tunnel_id


class UnauthorizedError(RelayError):
    code = ErrorCode.UNAUTHORIZED
    status = 401

    def __init__(self, message: str = "Invalid tunnel token.") -> None:
        super().__init__(message)


class RateLimitedError(RelayError):
    """Admission control rejected the request.

    ``scope`` names the gate that denied it (``"caller"`` or ``"tunnel"``).
    """

    code = ErrorCode.RATE_LIMITED
    status = 429

    def __init__(self, scope: str, retry_after: float) -> None:
        super().__init__(f"{scope.capitalize()} rate limit exceeded")
        self.scope = scope
        self.retry_after = retry_after


class InternalError(RelayError):
    """Unexpected failure. The message never carries internal state."""

    def __init__(self) -> None:
        super().__init__("Internal server error")
