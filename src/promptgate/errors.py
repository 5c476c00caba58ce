from enum import Enum
from typing import Any


class ErrorCode(str, Enum):
    VALIDATION_ERROR = "VALIDATION_ERROR"
    UNAUTHORIZED = "UNAUTHORIZED"
    FORBIDDEN = "FORBIDDEN"
    NOT_FOUND = "NOT_FOUND"
    PROVIDER_ERROR = "PROVIDER_ERROR"
    CREDENTIAL_ERROR = "CREDENTIAL_ERROR"
    INTERNAL_ERROR = "INTERNAL_ERROR"


class GatewayError(Exception):
    status_code: int = 500
    code: ErrorCode = ErrorCode.INTERNAL_ERROR

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        code: ErrorCode | None = None,
        details: Any = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if code is not None:
            self.code = code
        self.details = details

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"code": self.code.value, "message": self.message}
        if self.details is not None:
            payload["details"] = self.details
        return payload

    def to_body(self) -> dict[str, Any]:
        return {"error": self.to_payload()}

    @classmethod
    def from_payload(cls, payload: Any, *, status_code: int | None = None) -> "GatewayError":
        """Rebuild an error from the ``error`` object of a body or SSE frame."""
        if not isinstance(payload, dict):
            message = str(payload) if payload else f"HTTP {status_code}"
            return cls(message, status_code=status_code)
        try:
            code = ErrorCode(payload.get("code"))
        except ValueError:
            code = ErrorCode.INTERNAL_ERROR
        status = payload.get("status")
        if isinstance(status, int):
            status_code = status
        message = payload.get("message")
        if not isinstance(message, str) or not message:
            message = f"HTTP {status_code}"
        return cls(message, status_code=status_code, code=code, details=payload.get("details"))


class UnauthorizedError(GatewayError):
    status_code = 401
    code = ErrorCode.UNAUTHORIZED


class NotFoundError(GatewayError):
    status_code = 404
    code = ErrorCode.NOT_FOUND


class ForbiddenError(GatewayError):
    status_code = 403
    code = ErrorCode.FORBIDDEN


class ProviderConfigError(GatewayError):
    """Raised when a provider record cannot be turned into an upstream request."""

    status_code = 400
    code = ErrorCode.PROVIDER_ERROR


class ProviderDisabledError(GatewayError):
    status_code = 400
    code = ErrorCode.PROVIDER_ERROR


class CredentialError(GatewayError):
    status_code = 500
    code = ErrorCode.CREDENTIAL_ERROR


class UpstreamError(GatewayError):
    """Non-2xx or unusable response from the upstream provider.

    ``body`` keeps whatever could be parsed from the upstream error response so
    callers can inspect vendor-specific fields.
    """

    status_code = 502
    code = ErrorCode.PROVIDER_ERROR

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        body: Any = None,
    ) -> None:
        super().__init__(message, status_code=status_code, details=body or None)
        self.body = body


class TraceWriteError(GatewayError):
    pass


__all__ = [
    "ErrorCode",
    "GatewayError",
    "UnauthorizedError",
    "NotFoundError",
    "ForbiddenError",
    "ProviderConfigError",
    "ProviderDisabledError",
    "CredentialError",
    "UpstreamError",
    "TraceWriteError",
]
