"""Closed error taxonomy for the auth gate and the rate limiter.

Every failure the gate can produce is an ``AuthErrorKind``; the one table
below maps each kind to its HTTP status, public code, fixed message and
severity. Messages are constants so exception text never reaches a caller.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any


class ErrorSeverity(str, Enum):
    """Severity attached to every error body for observability triage."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class AuthErrorKind(str, Enum):
    """Terminal rejection states of the auth gate."""

    MISSING_TOKEN = "MISSING_TOKEN"
    INVALID_TOKEN = "INVALID_TOKEN"
    TOKEN_REVOKED = "TOKEN_REVOKED"
    PRINCIPAL_NOT_FOUND = "PRINCIPAL_NOT_FOUND"
    AUTH_ERROR = "AUTH_ERROR"


@dataclass(frozen=True)
class ErrorSpec:
    """External rendering of one error kind."""

    http_status: int
    code: str
    message: str
    severity: ErrorSeverity


AUTH_ERROR_SPECS: dict[AuthErrorKind, ErrorSpec] = {
    AuthErrorKind.MISSING_TOKEN: ErrorSpec(
        401, "MISSING_TOKEN", "Authorization token is required", ErrorSeverity.MEDIUM
    ),
    AuthErrorKind.INVALID_TOKEN: ErrorSpec(
        401, "INVALID_TOKEN", "Invalid or expired token", ErrorSeverity.MEDIUM
    ),
    AuthErrorKind.TOKEN_REVOKED: ErrorSpec(
        401, "TOKEN_REVOKED", "Token has been revoked", ErrorSeverity.MEDIUM
    ),
    AuthErrorKind.PRINCIPAL_NOT_FOUND: ErrorSpec(
        401, "PRINCIPAL_NOT_FOUND", "User account not found", ErrorSeverity.HIGH
    ),
    AuthErrorKind.AUTH_ERROR: ErrorSpec(
        500, "AUTH_ERROR", "Authentication failed", ErrorSeverity.HIGH
    ),
}

RATE_LIMIT_ERROR = ErrorSpec(
    429,
    "RATE_LIMIT_EXCEEDED",
    "Too many requests. Please try again later.",
    ErrorSeverity.MEDIUM,
)


def error_body(code: str, message: str, severity: ErrorSeverity) -> dict[str, Any]:
    """Standard error envelope: ``{success: false, error: {code, message, severity}}``."""
    return {
        "success": False,
        "error": {
            "code": code,
            "message": message,
            "severity": severity.value,
        },
    }


def success_body(data: Any, message: str | None = None) -> dict[str, Any]:
    """Standard success envelope: ``{success: true, data, message?}``."""
    body: dict[str, Any] = {"success": True, "data": data}
    if message:
        body["message"] = message
    return body


class AuthRejected(Exception):
    """Raised by the auth gate at the first failing stage."""

    def __init__(self, kind: AuthErrorKind):
        self.kind = kind
        super().__init__(kind.value)

    @property
    def spec(self) -> ErrorSpec:
        return AUTH_ERROR_SPECS[self.kind]

    def to_response(self) -> dict[str, Any]:
        spec = self.spec
        return error_body(spec.code, spec.message, spec.severity)


class RateLimitExceeded(Exception):
    """Raised when a tier refuses a request; carries the limiter's headers."""

    def __init__(self, tier: str, headers: dict[str, str]):
        self.tier = tier
        self.headers = headers
        super().__init__(f"Rate limit exceeded for tier {tier}")

    def to_response(self) -> dict[str, Any]:
        return error_body(
            RATE_LIMIT_ERROR.code, RATE_LIMIT_ERROR.message, RATE_LIMIT_ERROR.severity
        )
