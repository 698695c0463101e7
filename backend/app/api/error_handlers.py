"""Global exception handlers rendering the standard error envelope.

Auth rejections and rate-limit refusals carry their fixed public code and
message; validation errors list field details; anything else becomes
INTERNAL_ERROR without leaking internals.
"""

import logging

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from app.core.errors import (
    AuthErrorKind,
    AuthRejected,
    ErrorSeverity,
    RateLimitExceeded,
    error_body,
)
from app.core.logging import request_extra
from app.middleware.rate_limit import RateLimitTier

logger = logging.getLogger(__name__)


def register_error_handlers(app: FastAPI) -> None:
    """Register all global error handlers on the FastAPI app."""
    _register_auth_error_handler(app)
    _register_rate_limit_handler(app)
    _register_validation_error_handler(app)
    _register_http_error_handler(app)
    _register_generic_error_handler(app)


def _record_auth_failure(request: Request, exc: AuthRejected) -> None:
    """Charge a rejection to the auth-failure tier on guarded routes."""
    key = getattr(request.state, "auth_failure_key", None)
    if key is None or exc.spec.http_status != status.HTTP_401_UNAUTHORIZED:
        return
    decision = request.app.state.rate_limiter.consume(RateLimitTier.AUTH_FAILURE, key)
    if not decision.allowed:
        logger.warning(
            f"Auth failure budget exhausted for {key}",
            extra=request_extra(request, tier=RateLimitTier.AUTH_FAILURE.value),
        )


def _register_auth_error_handler(app: FastAPI) -> None:
    @app.exception_handler(AuthRejected)
    async def auth_rejected_handler(request: Request, exc: AuthRejected):
        spec = exc.spec
        level = logging.ERROR if exc.kind is AuthErrorKind.AUTH_ERROR else logging.INFO
        logger.log(
            level,
            f"Auth rejected on {request.url.path}: {spec.code}",
            extra=request_extra(
                request,
                error_code=spec.code,
                severity=spec.severity.value,
                path=request.url.path,
            ),
        )
        _record_auth_failure(request, exc)

        headers = None
        if spec.http_status == status.HTTP_401_UNAUTHORIZED:
            headers = {"WWW-Authenticate": "Bearer"}
        return JSONResponse(
            status_code=spec.http_status, content=exc.to_response(), headers=headers
        )


def _register_rate_limit_handler(app: FastAPI) -> None:
    @app.exception_handler(RateLimitExceeded)
    async def rate_limit_handler(request: Request, exc: RateLimitExceeded):
        return JSONResponse(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            content=exc.to_response(),
            headers=exc.headers,
        )


def _register_validation_error_handler(app: FastAPI) -> None:
    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError):
        logger.warning(f"Validation error on {request.url.path}: {exc.errors()}")
        body = error_body("VALIDATION_ERROR", "Invalid request data", ErrorSeverity.LOW)
        body["error"]["details"] = [
            {
                "field": ".".join(str(loc) for loc in e["loc"]),
                "message": e["msg"],
                "type": e["type"],
            }
            for e in exc.errors()
        ]
        return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content=body)


def _register_http_error_handler(app: FastAPI) -> None:
    @app.exception_handler(StarletteHTTPException)
    async def http_error_handler(request: Request, exc: StarletteHTTPException):
        if exc.status_code == status.HTTP_404_NOT_FOUND:
            body = error_body(
                "ROUTE_NOT_FOUND",
                f"Route {request.method} {request.url.path} not found",
                ErrorSeverity.LOW,
            )
        elif exc.status_code == status.HTTP_405_METHOD_NOT_ALLOWED:
            body = error_body("METHOD_NOT_ALLOWED", "Method not allowed", ErrorSeverity.LOW)
        else:
            body = error_body("HTTP_ERROR", str(exc.detail), ErrorSeverity.MEDIUM)
        return JSONResponse(
            status_code=exc.status_code, content=body, headers=getattr(exc, "headers", None)
        )


def _register_generic_error_handler(app: FastAPI) -> None:
    @app.exception_handler(Exception)
    async def generic_error_handler(request: Request, exc: Exception):
        """Catch-all; never leaks internal details."""
        logger.error(
            f"Unhandled exception on {request.url.path}: {exc}",
            exc_info=True,
            extra=request_extra(request, path=request.url.path),
        )
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content=error_body(
                "INTERNAL_ERROR", "An unexpected error occurred", ErrorSeverity.CRITICAL
            ),
        )
