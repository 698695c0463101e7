"""Email Insight Backend - FastAPI Application Factory."""

import asyncio
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from app.api import api_router
from app.api.auth import router as auth_router
from app.api.error_handlers import register_error_handlers
from app.api.health import router as health_router
from app.core import async_session_maker, settings, setup_logging
from app.core.logging import get_logger
from app.middleware import DEFAULT_TIERS, RateLimiter, RateLimitMiddleware, RequestIDMiddleware
from app.services.maintenance import (
    rate_limit_cleanup_loop,
    revocation_cleanup_loop,
    task_done_callback,
)
from app.services.revocation import InMemoryRevocationStore, RevocationStore, warm_revocation_store
from app.services.tokens import TokenService

logger = get_logger("main")


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan handler for startup/shutdown."""
    setup_logging(
        level=settings.log_level,
        format_type="structured" if not settings.debug else "dev",
    )
    logger.info(f"Starting {settings.app_name} v{settings.app_version}")

    for warning in settings.check_security_configuration():
        logger.warning(f"SECURITY: {warning}")

    store: RevocationStore = app.state.revocation_store
    async with async_session_maker() as db:
        loaded = await warm_revocation_store(store, db)
    logger.info(f"Loaded {loaded} active revocations")

    tasks: list[asyncio.Task] = []

    revocation_task = asyncio.create_task(
        revocation_cleanup_loop(
            store, async_session_maker, settings.revocation_cleanup_interval_seconds
        ),
        name="revocation-cleanup",
    )
    revocation_task.add_done_callback(task_done_callback)
    tasks.append(revocation_task)

    rate_limit_task = asyncio.create_task(
        rate_limit_cleanup_loop(
            app.state.rate_limiter, settings.rate_limit_cleanup_interval_seconds
        ),
        name="rate-limit-cleanup",
    )
    rate_limit_task.add_done_callback(task_done_callback)
    tasks.append(rate_limit_task)

    yield

    logger.info("Shutting down...")
    for task in tasks:
        task.cancel()
    await asyncio.gather(*tasks, return_exceptions=True)


def create_app(
    revocation_store: RevocationStore | None = None,
    rate_limiter: RateLimiter | None = None,
    token_service: TokenService | None = None,
) -> FastAPI:
    """Create and configure the FastAPI application.

    The revocation store, rate limiter and token service are owned by the
    returned app; pass instances to share them or to control their clocks.
    """
    if revocation_store is None:
        revocation_store = InMemoryRevocationStore()
    if rate_limiter is None:
        rate_limiter = RateLimiter(DEFAULT_TIERS)
    if token_service is None:
        token_service = TokenService.from_settings(settings, revocation_store)

    app = FastAPI(
        title=settings.app_name,
        description="Session security core for the Email Insight API",
        version=settings.app_version,
        lifespan=lifespan,
        docs_url="/docs" if settings.debug else None,
        redoc_url="/redoc" if settings.debug else None,
        openapi_url="/openapi.json" if settings.debug else None,
    )
    app.state.revocation_store = revocation_store
    app.state.rate_limiter = rate_limiter
    app.state.token_service = token_service

    # General API tier on /api/*; /health and /auth are not counted here
    app.add_middleware(
        RateLimitMiddleware,
        rate_limiter=rate_limiter,
        trusted_proxies=settings.trusted_proxy_ips_set,
        enabled=settings.rate_limit_enabled,
    )

    # Outside the rate limiter so 429s carry an id too
    app.add_middleware(RequestIDMiddleware)

    # CORS middleware - MUST be outermost (added last in Starlette LIFO order)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins_list,
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
        allow_headers=[
            "Authorization",
            "Content-Type",
            "Accept",
            "X-Request-ID",
        ],
        expose_headers=[
            "X-Request-ID",
            "X-RateLimit-Limit",
            "X-RateLimit-Remaining",
            "X-RateLimit-Reset",
            "Retry-After",
        ],
    )

    if settings.enable_metrics:
        from prometheus_fastapi_instrumentator import Instrumentator

        Instrumentator(
            excluded_handlers=["/health", "/metrics"],
        ).instrument(app).expose(app, endpoint="/metrics", include_in_schema=False)

    register_error_handlers(app)

    app.include_router(health_router)  # Health at root level
    app.include_router(auth_router)  # Auth at root level (/auth)
    app.include_router(api_router)  # API at /api

    @app.get("/")
    async def root() -> dict[str, str]:
        """Root endpoint with API information."""
        return {
            "name": settings.app_name,
            "version": settings.app_version,
        }

    return app


# Application instance
app = create_app()
