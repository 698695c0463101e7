"""FastAPI dependencies for authentication and tiered rate limiting.

The token service, revocation store and rate limiter are owned by the app
(``create_app`` attaches them to ``app.state``); these dependencies only
look them up, so tests can build an app with their own instances.
"""

import logging

from fastapi import Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from app.core import get_db, settings
from app.core.errors import RateLimitExceeded
from app.core.logging import request_extra
from app.core.request_utils import get_authorization_header, get_client_ip
from app.middleware.rate_limit import RateLimitDecision, RateLimiter, RateLimitTier
from app.services.auth_gate import AuthenticatedPrincipal, AuthGate
from app.services.principals import PrincipalDirectory
from app.services.revocation import RevocationStore
from app.services.tokens import TokenService

logger = logging.getLogger(__name__)


def get_token_service(request: Request) -> TokenService:
    return request.app.state.token_service


def get_revocation_store(request: Request) -> RevocationStore:
    return request.app.state.revocation_store


def get_rate_limiter(request: Request) -> RateLimiter:
    return request.app.state.rate_limiter


def get_auth_gate(
    request: Request,
    db: AsyncSession = Depends(get_db),
) -> AuthGate:
    """Gate bound to the request's database session."""
    return AuthGate(
        token_service=get_token_service(request),
        revocation_store=get_revocation_store(request),
        principals=PrincipalDirectory(db),
    )


async def require_principal(
    request: Request,
    gate: AuthGate = Depends(get_auth_gate),
) -> AuthenticatedPrincipal:
    """Admit the request only with a valid, unrevoked access token."""
    principal = await gate.authenticate(get_authorization_header(request))
    request.state.principal = principal
    return principal


async def optional_principal(
    request: Request,
    gate: AuthGate = Depends(get_auth_gate),
) -> AuthenticatedPrincipal | None:
    """Bind identity when a valid token is present; never reject."""
    principal = await gate.authenticate_optional(get_authorization_header(request))
    request.state.principal = principal
    return principal


def guard_auth_failures(request: Request) -> None:
    """Refuse callers blocked by the auth-failure tier.

    Only rejections consume from this tier; the AuthRejected handler does
    the consuming for requests marked here with ``auth_failure_key``.
    """
    limiter = get_rate_limiter(request)
    client_ip = get_client_ip(request, settings.trusted_proxy_ips_set)
    decision = limiter.check(RateLimitTier.AUTH_FAILURE, client_ip)
    if not decision.allowed:
        logger.warning(
            f"Blocked auth attempt from {client_ip}",
            extra=request_extra(request, tier=RateLimitTier.AUTH_FAILURE.value),
        )
        raise RateLimitExceeded(RateLimitTier.AUTH_FAILURE.value, decision.headers())
    request.state.auth_failure_key = client_ip


def enforce_upstream_quota(request: Request) -> RateLimitDecision:
    """Spend one unit of the upstream quota tier.

    Keyed by the admitted principal, falling back to the caller's IP for
    anonymous requests. Declare after the identity dependency so the
    principal is already bound.
    """
    principal: AuthenticatedPrincipal | None = getattr(request.state, "principal", None)
    if principal is not None:
        key = f"user:{principal.principal_id}"
    else:
        key = f"ip:{get_client_ip(request, settings.trusted_proxy_ips_set)}"

    decision = get_rate_limiter(request).consume(RateLimitTier.UPSTREAM_QUOTA, key)
    if not decision.allowed:
        logger.warning(
            f"Upstream quota exhausted for {key}",
            extra=request_extra(request, tier=RateLimitTier.UPSTREAM_QUOTA.value),
        )
        raise RateLimitExceeded(RateLimitTier.UPSTREAM_QUOTA.value, decision.headers())
    return decision
