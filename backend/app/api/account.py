"""Account endpoints behind the auth gate."""

import logging
from datetime import UTC, datetime

from fastapi import APIRouter, Depends, Response
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.deps import enforce_upstream_quota, optional_principal, require_principal
from app.core import get_db
from app.core.errors import AuthErrorKind, AuthRejected
from app.middleware.rate_limit import RateLimitDecision
from app.schemas.auth import (
    AccountResponse,
    Envelope,
    GreetingResponse,
    QuotaReservationResponse,
)
from app.services.auth_gate import AuthenticatedPrincipal
from app.services.principals import PrincipalDirectory

logger = logging.getLogger(__name__)

router = APIRouter(tags=["account"])


@router.get("/account", response_model=Envelope[AccountResponse])
async def get_account(
    current: AuthenticatedPrincipal = Depends(require_principal),
    db: AsyncSession = Depends(get_db),
) -> Envelope[AccountResponse]:
    """Stored profile of the authenticated principal."""
    user = await PrincipalDirectory(db).get(current.principal_id)
    if user is None:
        # Deleted between the gate and this lookup
        raise AuthRejected(AuthErrorKind.PRINCIPAL_NOT_FOUND)
    return Envelope(
        data=AccountResponse(
            id=user.id,
            email=user.email,
            name=user.name,
            created_at=user.created_at,
            has_provider_credentials=user.provider_access_token is not None,
        )
    )


@router.get("/greeting", response_model=Envelope[GreetingResponse])
async def greeting(
    current: AuthenticatedPrincipal | None = Depends(optional_principal),
) -> Envelope[GreetingResponse]:
    """Personalized when a valid token is presented, anonymous otherwise."""
    if current is None:
        return Envelope(data=GreetingResponse(greeting="Hello!", authenticated=False))
    return Envelope(
        data=GreetingResponse(greeting=f"Hello, {current.email}!", authenticated=True)
    )


@router.post("/upstream/reserve", response_model=Envelope[QuotaReservationResponse])
async def reserve_upstream_quota(
    response: Response,
    current: AuthenticatedPrincipal = Depends(require_principal),
    decision: RateLimitDecision = Depends(enforce_upstream_quota),
) -> Envelope[QuotaReservationResponse]:
    """Reserve one unit of mail provider quota before an upstream call."""
    for header, value in decision.headers().items():
        response.headers[header] = value
    logger.debug(
        f"Reserved upstream quota for principal {current.principal_id}",
        extra={"principal_id": current.principal_id, "tier": decision.tier.value},
    )
    return Envelope(
        data=QuotaReservationResponse(
            reserved=1,
            remaining=decision.remaining,
            reset_at=datetime.fromtimestamp(decision.reset_at, tz=UTC),
        )
    )
