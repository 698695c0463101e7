"""Session API endpoints: refresh rotation, logout and identity."""

import logging

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.deps import (
    get_revocation_store,
    get_token_service,
    guard_auth_failures,
    require_principal,
)
from app.core import get_db
from app.core.errors import AuthErrorKind, AuthRejected
from app.schemas.auth import (
    Envelope,
    IdentityResponse,
    LogoutRequest,
    LogoutResponse,
    RefreshRequest,
    TokenResponse,
)
from app.services.auth_gate import AuthenticatedPrincipal
from app.services.principals import PrincipalDirectory
from app.services.revocation import RevocationRecord, RevocationRepository, RevocationStore
from app.services.tokens import (
    RefreshRevokedError,
    TokenError,
    TokenKind,
    TokenService,
)

logger = logging.getLogger(__name__)

# Rejections on these routes count against the caller's auth-failure budget
router = APIRouter(prefix="/auth", tags=["auth"], dependencies=[Depends(guard_auth_failures)])


async def _revoke(
    store: RevocationStore,
    db: AsyncSession,
    record: RevocationRecord,
) -> bool:
    """Revoke in memory, then journal so the revocation survives a restart."""
    created = store.revoke(record.token_id, record.principal_id, record.expires_at)
    if created:
        await RevocationRepository(db).persist(record)
    return created


@router.post("/refresh", response_model=Envelope[TokenResponse])
async def refresh_tokens(
    request: RefreshRequest,
    db: AsyncSession = Depends(get_db),
    token_service: TokenService = Depends(get_token_service),
) -> Envelope[TokenResponse]:
    """Exchange a refresh token for a new pair.

    The presented refresh token is consumed: replaying it, even concurrently,
    yields TOKEN_REVOKED.
    """
    try:
        payload = token_service.verify(request.refresh_token)
    except TokenError as e:
        logger.info(f"Refresh rejected: {type(e).__name__}")
        raise AuthRejected(AuthErrorKind.INVALID_TOKEN) from e

    if payload.kind is not TokenKind.REFRESH:
        raise AuthRejected(AuthErrorKind.INVALID_TOKEN)

    try:
        principal_exists = await PrincipalDirectory(db).exists(payload.principal_id)
    except Exception:
        logger.exception("Unexpected error looking up principal on refresh")
        raise AuthRejected(AuthErrorKind.AUTH_ERROR) from None

    if not principal_exists:
        logger.error(
            f"Refresh attempted for missing principal {payload.principal_id}",
            extra={"principal_id": payload.principal_id, "severity": "high"},
        )
        raise AuthRejected(AuthErrorKind.PRINCIPAL_NOT_FOUND)

    try:
        pair = token_service.rotate_refresh(request.refresh_token)
    except RefreshRevokedError as e:
        raise AuthRejected(AuthErrorKind.TOKEN_REVOKED) from e
    except TokenError as e:
        raise AuthRejected(AuthErrorKind.INVALID_TOKEN) from e

    await RevocationRepository(db).persist(
        RevocationRecord(payload.token_id, payload.principal_id, payload.expires_at)
    )
    logger.info(
        f"Rotated refresh token for principal {payload.principal_id}",
        extra={"principal_id": payload.principal_id},
    )
    return Envelope(data=TokenResponse(**pair.to_dict()), message="Tokens refreshed")


@router.post("/logout", response_model=Envelope[LogoutResponse])
async def logout(
    request: LogoutRequest | None = None,
    current: AuthenticatedPrincipal = Depends(require_principal),
    db: AsyncSession = Depends(get_db),
    token_service: TokenService = Depends(get_token_service),
    store: RevocationStore = Depends(get_revocation_store),
) -> Envelope[LogoutResponse]:
    """Revoke the current access token and, if supplied, a refresh token.

    A refresh token that fails verification or belongs to another principal
    is ignored; logout of the access token still succeeds.
    """
    revoked = []
    await _revoke(
        store,
        db,
        RevocationRecord(current.token_id, current.principal_id, current.expires_at),
    )
    revoked.append(TokenKind.ACCESS.value)

    if request is not None and request.refresh_token:
        try:
            payload = token_service.verify(request.refresh_token)
        except TokenError as e:
            logger.info(f"Ignoring unverifiable refresh token on logout: {type(e).__name__}")
            payload = None

        if payload is not None:
            if payload.kind is TokenKind.REFRESH and payload.principal_id == current.principal_id:
                await _revoke(
                    store,
                    db,
                    RevocationRecord(payload.token_id, payload.principal_id, payload.expires_at),
                )
                revoked.append(TokenKind.REFRESH.value)
            else:
                logger.warning(
                    f"Ignoring foreign or non-refresh token on logout by {current.principal_id}",
                    extra={"principal_id": current.principal_id},
                )

    logger.info(
        f"Principal {current.principal_id} logged out",
        extra={"principal_id": current.principal_id},
    )
    return Envelope(data=LogoutResponse(revoked=revoked), message="Logged out successfully")


@router.get("/profile", response_model=Envelope[IdentityResponse])
async def get_profile(
    current: AuthenticatedPrincipal = Depends(require_principal),
) -> Envelope[IdentityResponse]:
    """The identity bound by the access token."""
    return Envelope(data=IdentityResponse(id=current.principal_id, email=current.email))
