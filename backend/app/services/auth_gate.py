"""Auth gate: turns an Authorization header into an admitted principal.

Stages, stopping at the first failure:

1. extract the Bearer credential          -> MISSING_TOKEN
2. verify signature/claims/expiry         -> INVALID_TOKEN
3. check the revocation store             -> TOKEN_REVOKED
4. confirm the principal still exists     -> PRINCIPAL_NOT_FOUND

Anything unexpected raised during stages 2-4 becomes AUTH_ERROR; the detail
is logged here and never returned to the caller.
"""

import logging
from dataclasses import dataclass

from app.core.errors import AuthErrorKind, AuthRejected
from app.services.principals import PrincipalLookup
from app.services.revocation import RevocationStore
from app.services.tokens import (
    TokenError,
    TokenKind,
    TokenService,
    extract_bearer_token,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AuthenticatedPrincipal:
    """Request-scoped identity bound after a successful gate pass."""

    principal_id: int
    email: str
    token_id: str
    expires_at: int


class AuthGate:
    """Request-time orchestrator over the token service, store and directory."""

    def __init__(
        self,
        token_service: TokenService,
        revocation_store: RevocationStore,
        principals: PrincipalLookup,
    ):
        self.token_service = token_service
        self.revocation_store = revocation_store
        self.principals = principals

    async def authenticate(self, authorization: str | None) -> AuthenticatedPrincipal:
        """Run all stages; raise AuthRejected with the failing stage's kind."""
        token = extract_bearer_token(authorization)
        if token is None:
            raise AuthRejected(AuthErrorKind.MISSING_TOKEN)

        try:
            return await self._admit(token)
        except AuthRejected:
            raise
        except Exception:
            logger.exception("Unexpected error in auth gate")
            raise AuthRejected(AuthErrorKind.AUTH_ERROR) from None

    async def authenticate_optional(
        self, authorization: str | None
    ) -> AuthenticatedPrincipal | None:
        """Like ``authenticate`` but admits the request without identity on failure."""
        try:
            return await self.authenticate(authorization)
        except AuthRejected as e:
            if e.kind is not AuthErrorKind.MISSING_TOKEN:
                logger.debug(f"Optional auth continuing without identity: {e.kind.value}")
            return None

    async def _admit(self, token: str) -> AuthenticatedPrincipal:
        try:
            payload = self.token_service.verify(token)
        except TokenError as e:
            # Expired and invalid collapse to one public code
            logger.info(f"Token rejected: {type(e).__name__}")
            raise AuthRejected(AuthErrorKind.INVALID_TOKEN) from e

        if payload.kind is not TokenKind.ACCESS:
            logger.info("Refresh token presented as access credential")
            raise AuthRejected(AuthErrorKind.INVALID_TOKEN)

        if self.revocation_store.is_revoked(payload.token_id):
            logger.warning(
                f"Revoked token presented by principal {payload.principal_id}",
                extra={"principal_id": payload.principal_id},
            )
            raise AuthRejected(AuthErrorKind.TOKEN_REVOKED)

        if not await self.principals.exists(payload.principal_id):
            logger.error(
                f"Valid unrevoked token for missing principal {payload.principal_id}",
                extra={"principal_id": payload.principal_id, "severity": "high"},
            )
            raise AuthRejected(AuthErrorKind.PRINCIPAL_NOT_FOUND)

        return AuthenticatedPrincipal(
            principal_id=payload.principal_id,
            email=payload.email,
            token_id=payload.token_id,
            expires_at=payload.expires_at,
        )
