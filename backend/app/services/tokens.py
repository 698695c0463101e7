"""Token service: issue, verify and rotate signed access/refresh credentials."""

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum
from typing import Any

import jwt
from jwt.exceptions import PyJWTError

from app.core.config import Settings
from app.services.crypto import generate_random_string
from app.services.revocation import RevocationStore

logger = logging.getLogger(__name__)

BEARER_PREFIX = "Bearer "

# Claims every token must carry to be decoded at all
REQUIRED_CLAIMS = ["sub", "email", "type", "jti", "iat", "exp", "iss", "aud"]


class TokenError(Exception):
    """Base token error."""


class TokenIssuanceError(TokenError):
    """Signing failed (misconfigured secret or algorithm)."""


class TokenInvalidError(TokenError):
    """Bad signature, malformed structure, wrong algorithm or missing claims."""


class TokenExpiredError(TokenError):
    """Signature is valid but the token is past its expiry."""


class NotARefreshTokenError(TokenError):
    """An access token was presented where a refresh token is required."""


class RefreshRevokedError(TokenError):
    """The refresh token was already used for a rotation or was revoked."""


class TokenKind(str, Enum):
    ACCESS = "access"
    REFRESH = "refresh"


@dataclass(frozen=True)
class PrincipalIdentity:
    """The opaque authenticated principal handed to ``issue``."""

    principal_id: int
    email: str


@dataclass(frozen=True)
class CredentialPayload:
    """Decoded content of a verified token. Timestamps are Unix seconds."""

    principal_id: int
    email: str
    kind: TokenKind
    token_id: str
    issued_at: int
    expires_at: int


@dataclass(frozen=True)
class TokenPair:
    access_token: str
    refresh_token: str
    expires_in: int
    access_expires_at: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "access_token": self.access_token,
            "refresh_token": self.refresh_token,
            "token_type": "bearer",
            "expires_in": self.expires_in,
            "expires_at": self.access_expires_at,
        }


def extract_bearer_token(authorization: str | None) -> str | None:
    """Return the credential from an ``Authorization`` header value.

    Matching is exact: the prefix is case-sensitive ``Bearer`` followed by
    exactly one space, and the remainder must be non-empty with no further
    whitespace. ``bearer x``, ``BEARER x``, ``Bearertoken`` and
    ``Bearer  x`` all return None.
    """
    if not authorization or not authorization.startswith(BEARER_PREFIX):
        return None
    token = authorization[len(BEARER_PREFIX) :]
    if not token or token != token.strip() or " " in token:
        return None
    return token


class TokenService:
    """Issues and verifies HMAC-signed JWT pairs.

    ``clock`` returns the current Unix time and is used for both the ``iat``/
    ``exp`` claims and the expiry check, so tests can move time.
    """

    def __init__(
        self,
        secret_key: str,
        revocation_store: RevocationStore,
        algorithm: str = "HS256",
        issuer: str = "email-insight",
        audience: str = "email-insight-users",
        access_ttl_seconds: int = 60 * 60,
        refresh_ttl_seconds: int = 60 * 60 * 24 * 7,
        clock: Callable[[], float] = time.time,
    ):
        self._secret_key = secret_key
        self._algorithm = algorithm
        self._issuer = issuer
        self._audience = audience
        self._access_ttl = access_ttl_seconds
        self._refresh_ttl = refresh_ttl_seconds
        self._clock = clock
        self.revocation_store = revocation_store

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        revocation_store: RevocationStore,
        clock: Callable[[], float] = time.time,
    ) -> "TokenService":
        return cls(
            secret_key=settings.effective_jwt_secret_key,
            revocation_store=revocation_store,
            algorithm=settings.jwt_algorithm,
            issuer=settings.jwt_issuer,
            audience=settings.jwt_audience,
            access_ttl_seconds=settings.jwt_access_token_expire_minutes * 60,
            refresh_ttl_seconds=settings.jwt_refresh_token_expire_days * 86400,
            clock=clock,
        )

    @property
    def algorithm(self) -> str:
        return self._algorithm

    @property
    def access_ttl_seconds(self) -> int:
        return self._access_ttl

    def _sign(self, principal: PrincipalIdentity, kind: TokenKind, now: int, ttl: int) -> str:
        payload = {
            "sub": str(principal.principal_id),
            "email": principal.email,
            "type": kind.value,
            "jti": generate_random_string(16),
            "iat": now,
            "exp": now + ttl,
            "iss": self._issuer,
            "aud": self._audience,
        }
        try:
            token = jwt.encode(payload, self._secret_key, algorithm=self._algorithm)
        except (PyJWTError, NotImplementedError, TypeError, ValueError) as e:
            logger.error(f"Failed to sign {kind.value} token: {type(e).__name__}")
            raise TokenIssuanceError("Token signing failed") from e
        # PyJWT 2.x returns str; older type stubs may declare bytes
        return str(token)

    def issue(self, principal: PrincipalIdentity) -> TokenPair:
        """Create a fresh access/refresh pair. No storage is touched."""
        if not self._secret_key:
            raise TokenIssuanceError("No signing secret configured")
        now = int(self._clock())
        access = self._sign(principal, TokenKind.ACCESS, now, self._access_ttl)
        refresh = self._sign(principal, TokenKind.REFRESH, now, self._refresh_ttl)
        return TokenPair(
            access_token=access,
            refresh_token=refresh,
            expires_in=self._access_ttl,
            access_expires_at=now + self._access_ttl,
        )

    def verify(self, token: str) -> CredentialPayload:
        """Validate signature, claims and expiry and return the payload.

        The declared ``alg`` header must equal the configured algorithm; a
        token claiming ``none`` or any other algorithm is rejected before the
        signature is even considered.
        """
        try:
            header = jwt.get_unverified_header(token)
        except PyJWTError as e:
            raise TokenInvalidError("Malformed token") from e

        if header.get("alg") != self._algorithm:
            logger.warning(f"Rejected token declaring algorithm {header.get('alg')!r}")
            raise TokenInvalidError("Unexpected signing algorithm")

        try:
            claims = jwt.decode(
                token,
                self._secret_key,
                algorithms=[self._algorithm],
                issuer=self._issuer,
                audience=self._audience,
                # Expiry is checked below against self._clock
                options={"require": REQUIRED_CLAIMS, "verify_exp": False, "verify_iat": False},
            )
        except PyJWTError as e:
            raise TokenInvalidError(f"Invalid token: {type(e).__name__}") from e

        payload = self._to_payload(claims)
        if self._clock() >= payload.expires_at:
            raise TokenExpiredError("Token has expired")
        return payload

    def verify_authorization(self, authorization: str | None) -> CredentialPayload:
        """Verify the credential carried by an ``Authorization`` header value."""
        token = extract_bearer_token(authorization)
        if token is None:
            raise TokenInvalidError("Missing or malformed Bearer credential")
        return self.verify(token)

    def rotate_refresh(self, refresh_token: str) -> TokenPair:
        """Exchange a refresh token for a new pair, consuming the old one.

        The presented token id is revoked with a test-and-set before the new
        pair is issued, so of two concurrent rotations with the same token
        exactly one succeeds and any later replay fails.
        """
        payload = self.verify(refresh_token)
        if payload.kind is not TokenKind.REFRESH:
            raise NotARefreshTokenError("Not a refresh token")

        if not self.revocation_store.revoke(
            payload.token_id, payload.principal_id, payload.expires_at
        ):
            logger.warning(
                f"Refresh token reuse detected for principal {payload.principal_id}",
                extra={"principal_id": payload.principal_id},
            )
            raise RefreshRevokedError("Refresh token has been revoked")

        return self.issue(PrincipalIdentity(payload.principal_id, payload.email))

    @staticmethod
    def _to_payload(claims: dict[str, Any]) -> CredentialPayload:
        try:
            return CredentialPayload(
                principal_id=int(claims["sub"]),
                email=str(claims["email"]),
                kind=TokenKind(claims["type"]),
                token_id=str(claims["jti"]),
                issued_at=int(claims["iat"]),
                expires_at=int(claims["exp"]),
            )
        except (KeyError, TypeError, ValueError) as e:
            raise TokenInvalidError("Malformed token claims") from e
