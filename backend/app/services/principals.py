"""Principal directory: existence lookups and stored provider credentials."""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Protocol

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.user import User
from app.services.crypto import decrypt, encrypt

logger = logging.getLogger(__name__)


class PrincipalLookup(Protocol):
    """The single question the auth gate asks about a principal."""

    async def exists(self, principal_id: int) -> bool: ...


@dataclass(frozen=True)
class ProviderCredentials:
    access_token: str
    refresh_token: str
    expires_at: datetime | None


def _aad(user_id: int, column: str) -> str:
    return f"user:{user_id}:{column}"


class PrincipalDirectory:
    """SQL-backed principal lookups.

    Runs on the caller's session, so a lookup made during a request is
    cancelled together with that request.
    """

    def __init__(self, session: AsyncSession):
        self.session = session

    async def exists(self, principal_id: int) -> bool:
        result = await self.session.execute(select(User.id).where(User.id == principal_id))
        return result.scalar_one_or_none() is not None

    async def get(self, principal_id: int) -> User | None:
        result = await self.session.execute(select(User).where(User.id == principal_id))
        return result.scalar_one_or_none()

    async def create(self, provider_subject: str, email: str, name: str | None = None) -> User:
        """Register a principal that the upstream OAuth exchange authenticated."""
        user = User(provider_subject=provider_subject, email=email, name=name)
        self.session.add(user)
        await self.session.flush()
        await self.session.refresh(user)
        logger.info(f"Created user {user.id}")
        return user

    async def delete(self, user: User) -> None:
        await self.session.delete(user)
        await self.session.flush()

    async def store_provider_credentials(
        self, user: User, credentials: ProviderCredentials
    ) -> None:
        """Encrypt and store the upstream provider's OAuth tokens."""
        user.provider_access_token = encrypt(
            credentials.access_token, aad=_aad(user.id, "provider_access_token")
        )
        user.provider_refresh_token = encrypt(
            credentials.refresh_token, aad=_aad(user.id, "provider_refresh_token")
        )
        user.provider_token_expiry = credentials.expires_at
        await self.session.flush()

    def get_provider_credentials(self, user: User) -> ProviderCredentials | None:
        """Decrypt the stored provider tokens, or None if none are stored."""
        if user.provider_access_token is None or user.provider_refresh_token is None:
            return None
        return ProviderCredentials(
            access_token=decrypt(
                user.provider_access_token, aad=_aad(user.id, "provider_access_token")
            ),
            refresh_token=decrypt(
                user.provider_refresh_token, aad=_aad(user.id, "provider_refresh_token")
            ),
            expires_at=user.provider_token_expiry,
        )
