"""Revocation store: token ids that are no longer honored before their expiry.

The in-memory store is the authority checked on every request. The
``RevocationRepository`` journals the same records to the ``revoked_tokens``
table so revocations survive a restart: records are written on logout and
rotation, and loaded back into the store at startup.
"""

import logging
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any, Protocol, runtime_checkable

from sqlalchemy import delete, select
from sqlalchemy.engine import CursorResult
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.revoked_token import RevokedToken

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RevocationRecord:
    """A revoked token id; ``expires_at`` is the token's own expiry (Unix seconds)."""

    token_id: str
    principal_id: int
    expires_at: float


@runtime_checkable
class RevocationStore(Protocol):
    """Interface the token service and auth gate depend on.

    Implementations must make ``revoke`` and ``is_revoked`` linearizable: a
    revoke that returns before an ``is_revoked`` call starts is always seen.
    """

    def revoke(self, token_id: str, principal_id: int, expires_at: float) -> bool: ...

    def is_revoked(self, token_id: str) -> bool: ...

    def get(self, token_id: str) -> RevocationRecord | None: ...

    def purge_expired(self) -> int: ...

    def __len__(self) -> int: ...


class InMemoryRevocationStore:
    """Process-local revocation store guarded by a single lock.

    Every operation is a dict access under ``threading.Lock``, so the store
    is safe both on the event loop and from worker threads. Expired entries
    are evicted on lookup, lazily on write (at most once per
    ``cleanup_interval`` seconds) and by ``purge_expired``.
    """

    def __init__(
        self,
        cleanup_interval: float = 60.0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._records: dict[str, RevocationRecord] = {}
        self._lock = threading.Lock()
        self._clock = clock
        self._cleanup_interval = cleanup_interval
        self._last_cleanup = clock()

    def revoke(self, token_id: str, principal_id: int, expires_at: float) -> bool:
        """Record ``token_id`` as revoked until ``expires_at``.

        Returns True if a new record was created. Revoking an id that is
        already revoked is a no-op and returns False, which lets callers use
        this as an atomic test-and-set. A record whose expiry has already
        passed is never created (the token is dead anyway).
        """
        now = self._clock()
        if expires_at <= now:
            logger.debug(f"Skipping revocation of already-expired token {token_id}")
            return False

        with self._lock:
            existing = self._records.get(token_id)
            if existing is not None and existing.expires_at > now:
                return False
            self._records[token_id] = RevocationRecord(token_id, principal_id, expires_at)
            if now - self._last_cleanup >= self._cleanup_interval:
                self._purge_locked(now)
        return True

    def is_revoked(self, token_id: str) -> bool:
        now = self._clock()
        with self._lock:
            record = self._records.get(token_id)
            if record is None:
                return False
            if record.expires_at <= now:
                del self._records[token_id]
                return False
            return True

    def get(self, token_id: str) -> RevocationRecord | None:
        with self._lock:
            return self._records.get(token_id)

    def purge_expired(self) -> int:
        """Remove records past their expiry. Returns count removed."""
        now = self._clock()
        with self._lock:
            return self._purge_locked(now)

    def _purge_locked(self, now: float) -> int:
        expired = [tid for tid, rec in self._records.items() if rec.expires_at <= now]
        for tid in expired:
            del self._records[tid]
        self._last_cleanup = now
        return len(expired)

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)


class RevocationRepository:
    """Durable journal of revocation records in the ``revoked_tokens`` table."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def persist(self, record: RevocationRecord) -> None:
        """Write a record; an id that is already journaled is left untouched."""
        existing = await self.session.get(RevokedToken, record.token_id)
        if existing is not None:
            return
        self.session.add(
            RevokedToken(
                jti=record.token_id,
                user_id=record.principal_id,
                expires_at=datetime.fromtimestamp(record.expires_at, tz=UTC),
            )
        )
        await self.session.flush()

    async def load_active(self) -> list[RevocationRecord]:
        """All journaled records that have not expired yet."""
        now = datetime.now(tz=UTC)
        result = await self.session.execute(
            select(RevokedToken).where(RevokedToken.expires_at > now)
        )
        return [
            RevocationRecord(
                token_id=row.jti,
                principal_id=row.user_id,
                expires_at=_as_utc(row.expires_at).timestamp(),
            )
            for row in result.scalars()
        ]

    async def cleanup_expired(self) -> int:
        """Remove expired rows. Returns count removed."""
        now = datetime.now(tz=UTC)
        result: CursorResult[Any] = await self.session.execute(  # type: ignore[assignment]
            delete(RevokedToken).where(RevokedToken.expires_at <= now)
        )
        return result.rowcount or 0


def _as_utc(value: datetime) -> datetime:
    # SQLite hands back naive datetimes even for timezone-aware columns
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value


async def warm_revocation_store(store: RevocationStore, session: AsyncSession) -> int:
    """Load unexpired journaled records into ``store``. Returns count loaded."""
    records = await RevocationRepository(session).load_active()
    loaded = 0
    for record in records:
        if store.revoke(record.token_id, record.principal_id, record.expires_at):
            loaded += 1
    return loaded
