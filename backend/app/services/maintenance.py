"""Background housekeeping for the revocation store and rate limiter."""

import asyncio
import logging

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.middleware.rate_limit import RateLimiter
from app.services.revocation import RevocationRepository, RevocationStore

logger = logging.getLogger(__name__)


def task_done_callback(task: asyncio.Task[None]) -> None:
    """Log unhandled exceptions from background tasks."""
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.error(f"Background task {task.get_name()} failed: {exc}")


async def purge_revocations(
    store: RevocationStore,
    session_factory: async_sessionmaker[AsyncSession],
) -> tuple[int, int]:
    """Purge expired revocations from memory and the journal table.

    Returns (memory_removed, db_removed).
    """
    memory_removed = store.purge_expired()
    async with session_factory() as db:
        db_removed = await RevocationRepository(db).cleanup_expired()
        await db.commit()
    return memory_removed, db_removed


async def revocation_cleanup_loop(
    store: RevocationStore,
    session_factory: async_sessionmaker[AsyncSession],
    interval: float,
) -> None:
    """Periodically drop revocation records whose tokens have expired anyway."""
    while True:
        await asyncio.sleep(interval)
        try:
            memory_removed, db_removed = await purge_revocations(store, session_factory)
            if memory_removed or db_removed:
                logger.info(
                    f"Cleaned up expired revocations: {memory_removed} in memory, "
                    f"{db_removed} in database"
                )
        except Exception:
            logger.exception("Error cleaning up revocation records")


async def rate_limit_cleanup_loop(rate_limiter: RateLimiter, interval: float) -> None:
    """Periodic cleanup of inactive rate limit buckets to prevent memory leaks."""
    while True:
        try:
            await asyncio.sleep(interval)
            removed = rate_limiter.cleanup_inactive_buckets()
            if removed > 0:
                logger.debug(f"Rate limiter cleanup: removed {removed} inactive buckets")
        except asyncio.CancelledError:
            break
        except Exception as e:
            logger.warning(f"Rate limiter cleanup error: {e}")
