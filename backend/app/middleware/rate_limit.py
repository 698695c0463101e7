"""Tiered fixed-window rate limiting for API protection."""

import logging
import math
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import Enum

from fastapi import Request, Response, status
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.types import ASGIApp

from app.core.errors import RATE_LIMIT_ERROR, error_body
from app.core.logging import request_extra
from app.core.request_utils import get_client_ip

logger = logging.getLogger(__name__)


class RateLimitTier(str, Enum):
    """Independently budgeted classes of routes."""

    AUTH_FAILURE = "auth_failure"
    GENERAL_API = "general_api"
    UPSTREAM_QUOTA = "upstream_quota"


@dataclass(frozen=True)
class TierConfig:
    """Budget for one tier: ``points`` per ``duration`` seconds.

    Exhausting the budget blocks the key for ``block_duration`` seconds,
    counted from the refused request.
    """

    points: int
    duration: float
    block_duration: float


DEFAULT_TIERS: dict[RateLimitTier, TierConfig] = {
    # Failed authentications per IP
    RateLimitTier.AUTH_FAILURE: TierConfig(points=5, duration=900, block_duration=900),
    RateLimitTier.GENERAL_API: TierConfig(points=100, duration=60, block_duration=60),
    # Mail provider quota: 250 units per user per 100 seconds
    RateLimitTier.UPSTREAM_QUOTA: TierConfig(points=250, duration=100, block_duration=100),
}


@dataclass
class RateLimitBucket:
    """Budget tracking for a single (tier, caller key) pair."""

    consumed: int
    window_reset_at: float
    blocked_until: float | None = None
    last_update: float = 0.0


@dataclass(frozen=True)
class RateLimitDecision:
    """Outcome of a consume/peek. Times are Unix seconds."""

    allowed: bool
    tier: RateLimitTier
    limit: int
    remaining: int
    reset_at: float
    retry_after_ms: int = 0

    @property
    def retry_after_seconds(self) -> int:
        return max(1, math.ceil(self.retry_after_ms / 1000))

    def headers(self) -> dict[str, str]:
        """Headers for the response; Retry-After only when refused."""
        headers = {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(self.remaining),
            "X-RateLimit-Reset": datetime.fromtimestamp(self.reset_at, tz=UTC).isoformat(),
        }
        if not self.allowed:
            headers["Retry-After"] = str(self.retry_after_seconds)
        return headers


class RateLimiter:
    """In-memory, per-process rate limiter over configurable tiers.

    Buckets live in one dict guarded by a ``threading.Lock``; the whole
    read-check-increment for a key happens under that lock and never awaits,
    so concurrent callers (threads or tasks) cannot over-consume.
    """

    def __init__(
        self,
        tiers: dict[RateLimitTier, TierConfig] | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._tiers: dict[RateLimitTier, TierConfig] = dict(tiers or DEFAULT_TIERS)
        self._buckets: dict[tuple[RateLimitTier, str], RateLimitBucket] = {}
        self._lock = threading.Lock()
        self._clock = clock

    def configure_tier(self, tier: RateLimitTier, config: TierConfig) -> None:
        """Replace a tier's budget. Existing buckets keep their current window."""
        with self._lock:
            self._tiers[tier] = config

    def _live_bucket(
        self, tier: RateLimitTier, key: str, now: float
    ) -> RateLimitBucket | None:
        """The key's bucket if its window or block is still running."""
        bucket = self._buckets.get((tier, key))
        if bucket is None:
            return None
        if bucket.blocked_until is not None:
            if now < bucket.blocked_until:
                return bucket
        elif now < bucket.window_reset_at:
            return bucket
        del self._buckets[(tier, key)]
        return None

    def _blocked(
        self, tier: RateLimitTier, config: TierConfig, until: float, now: float
    ) -> RateLimitDecision:
        return RateLimitDecision(
            allowed=False,
            tier=tier,
            limit=config.points,
            remaining=0,
            reset_at=until,
            retry_after_ms=max(1, math.ceil((until - now) * 1000)),
        )

    def consume(self, tier: RateLimitTier, key: str, points: int = 1) -> RateLimitDecision:
        """Spend ``points`` from the key's budget in ``tier``.

        A key that is blocked is refused without touching its counter, even
        if its original window would already have reset.
        """
        config = self._tiers[tier]
        with self._lock:
            now = self._clock()
            bucket = self._live_bucket(tier, key, now)

            if bucket is not None and bucket.blocked_until is not None:
                return self._blocked(tier, config, bucket.blocked_until, now)

            if bucket is None:
                bucket = RateLimitBucket(consumed=0, window_reset_at=now + config.duration)
                self._buckets[(tier, key)] = bucket

            bucket.last_update = now
            if bucket.consumed + points > config.points:
                bucket.blocked_until = now + config.block_duration
                logger.info(
                    f"Rate limit exhausted for {key} in tier {tier.value}",
                    extra={"tier": tier.value},
                )
                return self._blocked(tier, config, bucket.blocked_until, now)

            bucket.consumed += points
            return RateLimitDecision(
                allowed=True,
                tier=tier,
                limit=config.points,
                remaining=config.points - bucket.consumed,
                reset_at=bucket.window_reset_at,
            )

    def peek(self, tier: RateLimitTier, key: str) -> RateLimitDecision:
        """Report the key's current standing without consuming anything.

        ``allowed`` is False when the key is blocked or when one more point
        would exceed its budget.
        """
        config = self._tiers[tier]
        with self._lock:
            now = self._clock()
            bucket = self._live_bucket(tier, key, now)
            if bucket is None:
                return RateLimitDecision(
                    allowed=True,
                    tier=tier,
                    limit=config.points,
                    remaining=config.points,
                    reset_at=now + config.duration,
                )
            if bucket.blocked_until is not None:
                return self._blocked(tier, config, bucket.blocked_until, now)
            if bucket.consumed >= config.points:
                return self._blocked(tier, config, bucket.window_reset_at, now)
            return RateLimitDecision(
                allowed=True,
                tier=tier,
                limit=config.points,
                remaining=config.points - bucket.consumed,
                reset_at=bucket.window_reset_at,
            )

    def check(self, tier: RateLimitTier, key: str) -> RateLimitDecision:
        """Admission check for tiers charged only after the fact.

        Like ``peek`` but an exhausted budget starts the block here, so the
        caller waits the full ``block_duration`` from this refusal rather
        than just the rest of the window.
        """
        config = self._tiers[tier]
        with self._lock:
            now = self._clock()
            bucket = self._live_bucket(tier, key, now)
            if bucket is not None and bucket.blocked_until is None:
                if bucket.consumed >= config.points:
                    bucket.blocked_until = now + config.block_duration
                    bucket.last_update = now
                    logger.info(
                        f"Rate limit exhausted for {key} in tier {tier.value}",
                        extra={"tier": tier.value},
                    )
            if bucket is not None and bucket.blocked_until is not None:
                return self._blocked(tier, config, bucket.blocked_until, now)

        return self.peek(tier, key)

    def get_stats(self) -> dict[str, dict]:
        """Current buckets keyed by ``tier:key``."""
        with self._lock:
            return {
                f"{tier.value}:{key}": {
                    "consumed": bucket.consumed,
                    "window_reset_at": bucket.window_reset_at,
                    "blocked_until": bucket.blocked_until,
                }
                for (tier, key), bucket in self._buckets.items()
            }

    def reset(self, key: str | None = None, tier: RateLimitTier | None = None) -> None:
        """Drop buckets for ``key`` (optionally only in ``tier``), or all buckets."""
        with self._lock:
            if key is None and tier is None:
                self._buckets.clear()
                return
            doomed = [
                bucket_key
                for bucket_key in self._buckets
                if (key is None or bucket_key[1] == key) and (tier is None or bucket_key[0] == tier)
            ]
            for bucket_key in doomed:
                del self._buckets[bucket_key]

    def cleanup_inactive_buckets(self) -> int:
        """Remove buckets whose window and block have both elapsed.

        Prevents unbounded memory growth from abandoned caller keys.

        Returns:
            Number of buckets removed
        """
        with self._lock:
            now = self._clock()
            before = len(self._buckets)
            for tier, key in list(self._buckets):
                self._live_bucket(tier, key, now)
            removed = before - len(self._buckets)

        if removed:
            logger.info(f"Cleaned up {removed} inactive rate limit buckets")
        return removed


def rate_limited_response(decision: RateLimitDecision) -> JSONResponse:
    """The 429 response for a refused decision."""
    return JSONResponse(
        status_code=status.HTTP_429_TOO_MANY_REQUESTS,
        content=error_body(
            RATE_LIMIT_ERROR.code, RATE_LIMIT_ERROR.message, RATE_LIMIT_ERROR.severity
        ),
        headers=decision.headers(),
    )


class RateLimitMiddleware(BaseHTTPMiddleware):
    """Applies the general API tier, keyed by caller IP, to ``/api`` routes.

    Allowed responses carry X-RateLimit-* headers so clients can
    self-throttle; refused requests get 429 with Retry-After.
    """

    def __init__(
        self,
        app: ASGIApp,
        rate_limiter: RateLimiter,
        protected_prefixes: tuple[str, ...] = ("/api",),
        trusted_proxies: set[str] | None = None,
        enabled: bool = True,
    ) -> None:
        super().__init__(app)
        self.rate_limiter = rate_limiter
        self.protected_prefixes = protected_prefixes
        self.trusted_proxies = trusted_proxies or set()
        self.enabled = enabled

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        if not self.enabled:
            return await call_next(request)

        path = request.url.path
        if not any(path == p or path.startswith(p + "/") for p in self.protected_prefixes):
            return await call_next(request)

        client_ip = get_client_ip(request, self.trusted_proxies)
        decision = self.rate_limiter.consume(RateLimitTier.GENERAL_API, client_ip)

        if not decision.allowed:
            logger.warning(
                f"Rate limit exceeded for {client_ip} on {path}",
                extra=request_extra(request, tier=RateLimitTier.GENERAL_API.value),
            )
            return rate_limited_response(decision)

        response = await call_next(request)
        # Inner tiers (upstream quota) may already have set their own headers
        for header, value in decision.headers().items():
            response.headers.setdefault(header, value)
        return response
