"""Middleware module for the Email Insight backend."""

from app.middleware.rate_limit import (
    DEFAULT_TIERS,
    RateLimitDecision,
    RateLimiter,
    RateLimitMiddleware,
    RateLimitTier,
    TierConfig,
)
from app.middleware.request_id import RequestIDMiddleware

__all__ = [
    "DEFAULT_TIERS",
    "RateLimitDecision",
    "RateLimitMiddleware",
    "RateLimitTier",
    "RateLimiter",
    "RequestIDMiddleware",
    "TierConfig",
]
