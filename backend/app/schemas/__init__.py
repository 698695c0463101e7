# Email Insight Pydantic Schemas
from app.schemas.auth import (
    AccountResponse,
    Envelope,
    GreetingResponse,
    IdentityResponse,
    LogoutRequest,
    LogoutResponse,
    QuotaReservationResponse,
    RefreshRequest,
    TokenResponse,
)

__all__ = [
    "AccountResponse",
    "Envelope",
    "GreetingResponse",
    "IdentityResponse",
    "LogoutRequest",
    "LogoutResponse",
    "QuotaReservationResponse",
    "RefreshRequest",
    "TokenResponse",
]
