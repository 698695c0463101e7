"""Pydantic schemas for the session and account API."""

from datetime import datetime
from typing import Generic, TypeVar

from pydantic import BaseModel, ConfigDict, Field

T = TypeVar("T")


class Envelope(BaseModel, Generic[T]):
    """Success envelope shared by every JSON endpoint."""

    success: bool = True
    data: T
    message: str | None = None


class TokenResponse(BaseModel):
    """A freshly issued access/refresh pair."""

    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    expires_in: int = Field(description="Access token lifetime in seconds")
    expires_at: int = Field(description="Access token expiry as a Unix timestamp")


class RefreshRequest(BaseModel):
    """Request to exchange a refresh token for a new pair."""

    refresh_token: str = Field(..., min_length=1)


class LogoutRequest(BaseModel):
    """Optional refresh token to revoke alongside the access token."""

    refresh_token: str | None = None


class LogoutResponse(BaseModel):
    revoked: list[str] = Field(description="Kinds of token revoked by this call")


class IdentityResponse(BaseModel):
    """The identity bound to the current request."""

    id: int
    email: str


class AccountResponse(BaseModel):
    """Stored account details for the authenticated principal."""

    model_config = ConfigDict(from_attributes=True)

    id: int
    email: str
    name: str | None = None
    created_at: datetime | None = None
    has_provider_credentials: bool = False


class GreetingResponse(BaseModel):
    greeting: str
    authenticated: bool


class QuotaReservationResponse(BaseModel):
    """Result of reserving upstream provider quota."""

    reserved: int
    remaining: int
    reset_at: datetime
