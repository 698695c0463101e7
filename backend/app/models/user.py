"""User model - the principal a credential represents."""

from datetime import datetime
from typing import TYPE_CHECKING

from sqlalchemy import DateTime, Integer, LargeBinary, String
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.models.base import BaseModel

if TYPE_CHECKING:
    from app.models.revoked_token import RevokedToken


class User(BaseModel):
    """A user account.

    The auth gate only needs to know that a row exists. The upstream mail
    provider's OAuth tokens are kept here encrypted with the secret codec
    (AES-256-GCM, AAD bound to the row and column).
    """

    __tablename__ = "users"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    provider_subject: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    email: Mapped[str] = mapped_column(String(320), nullable=False, unique=True, index=True)
    name: Mapped[str | None] = mapped_column(String(255), nullable=True)

    # Encrypted
    provider_access_token: Mapped[bytes | None] = mapped_column(LargeBinary, nullable=True)
    # Encrypted
    provider_refresh_token: Mapped[bytes | None] = mapped_column(LargeBinary, nullable=True)
    provider_token_expiry: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    revoked_tokens: Mapped[list["RevokedToken"]] = relationship(
        back_populates="user",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )

    def __repr__(self) -> str:
        return f"<User {self.id} {self.email}>"
