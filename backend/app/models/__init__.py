# Email Insight Models
from app.models.base import BaseModel
from app.models.revoked_token import RevokedToken
from app.models.user import User

__all__ = [
    "BaseModel",
    "RevokedToken",
    "User",
]
