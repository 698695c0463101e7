# Email Insight Services
from app.services.auth_gate import AuthenticatedPrincipal, AuthGate
from app.services.principals import PrincipalDirectory
from app.services.revocation import InMemoryRevocationStore, RevocationRecord, RevocationStore
from app.services.tokens import PrincipalIdentity, TokenPair, TokenService

__all__ = [
    "AuthGate",
    "AuthenticatedPrincipal",
    "InMemoryRevocationStore",
    "PrincipalDirectory",
    "PrincipalIdentity",
    "RevocationRecord",
    "RevocationStore",
    "TokenPair",
    "TokenService",
]
