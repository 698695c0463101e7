"""Tests for the auth gate stages and their error codes."""

import jwt
import pytest

from app.core.errors import AUTH_ERROR_SPECS, AuthErrorKind, AuthRejected, ErrorSeverity
from app.services.auth_gate import AuthGate
from app.services.tokens import PrincipalIdentity

ALICE = PrincipalIdentity(principal_id=1, email="alice@example.com")


class FakePrincipals:
    def __init__(self, *ids: int):
        self.ids = set(ids)
        self.calls = 0

    async def exists(self, principal_id: int) -> bool:
        self.calls += 1
        return principal_id in self.ids


class BrokenPrincipals:
    async def exists(self, principal_id: int) -> bool:
        raise RuntimeError("connection reset by peer")


@pytest.fixture
def principals():
    return FakePrincipals(ALICE.principal_id)


@pytest.fixture
def gate(token_service, revocation_store, principals):
    return AuthGate(token_service, revocation_store, principals)


async def _rejection(gate: AuthGate, authorization: str | None) -> AuthErrorKind:
    with pytest.raises(AuthRejected) as exc_info:
        await gate.authenticate(authorization)
    return exc_info.value.kind


class TestAuthGate:
    @pytest.mark.asyncio
    async def test_admits_valid_token(self, gate, token_service):
        pair = token_service.issue(ALICE)
        principal = await gate.authenticate(f"Bearer {pair.access_token}")

        assert principal.principal_id == 1
        assert principal.email == "alice@example.com"
        assert principal.token_id == token_service.verify(pair.access_token).token_id

    @pytest.mark.asyncio
    @pytest.mark.parametrize("header", [None, "", "Basic abc", "bearer abc", "Bearer "])
    async def test_missing_token(self, gate, header):
        assert await _rejection(gate, header) is AuthErrorKind.MISSING_TOKEN

    @pytest.mark.asyncio
    async def test_invalid_token(self, gate):
        assert await _rejection(gate, "Bearer not-a-jwt") is AuthErrorKind.INVALID_TOKEN

    @pytest.mark.asyncio
    async def test_expired_token_is_invalid(self, gate, token_service, clock):
        pair = token_service.issue(ALICE)
        clock.advance(3600)
        kind = await _rejection(gate, f"Bearer {pair.access_token}")
        assert kind is AuthErrorKind.INVALID_TOKEN

    @pytest.mark.asyncio
    async def test_refresh_token_is_not_an_access_credential(self, gate, token_service):
        pair = token_service.issue(ALICE)
        kind = await _rejection(gate, f"Bearer {pair.refresh_token}")
        assert kind is AuthErrorKind.INVALID_TOKEN

    @pytest.mark.asyncio
    async def test_revoked_token(self, gate, token_service, revocation_store):
        pair = token_service.issue(ALICE)
        payload = token_service.verify(pair.access_token)
        revocation_store.revoke(payload.token_id, payload.principal_id, payload.expires_at)

        kind = await _rejection(gate, f"Bearer {pair.access_token}")
        assert kind is AuthErrorKind.TOKEN_REVOKED

    @pytest.mark.asyncio
    async def test_revocation_checked_before_principal(
        self, token_service, revocation_store, principals
    ):
        gate = AuthGate(token_service, revocation_store, principals)
        pair = token_service.issue(ALICE)
        payload = token_service.verify(pair.access_token)
        revocation_store.revoke(payload.token_id, payload.principal_id, payload.expires_at)

        await _rejection(gate, f"Bearer {pair.access_token}")
        assert principals.calls == 0

    @pytest.mark.asyncio
    async def test_principal_not_found(self, token_service, revocation_store):
        gate = AuthGate(token_service, revocation_store, FakePrincipals())
        pair = token_service.issue(ALICE)
        kind = await _rejection(gate, f"Bearer {pair.access_token}")
        assert kind is AuthErrorKind.PRINCIPAL_NOT_FOUND

    @pytest.mark.asyncio
    async def test_unexpected_failure_is_auth_error(self, token_service, revocation_store):
        gate = AuthGate(token_service, revocation_store, BrokenPrincipals())
        pair = token_service.issue(ALICE)

        with pytest.raises(AuthRejected) as exc_info:
            await gate.authenticate(f"Bearer {pair.access_token}")

        assert exc_info.value.kind is AuthErrorKind.AUTH_ERROR
        # Internal detail never reaches the response body
        assert "connection reset" not in str(exc_info.value.to_response())

    @pytest.mark.asyncio
    async def test_forged_algorithm_is_invalid(self, gate, clock):
        now = int(clock())
        token = jwt.encode(
            {
                "sub": "1",
                "email": "alice@example.com",
                "type": "access",
                "jti": "x",
                "iat": now,
                "exp": now + 60,
                "iss": "email-insight",
                "aud": "email-insight-users",
            },
            "test-jwt-secret-key-with-at-least-32-chars",
            algorithm="HS384",
        )
        assert await _rejection(gate, f"Bearer {token}") is AuthErrorKind.INVALID_TOKEN


class TestOptionalAuth:
    @pytest.mark.asyncio
    async def test_binds_identity_when_valid(self, gate, token_service):
        pair = token_service.issue(ALICE)
        principal = await gate.authenticate_optional(f"Bearer {pair.access_token}")
        assert principal is not None and principal.principal_id == 1

    @pytest.mark.asyncio
    @pytest.mark.parametrize("header", [None, "Bearer garbage", "Basic abc"])
    async def test_never_rejects(self, gate, header):
        assert await gate.authenticate_optional(header) is None

    @pytest.mark.asyncio
    async def test_revoked_token_continues_anonymously(
        self, gate, token_service, revocation_store
    ):
        pair = token_service.issue(ALICE)
        payload = token_service.verify(pair.access_token)
        revocation_store.revoke(payload.token_id, 1, payload.expires_at)
        assert await gate.authenticate_optional(f"Bearer {pair.access_token}") is None


class TestErrorTable:
    def test_every_kind_is_mapped(self):
        assert set(AUTH_ERROR_SPECS) == set(AuthErrorKind)

    @pytest.mark.parametrize(
        "kind,status,severity",
        [
            (AuthErrorKind.MISSING_TOKEN, 401, ErrorSeverity.MEDIUM),
            (AuthErrorKind.INVALID_TOKEN, 401, ErrorSeverity.MEDIUM),
            (AuthErrorKind.TOKEN_REVOKED, 401, ErrorSeverity.MEDIUM),
            (AuthErrorKind.PRINCIPAL_NOT_FOUND, 401, ErrorSeverity.HIGH),
            (AuthErrorKind.AUTH_ERROR, 500, ErrorSeverity.HIGH),
        ],
    )
    def test_status_and_severity(self, kind, status, severity):
        spec = AUTH_ERROR_SPECS[kind]
        assert spec.http_status == status
        assert spec.severity is severity
        assert spec.code == kind.value

    def test_response_shape(self):
        body = AuthRejected(AuthErrorKind.TOKEN_REVOKED).to_response()
        assert body == {
            "success": False,
            "error": {
                "code": "TOKEN_REVOKED",
                "message": "Token has been revoked",
                "severity": "medium",
            },
        }
