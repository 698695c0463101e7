"""Tests for token issuance, verification and refresh rotation."""

import base64
import json
import threading

import jwt
import pytest

from app.core import settings
from app.services.revocation import InMemoryRevocationStore
from app.services.tokens import (
    NotARefreshTokenError,
    PrincipalIdentity,
    RefreshRevokedError,
    TokenExpiredError,
    TokenInvalidError,
    TokenIssuanceError,
    TokenKind,
    TokenService,
    extract_bearer_token,
)

SECRET = "test-jwt-secret-key-with-at-least-32-chars"
ALICE = PrincipalIdentity(principal_id=42, email="alice@example.com")


def _b64(data: dict) -> str:
    raw = json.dumps(data, separators=(",", ":")).encode()
    return base64.urlsafe_b64encode(raw).rstrip(b"=").decode()


def _claims(clock, **overrides) -> dict:
    now = int(clock())
    claims = {
        "sub": "42",
        "email": "alice@example.com",
        "type": "access",
        "jti": "forged-jti",
        "iat": now,
        "exp": now + 3600,
        "iss": "email-insight",
        "aud": "email-insight-users",
    }
    claims.update(overrides)
    return claims


class TestIssueAndVerify:
    def test_round_trip(self, token_service, clock):
        pair = token_service.issue(ALICE)

        access = token_service.verify(pair.access_token)
        assert access.principal_id == 42
        assert access.email == "alice@example.com"
        assert access.kind is TokenKind.ACCESS
        assert access.issued_at == int(clock())
        assert access.expires_at == int(clock()) + 3600

        refresh = token_service.verify(pair.refresh_token)
        assert refresh.kind is TokenKind.REFRESH
        assert refresh.expires_at == int(clock()) + 7 * 86400

    def test_pair_metadata(self, token_service, clock):
        pair = token_service.issue(ALICE)
        body = pair.to_dict()
        assert body["token_type"] == "bearer"
        assert body["expires_in"] == 3600
        assert body["expires_at"] == int(clock()) + 3600

    def test_token_ids_are_unique(self, token_service):
        first = token_service.issue(ALICE)
        second = token_service.issue(ALICE)
        ids = {
            token_service.verify(t).token_id
            for t in (
                first.access_token,
                first.refresh_token,
                second.access_token,
                second.refresh_token,
            )
        }
        assert len(ids) == 4

    def test_issue_does_not_touch_store(self, token_service, revocation_store):
        token_service.issue(ALICE)
        assert len(revocation_store) == 0

    def test_issue_without_secret_fails(self, revocation_store):
        service = TokenService(secret_key="", revocation_store=revocation_store)
        with pytest.raises(TokenIssuanceError):
            service.issue(ALICE)

    def test_from_settings(self, revocation_store):
        service = TokenService.from_settings(settings, revocation_store)
        assert service.algorithm == settings.jwt_algorithm
        assert service.access_ttl_seconds == settings.jwt_access_token_expire_minutes * 60
        pair = service.issue(ALICE)
        assert service.verify(pair.access_token).principal_id == 42


class TestExpiry:
    def test_valid_one_second_before_expiry(self, token_service, clock):
        pair = token_service.issue(ALICE)
        clock.advance(3599)
        assert token_service.verify(pair.access_token).principal_id == 42

    def test_expired_at_exact_expiry(self, token_service, clock):
        pair = token_service.issue(ALICE)
        clock.advance(3600)
        with pytest.raises(TokenExpiredError):
            token_service.verify(pair.access_token)

    def test_expired_one_second_after(self, token_service, clock):
        pair = token_service.issue(ALICE)
        clock.advance(3601)
        with pytest.raises(TokenExpiredError):
            token_service.verify(pair.access_token)


class TestRejection:
    def test_wrong_secret(self, token_service, clock):
        token = jwt.encode(_claims(clock), "another-secret-that-is-long-enough!!", "HS256")
        with pytest.raises(TokenInvalidError):
            token_service.verify(token)

    def test_algorithm_none(self, token_service, clock):
        token = f"{_b64({'alg': 'none', 'typ': 'JWT'})}.{_b64(_claims(clock))}."
        with pytest.raises(TokenInvalidError):
            token_service.verify(token)

    def test_other_hmac_algorithm_with_same_secret(self, token_service, clock):
        """A token signed correctly but declaring HS512 is still rejected."""
        token = jwt.encode(_claims(clock), SECRET, algorithm="HS512")
        with pytest.raises(TokenInvalidError):
            token_service.verify(token)

    def test_tampered_payload(self, token_service):
        pair = token_service.issue(ALICE)
        header, _, signature = pair.access_token.split(".")
        forged = f"{header}.{_b64({'sub': '1', 'type': 'access'})}.{signature}"
        with pytest.raises(TokenInvalidError):
            token_service.verify(forged)

    @pytest.mark.parametrize("claim", ["jti", "type", "sub", "exp", "aud"])
    def test_missing_required_claim(self, token_service, clock, claim):
        claims = _claims(clock)
        del claims[claim]
        token = jwt.encode(claims, SECRET, algorithm="HS256")
        with pytest.raises(TokenInvalidError):
            token_service.verify(token)

    def test_wrong_issuer(self, token_service, clock):
        token = jwt.encode(_claims(clock, iss="someone-else"), SECRET, algorithm="HS256")
        with pytest.raises(TokenInvalidError):
            token_service.verify(token)

    def test_wrong_audience(self, token_service, clock):
        token = jwt.encode(_claims(clock, aud="other-audience"), SECRET, algorithm="HS256")
        with pytest.raises(TokenInvalidError):
            token_service.verify(token)

    def test_unknown_kind(self, token_service, clock):
        token = jwt.encode(_claims(clock, type="admin"), SECRET, algorithm="HS256")
        with pytest.raises(TokenInvalidError):
            token_service.verify(token)

    @pytest.mark.parametrize("garbage", ["", "abc", "a.b.c", "....."])
    def test_malformed(self, token_service, garbage):
        with pytest.raises(TokenInvalidError):
            token_service.verify(garbage)


class TestBearerExtraction:
    def test_exact_prefix(self):
        assert extract_bearer_token("Bearer abc.def.ghi") == "abc.def.ghi"

    @pytest.mark.parametrize(
        "value",
        [
            None,
            "",
            "Bearer",
            "Bearer ",
            "bearer abc",
            "BEARER abc",
            "Bearerabc",
            "Bearer  abc",
            "Bearer abc def",
            "Basic abc",
            " Bearer abc",
        ],
    )
    def test_rejects_anything_else(self, value):
        assert extract_bearer_token(value) is None

    def test_verify_authorization(self, token_service):
        pair = token_service.issue(ALICE)
        payload = token_service.verify_authorization(f"Bearer {pair.access_token}")
        assert payload.principal_id == 42
        with pytest.raises(TokenInvalidError):
            token_service.verify_authorization(f"bearer {pair.access_token}")


class TestRotateRefresh:
    def test_rotation_issues_new_pair(self, token_service, revocation_store, clock):
        pair = token_service.issue(ALICE)
        old_id = token_service.verify(pair.refresh_token).token_id

        clock.advance(10)
        new_pair = token_service.rotate_refresh(pair.refresh_token)

        assert new_pair.refresh_token != pair.refresh_token
        assert token_service.verify(new_pair.access_token).principal_id == 42
        assert revocation_store.is_revoked(old_id)

    def test_second_use_is_rejected(self, token_service):
        pair = token_service.issue(ALICE)
        token_service.rotate_refresh(pair.refresh_token)
        with pytest.raises(RefreshRevokedError):
            token_service.rotate_refresh(pair.refresh_token)

    def test_access_token_cannot_rotate(self, token_service):
        pair = token_service.issue(ALICE)
        with pytest.raises(NotARefreshTokenError):
            token_service.rotate_refresh(pair.access_token)

    def test_expired_refresh_token(self, token_service, clock):
        pair = token_service.issue(ALICE)
        clock.advance(7 * 86400)
        with pytest.raises(TokenExpiredError):
            token_service.rotate_refresh(pair.refresh_token)

    def test_revocation_record_keeps_token_expiry(self, token_service, revocation_store):
        pair = token_service.issue(ALICE)
        payload = token_service.verify(pair.refresh_token)
        token_service.rotate_refresh(pair.refresh_token)

        record = revocation_store.get(payload.token_id)
        assert record.principal_id == 42
        assert record.expires_at == payload.expires_at

    def test_concurrent_rotation_has_one_winner(self):
        store = InMemoryRevocationStore()
        service = TokenService(secret_key=SECRET, revocation_store=store)
        pair = service.issue(ALICE)

        results: list[str] = []
        lock = threading.Lock()
        barrier = threading.Barrier(8)

        def worker():
            barrier.wait()
            try:
                service.rotate_refresh(pair.refresh_token)
                outcome = "ok"
            except RefreshRevokedError:
                outcome = "revoked"
            with lock:
                results.append(outcome)

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert results.count("ok") == 1
        assert results.count("revoked") == 7
