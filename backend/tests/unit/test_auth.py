"""
Unit Tests — JWT Auth Middleware
═════════════════════════════════
Tests for:
  • _JWKSCache     — fetch, force-refresh on unknown kid, cache hits, clear()
  • JWTDecoder     — valid token, expired, bad audience / issuer, tampered,
                     non-UUID subjects (allowed only for service callers)
  • RoleChecker    — pass/fail per role level, hierarchy enforcement
  • extract_role   — custom:role, namespaced claim, cognito:groups,
                     missing role, unknown role
  • extract_user_id

All tests use the test RSA key pair from conftest.py.
Zero network calls — the JWKS fetch is patched.
"""

from __future__ import annotations

import time
import uuid
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from fastapi import HTTPException
from fastapi.security import HTTPAuthorizationCredentials

from casedocs.auth.token import TokenPayload, extract_role, extract_user_id, has_role

from tests.conftest import SERVICE_SUBJECT, TEST_AUDIENCE, TEST_ISSUER


# ─────────────────────────────────────────────────────────────────────────────
# Helpers
# ─────────────────────────────────────────────────────────────────────────────

def _make_request(request_id: str = "test-req-id"):
    """Build a minimal mock Request object."""
    req = MagicMock()
    req.headers = {"X-Request-ID": request_id}
    return req


def _make_credentials(token: str) -> HTTPAuthorizationCredentials:
    return HTTPAuthorizationCredentials(scheme="Bearer", credentials=token)


def _payload(role: str, user_id: uuid.UUID | None = None) -> TokenPayload:
    user_id = user_id or uuid.uuid4()
    return TokenPayload(
        sub=str(user_id),
        email=f"{role}@example.com",
        role=role,
        exp=int(time.time()) + 3600,
        iss=TEST_ISSUER,
        user_id=user_id,
    )


# ─────────────────────────────────────────────────────────────────────────────
# _JWKSCache tests
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.unit
@pytest.mark.auth
class TestJWKSCache:

    async def test_get_signing_key_returns_public_key(self, make_token, test_jwks):
        from casedocs.auth.middleware import _JWKSCache
        cache = _JWKSCache()
        token = make_token(role="member")

        with patch.object(cache, "_fetch", new=AsyncMock(return_value=test_jwks)):
            key = await cache.get_signing_key(token, issuer=TEST_ISSUER)

        assert key is not None

    async def test_unknown_kid_triggers_force_refresh(self, make_token, test_jwks):
        """A rotated key is picked up by one forced re-fetch."""
        from casedocs.auth.middleware import _JWKSCache
        cache = _JWKSCache()
        token = make_token(role="member")

        fetch = AsyncMock(side_effect=[{"keys": []}, test_jwks])
        with patch.object(cache, "_fetch", new=fetch):
            key = await cache.get_signing_key(token, issuer=TEST_ISSUER)

        assert fetch.await_count == 2
        assert key is not None

    async def test_unknown_kid_after_refresh_raises_401(self, make_token):
        from casedocs.auth.middleware import _JWKSCache
        cache = _JWKSCache()
        token = make_token(role="member")

        with patch.object(cache, "_fetch", new=AsyncMock(return_value={"keys": []})):
            with pytest.raises(HTTPException) as exc_info:
                await cache.get_signing_key(token, issuer=TEST_ISSUER)

        assert exc_info.value.status_code == 401

    async def test_malformed_token_raises_401(self):
        from casedocs.auth.middleware import _JWKSCache
        cache = _JWKSCache()

        with pytest.raises(HTTPException) as exc_info:
            await cache.get_signing_key("not.a.jwt")

        assert exc_info.value.status_code == 401

    async def test_fresh_keys_are_served_from_cache_until_cleared(self, make_token, test_jwks):
        from casedocs.auth.middleware import _JWKSCache
        cache = _JWKSCache()
        cache._store[TEST_ISSUER] = (test_jwks, time.monotonic())

        key = await cache.get_signing_key(make_token(role="member"), issuer=TEST_ISSUER)
        assert key is not None

        cache.clear()
        assert cache._store == {}


# ─────────────────────────────────────────────────────────────────────────────
# JWTDecoder tests
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.unit
@pytest.mark.auth
class TestJWTDecoder:

    @pytest.fixture
    def decoder(self, test_jwks):
        """JWTDecoder with test issuer/audience and a pre-populated JWKS cache."""
        from casedocs.auth.middleware import JWTDecoder, _JWKSCache

        cache = _JWKSCache()
        cache._store[TEST_ISSUER] = (test_jwks, time.monotonic())
        return JWTDecoder(issuer=TEST_ISSUER, audience=TEST_AUDIENCE, cache=cache, namespace="")

    async def test_valid_member_token_returns_payload(self, decoder, make_token, test_user_id):
        payload = await decoder(_make_request(), _make_credentials(make_token(role="member")))

        assert payload.role    == "member"
        assert payload.sub     == str(test_user_id)
        assert payload.user_id == test_user_id
        assert payload.email   == "attorney@example.com"
        assert not payload.is_service

    async def test_token_without_role_is_member(self, decoder, make_token):
        payload = await decoder(_make_request(), _make_credentials(make_token(no_role=True)))
        assert payload.role == "member"

    async def test_unknown_role_defaults_to_viewer(self, decoder, make_token):
        payload = await decoder(_make_request(), _make_credentials(make_token(role="superadmin")))
        assert payload.role == "viewer"

    async def test_service_token_may_have_non_uuid_subject(self, decoder, service_token):
        payload = await decoder(_make_request(), _make_credentials(service_token))

        assert payload.is_service
        assert payload.sub == SERVICE_SUBJECT
        assert payload.user_id is None

    async def test_non_uuid_subject_rejected_for_users(self, decoder, make_token):
        token = make_token(role="member", sub="auth0|5f7c8ec7c33c6c004bbafe82")
        with pytest.raises(HTTPException) as exc_info:
            await decoder(_make_request(), _make_credentials(token))
        assert exc_info.value.status_code == 401
        assert "user id" in exc_info.value.detail

    async def test_expired_token_raises_401(self, decoder, make_token):
        with pytest.raises(HTTPException) as exc_info:
            await decoder(_make_request(), _make_credentials(make_token(expired=True)))
        assert exc_info.value.status_code == 401
        assert "expired" in exc_info.value.detail.lower()

    async def test_wrong_audience_raises_401(self, decoder, make_token):
        with pytest.raises(HTTPException) as exc_info:
            await decoder(_make_request(), _make_credentials(make_token(audience="wrong-audience")))
        assert exc_info.value.status_code == 401

    async def test_wrong_issuer_raises_401(self, decoder, make_token):
        token = make_token(issuer="https://attacker.example.com/")
        with pytest.raises(HTTPException) as exc_info:
            await decoder(_make_request(), _make_credentials(token))
        assert exc_info.value.status_code == 401

    async def test_tampered_token_raises_401(self, decoder, make_token):
        parts = make_token(role="member").split(".")
        parts[1] = parts[1] + "TAMPERED"

        with pytest.raises(HTTPException) as exc_info:
            await decoder(_make_request(), _make_credentials(".".join(parts)))
        assert exc_info.value.status_code == 401


# ─────────────────────────────────────────────────────────────────────────────
# RoleChecker tests
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.unit
@pytest.mark.auth
class TestRoleChecker:

    @pytest.mark.parametrize("user_role,required", [
        ("viewer",  "viewer"),
        ("member",  "viewer"),
        ("member",  "member"),
        ("admin",   "member"),
        ("service", "service"),
        ("service", "member"),
    ])
    async def test_sufficient_role_passes(self, user_role, required):
        from casedocs.auth.middleware import RoleChecker
        payload = _payload(user_role)
        checker = RoleChecker(required, decoder=AsyncMock(return_value=payload))

        result = await checker(_make_request(), _make_credentials("tok"))

        assert result is payload

    @pytest.mark.parametrize("user_role,required", [
        ("viewer", "member"),
        ("member", "service"),
        ("owner",  "service"),
    ])
    async def test_insufficient_role_is_403(self, user_role, required):
        from casedocs.auth.middleware import RoleChecker
        checker = RoleChecker(required, decoder=AsyncMock(return_value=_payload(user_role)))

        with pytest.raises(HTTPException) as exc_info:
            await checker(_make_request(), _make_credentials("tok"))

        assert exc_info.value.status_code == 403
        assert required in exc_info.value.detail

    def test_invalid_minimum_role_raises_value_error(self):
        from casedocs.auth.middleware import RoleChecker
        with pytest.raises(ValueError, match="Invalid minimum_role"):
            RoleChecker("superuser")

    def test_prebuilt_aliases_exist(self):
        from casedocs.auth.middleware import RoleChecker, require_member, require_service, require_viewer
        assert all(isinstance(c, RoleChecker) for c in (require_viewer, require_member, require_service))


# ─────────────────────────────────────────────────────────────────────────────
# Claim extraction
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.unit
@pytest.mark.auth
class TestClaims:

    @pytest.mark.parametrize("claims,expected", [
        ({"custom:role": "viewer"},                          "viewer"),
        ({"role": "service"},                                "service"),
        ({"https://casedocs.example.com/role": "admin"},     "admin"),
        ({"cognito:groups": ["owner", "member"]},            "owner"),
        ({"cognito:groups": []},                             "member"),
        ({},                                                 "member"),
        ({"custom:role": "root"},                            "viewer"),
    ])
    def test_extract_role(self, claims, expected):
        assert extract_role(claims, namespace="https://casedocs.example.com/") == expected

    def test_extract_user_id(self, test_user_id):
        assert extract_user_id({"sub": str(test_user_id)}) == test_user_id
        assert extract_user_id({"sub": "scheduler@clients"}) is None
        assert extract_user_id({}) is None

    def test_has_role_ranks(self):
        assert has_role("admin", "member")
        assert not has_role("viewer", "member")
        assert not has_role("nobody", "viewer")
