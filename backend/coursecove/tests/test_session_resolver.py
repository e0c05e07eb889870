"""
Tests for Clerk session resolution.

Covers:
- Claim shapes (v1 org_id/org_role and v2 "o" claim)
- Token extraction from the Authorization header and __session cookie
- Fail-open resolution: bad or missing tokens become anonymous
- RS256 verification with issuer and expiry checks
"""

import time
from types import SimpleNamespace
from unittest.mock import MagicMock

import jwt
import pytest
from cryptography.hazmat.primitives.asymmetric import rsa
from starlette.requests import Request

from coursecove.config.settings import reset_settings
from coursecove.platform.session_resolver import (
    ANONYMOUS,
    ClerkSessionVerifier,
    SessionIdentity,
    SessionVerificationError,
    extract_token,
    get_session,
    identity_from_claims,
    resolve_session,
)

ISSUER = "https://clerk.test.coursecove.dev"


def _request(headers=None, cookies=None) -> Request:
    raw_headers = [(k.lower().encode(), v.encode()) for k, v in (headers or {}).items()]
    if cookies:
        cookie = "; ".join(f"{k}={v}" for k, v in cookies.items())
        raw_headers.append((b"cookie", cookie.encode()))
    return Request({
        "type": "http",
        "method": "GET",
        "path": "/api/profile/me",
        "headers": raw_headers,
        "query_string": b"",
    })


class TestIdentityFromClaims:

    def test_user_without_org(self):
        identity = identity_from_claims({"sub": "user_1"})
        assert identity == SessionIdentity(user_id="user_1")
        assert not identity.is_anonymous

    def test_v1_org_claims(self):
        identity = identity_from_claims({"sub": "user_1", "org_id": "org_1", "org_role": "org:admin"})
        assert identity.org_id == "org_1"
        assert identity.org_role == "org:admin"

    def test_v2_org_claim_normalizes_role(self):
        identity = identity_from_claims({"sub": "user_1", "o": {"id": "org_1", "rol": "admin"}})
        assert identity.org_id == "org_1"
        assert identity.org_role == "org:admin"

    def test_role_without_org_is_dropped(self):
        identity = identity_from_claims({"sub": "user_1", "org_role": "org:admin"})
        assert identity.org_id is None
        assert identity.org_role is None

    def test_anonymous(self):
        assert ANONYMOUS.is_anonymous


class TestExtractToken:

    def test_bearer_header(self):
        assert extract_token(_request(headers={"Authorization": "Bearer abc"})) == "abc"

    def test_session_cookie(self):
        assert extract_token(_request(cookies={"__session": "cookie-token"})) == "cookie-token"

    def test_header_wins_over_cookie(self):
        request = _request(headers={"Authorization": "Bearer header"}, cookies={"__session": "cookie"})
        assert extract_token(request) == "header"

    def test_non_bearer_header_ignored(self):
        assert extract_token(_request(headers={"Authorization": "Basic dXNlcg=="})) is None

    def test_missing(self):
        assert extract_token(_request()) is None


class TestResolveSession:

    def test_no_token_is_anonymous(self, fake_verifier):
        assert resolve_session(_request()) is ANONYMOUS
        assert fake_verifier.calls == 0

    def test_invalid_token_fails_open(self, fake_verifier):
        assert resolve_session(_request(headers={"Authorization": "Bearer nope"})) is ANONYMOUS

    def test_valid_token(self, fake_verifier):
        token = fake_verifier.issue("user_1", "org_1", "org:member")
        identity = resolve_session(_request(headers={"Authorization": f"Bearer {token}"}))
        assert identity == SessionIdentity(user_id="user_1", org_id="org_1", org_role="org:member")

    def test_get_session_resolves_once_per_request(self, fake_verifier):
        token = fake_verifier.issue("user_1")
        request = _request(headers={"Authorization": f"Bearer {token}"})

        first = get_session(request)
        second = get_session(request)

        assert first is second
        assert fake_verifier.calls == 1


@pytest.fixture(scope="module")
def signing_key():
    return rsa.generate_private_key(public_exponent=65537, key_size=2048)


@pytest.fixture
def verifier(signing_key):
    verifier = ClerkSessionVerifier(issuer=ISSUER, jwks_url=f"{ISSUER}/.well-known/jwks.json")
    jwks_client = MagicMock()
    jwks_client.get_signing_key_from_jwt.return_value = SimpleNamespace(key=signing_key.public_key())
    verifier._get_jwks_client = lambda: jwks_client
    return verifier


def _token(signing_key, **overrides) -> str:
    now = int(time.time())
    claims = {"sub": "user_1", "iss": ISSUER, "iat": now, "exp": now + 300, "org_id": "org_1", "org_role": "org:admin"}
    claims.update(overrides)
    return jwt.encode(claims, signing_key, algorithm="RS256")


class TestClerkSessionVerifier:

    def test_verifies_valid_token(self, verifier, signing_key):
        claims = verifier.verify_token(_token(signing_key))
        assert claims["sub"] == "user_1"
        assert claims["org_id"] == "org_1"

    def test_expired_token(self, verifier, signing_key):
        past = int(time.time()) - 3600
        with pytest.raises(SessionVerificationError) as exc_info:
            verifier.verify_token(_token(signing_key, iat=past - 60, exp=past))
        assert exc_info.value.error_code == "token_expired"

    def test_wrong_issuer(self, verifier, signing_key):
        with pytest.raises(SessionVerificationError) as exc_info:
            verifier.verify_token(_token(signing_key, iss="https://evil.example.com"))
        assert exc_info.value.error_code == "invalid_token"

    def test_wrong_key(self, verifier):
        other = rsa.generate_private_key(public_exponent=65537, key_size=2048)
        with pytest.raises(SessionVerificationError):
            verifier.verify_token(_token(other))

    def test_requires_issuer(self, monkeypatch):
        monkeypatch.delenv("CLERK_ISSUER_URL", raising=False)
        reset_settings()
        with pytest.raises(SessionVerificationError) as exc_info:
            ClerkSessionVerifier()
        assert exc_info.value.error_code == "config_error"

    def test_default_jwks_url(self):
        verifier = ClerkSessionVerifier(issuer=ISSUER + "/")
        assert verifier._jwks_url == f"{ISSUER}/.well-known/jwks.json"
