"""
Session resolution for Clerk-issued session tokens.

This is the only place token verification happens. The resolver runs
once per request (SessionMiddleware) and stores a SessionIdentity on
request.state; everything downstream reads that value and never
re-verifies.

Resolution fails open: a missing, expired or otherwise invalid token
yields the anonymous identity (all fields None). The authorization
pipeline decides what an anonymous caller may do.

Token sources, in order:
- Authorization: Bearer <token>
- __session cookie (Clerk browser sessions)
"""

import logging
import time
from dataclasses import dataclass
from threading import Lock
from typing import Any, Dict, Optional

import jwt
from jwt import PyJWKClient, PyJWKClientError
from jwt.exceptions import InvalidTokenError, ExpiredSignatureError
from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware

from coursecove.config.settings import get_settings

logger = logging.getLogger(__name__)

SESSION_COOKIE = "__session"


@dataclass(frozen=True)
class SessionIdentity:
    """Verified identity of the caller. All None for anonymous requests."""
    user_id: Optional[str] = None
    org_id: Optional[str] = None
    org_role: Optional[str] = None

    @property
    def is_anonymous(self) -> bool:
        return self.user_id is None


ANONYMOUS = SessionIdentity()


class SessionVerificationError(Exception):
    """Raised by ClerkSessionVerifier when a token cannot be trusted."""

    def __init__(self, message: str, error_code: str = "verification_failed"):
        super().__init__(message)
        self.message = message
        self.error_code = error_code


class ClerkSessionVerifier:
    """
    Verifies Clerk session JWTs against the instance JWKS.

    Clerk session token claims used here:
        - sub: clerk user id
        - org_id / org_role: active organization (v1 tokens)
        - o: {"id": ..., "rol": ...}: active organization (v2 tokens)
    """

    JWKS_CACHE_DURATION = 3600
    CLOCK_SKEW_SECONDS = 60

    def __init__(self, issuer: Optional[str] = None, jwks_url: Optional[str] = None):
        settings = get_settings()
        self._issuer = issuer or settings.clerk_issuer_url
        if not self._issuer:
            raise SessionVerificationError(
                "CLERK_ISSUER_URL environment variable is required",
                error_code="config_error",
            )
        self._jwks_url = (
            jwks_url
            or settings.clerk_jwks_url
            or f"{self._issuer.rstrip('/')}/.well-known/jwks.json"
        )
        self._jwks_client: Optional[PyJWKClient] = None
        self._jwks_client_lock = Lock()
        self._jwks_last_refresh: float = 0

    def _get_jwks_client(self) -> PyJWKClient:
        with self._jwks_client_lock:
            now = time.time()
            if (
                self._jwks_client is None
                or now - self._jwks_last_refresh > self.JWKS_CACHE_DURATION
            ):
                self._jwks_client = PyJWKClient(
                    self._jwks_url,
                    cache_keys=True,
                    lifespan=self.JWKS_CACHE_DURATION,
                )
                self._jwks_last_refresh = now
                logger.debug("Refreshed JWKS client", extra={"jwks_url": self._jwks_url})
            return self._jwks_client

    def verify_token(self, token: str) -> Dict[str, Any]:
        """
        Verify a Clerk session token and return its claims.

        Raises:
            SessionVerificationError: If the token cannot be verified
        """
        try:
            signing_key = self._get_jwks_client().get_signing_key_from_jwt(token)
            return jwt.decode(
                token,
                signing_key.key,
                algorithms=["RS256"],
                issuer=self._issuer,
                options={"require": ["sub", "iss", "exp", "iat"]},
                leeway=self.CLOCK_SKEW_SECONDS,
            )
        except ExpiredSignatureError:
            raise SessionVerificationError("Token has expired", error_code="token_expired")
        except PyJWKClientError as e:
            raise SessionVerificationError(f"Failed to fetch signing key: {e}", error_code="jwks_error")
        except InvalidTokenError as e:
            raise SessionVerificationError(f"Invalid token: {e}", error_code="invalid_token")


def _normalize_org_role(role: Optional[str]) -> Optional[str]:
    if not role:
        return None
    return role if role.startswith("org:") else f"org:{role}"


def identity_from_claims(claims: Dict[str, Any]) -> SessionIdentity:
    """Build a SessionIdentity from verified claims (v1 and v2 token shapes)."""
    org_claim = claims.get("o") or {}
    org_id = claims.get("org_id") or org_claim.get("id")
    org_role = claims.get("org_role") or org_claim.get("rol")
    return SessionIdentity(
        user_id=claims.get("sub"),
        org_id=org_id or None,
        org_role=_normalize_org_role(org_role) if org_id else None,
    )


def extract_token(request: Request) -> Optional[str]:
    auth_header = request.headers.get("Authorization", "")
    if auth_header.startswith("Bearer "):
        token = auth_header[7:].strip()
        if token:
            return token
    return request.cookies.get(SESSION_COOKIE) or None


_verifier: Optional[ClerkSessionVerifier] = None
_verifier_lock = Lock()


def get_session_verifier() -> ClerkSessionVerifier:
    global _verifier
    with _verifier_lock:
        if _verifier is None:
            _verifier = ClerkSessionVerifier()
        return _verifier


def set_session_verifier(verifier: Optional[ClerkSessionVerifier]) -> None:
    """Swap the process-wide verifier (tests, or a custom JWKS source)."""
    global _verifier
    with _verifier_lock:
        _verifier = verifier


def resolve_session(request: Request) -> SessionIdentity:
    """
    Resolve the caller's identity. Never raises.

    Returns ANONYMOUS when there is no token or verification fails.
    """
    token = extract_token(request)
    if not token:
        return ANONYMOUS

    try:
        claims = get_session_verifier().verify_token(token)
    except SessionVerificationError as e:
        logger.warning(
            "Session token rejected",
            extra={"error_code": e.error_code, "path": request.url.path},
        )
        return ANONYMOUS

    return identity_from_claims(claims)


def get_session(request: Request) -> SessionIdentity:
    """
    FastAPI dependency returning the request's SessionIdentity.

    Resolves on first access when SessionMiddleware is not installed, then
    caches on request.state so later stages see the same value.
    """
    identity = getattr(request.state, "session", None)
    if identity is None:
        identity = resolve_session(request)
        request.state.session = identity
    return identity


class SessionMiddleware(BaseHTTPMiddleware):
    """Resolves the session exactly once per request."""

    async def dispatch(self, request: Request, call_next):
        request.state.session = resolve_session(request)
        return await call_next(request)
