"""
Root test configuration and fixtures.

Every test gets a fresh in-memory SQLite database. SQLite runs with
foreign keys enforced and with explicit BEGIN so that savepoints
(begin_nested) behave as they do on PostgreSQL.

Shared fixtures:
- db_session: session on the per-test database
- settings: environment-driven Settings reset per test
- fake_verifier / auth_headers: session tokens without Clerk
- client: TestClient with the database dependency overridden
- make_user / make_org / make_membership: row factories
"""

import os
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Generator, Optional

import pytest
import yaml
from sqlalchemy import create_engine, event
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

os.environ.setdefault("ENV", "test")

from coursecove.config.rate_limits import RateLimitProfiles
from coursecove.config.settings import get_settings, reset_settings
from coursecove.database import session as session_module
from coursecove.db_base import Base
from coursecove.models import Membership, MembershipRole, MembershipStatus, Organization, User
from coursecove.platform import audit  # noqa: F401 - registers audit_logs
from coursecove.platform.rate_limit import InMemoryRateLimitStore, RateLimiter, set_rate_limiter
from coursecove.platform.session_resolver import SessionVerificationError, set_session_verifier

WEBHOOK_SECRET = "whsec_dGVzdF93ZWJob29rX3NlY3JldF9mb3JfY291cnNlY292ZQ=="


def _sqlite_engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        # Let SQLAlchemy emit BEGIN itself so SAVEPOINT works
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    @event.listens_for(engine, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN")

    return engine


@pytest.fixture(scope="function")
def db_engine():
    engine = _sqlite_engine()
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture(scope="function")
def session_factory(db_engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=db_engine)


@pytest.fixture(scope="function")
def db_session(session_factory) -> Generator[Session, None, None]:
    session = session_factory()
    yield session
    session.close()


# =============================================================================
# Settings and process-wide singletons
# =============================================================================


@pytest.fixture(autouse=True)
def settings(monkeypatch):
    """Known environment for every test; tests may monkeypatch more and reset."""
    monkeypatch.setenv("DATABASE_URL", "sqlite://")
    monkeypatch.setenv("CLERK_ISSUER_URL", "https://clerk.test.coursecove.dev")
    monkeypatch.setenv("CLERK_WEBHOOK_SECRET", WEBHOOK_SECRET)
    monkeypatch.setenv("WEBHOOK_PROCESSING_MODE", "queue")
    monkeypatch.delenv("ADMIN_ROLES", raising=False)
    monkeypatch.delenv("MEMBERSHIP_RETENTION_DAYS", raising=False)
    monkeypatch.delenv("RATE_LIMIT_REDIS_URL", raising=False)
    monkeypatch.delenv("RATE_LIMITS_CONFIG", raising=False)
    for name in ("MEMBERSHIP_PURGE_CRON", "APPOINTMENT_TYPE_PURGE_CRON", "LOCATION_PURGE_CRON"):
        monkeypatch.delenv(name, raising=False)
    reset_settings()
    yield get_settings()
    reset_settings()


@pytest.fixture(autouse=True)
def rate_limiter():
    limiter = RateLimiter(InMemoryRateLimitStore())
    set_rate_limiter(limiter)
    RateLimitProfiles.reset_instance()
    yield limiter
    set_rate_limiter(None)
    RateLimitProfiles.reset_instance()


class FakeSessionVerifier:
    """Maps opaque test tokens to claims."""

    def __init__(self):
        self.tokens: Dict[str, Dict[str, Any]] = {}
        self.calls = 0

    def issue(self, clerk_user_id: str, org_id: Optional[str] = None, org_role: Optional[str] = None) -> str:
        token = f"tok_{uuid.uuid4().hex}"
        claims = {"sub": clerk_user_id}
        if org_id:
            claims["org_id"] = org_id
            claims["org_role"] = org_role
        self.tokens[token] = claims
        return token

    def verify_token(self, token: str) -> Dict[str, Any]:
        self.calls += 1
        if token not in self.tokens:
            raise SessionVerificationError("Invalid token: unknown", error_code="invalid_token")
        return dict(self.tokens[token])


@pytest.fixture(autouse=True)
def fake_verifier():
    verifier = FakeSessionVerifier()
    set_session_verifier(verifier)
    yield verifier
    set_session_verifier(None)


@pytest.fixture
def auth_headers(fake_verifier):
    """Factory: auth_headers("user_1", "org_1", "org:admin")."""
    def _headers(clerk_user_id: str, org_id: Optional[str] = None, org_role: Optional[str] = None) -> Dict[str, str]:
        return {"Authorization": f"Bearer {fake_verifier.issue(clerk_user_id, org_id, org_role)}"}
    return _headers


# =============================================================================
# Application
# =============================================================================


@pytest.fixture
def app(session_factory, db_session):
    """Application whose requests share the test session (one SQLite connection)."""
    from main import create_app

    session_module.configure_session_factory(session_factory)
    application = create_app()

    def _override_db():
        yield db_session

    application.dependency_overrides[session_module.get_db_session] = _override_db
    yield application
    application.dependency_overrides.clear()
    session_module.reset_engine()


@pytest.fixture
def client(app):
    from fastapi.testclient import TestClient

    with TestClient(app, follow_redirects=False) as test_client:
        yield test_client


# =============================================================================
# Row factories
# =============================================================================


@pytest.fixture
def make_user(db_session):
    def _make(clerk_user_id: Optional[str] = None, email: Optional[str] = None, **values) -> User:
        clerk_user_id = clerk_user_id or f"user_{uuid.uuid4().hex[:10]}"
        user = User(
            clerk_user_id=clerk_user_id,
            email=email or f"{clerk_user_id}@example.com",
            status=values.pop("status", "ACTIVE"),
            **values,
        )
        db_session.add(user)
        db_session.flush()
        return user
    return _make


@pytest.fixture
def make_org(db_session):
    def _make(clerk_org_id: Optional[str] = None, slug: Optional[str] = None, **values) -> Organization:
        clerk_org_id = clerk_org_id or f"org_{uuid.uuid4().hex[:10]}"
        organization = Organization(
            clerk_org_id=clerk_org_id,
            name=values.pop("name", "Harbor Music Studio"),
            slug=slug or f"studio-{uuid.uuid4().hex[:8]}",
            status=values.pop("status", "ACTIVE"),
            **values,
        )
        db_session.add(organization)
        db_session.flush()
        return organization
    return _make


@pytest.fixture
def make_membership(db_session):
    def _make(
        user: User,
        organization: Organization,
        role: MembershipRole = MembershipRole.STAFF,
        status: MembershipStatus = MembershipStatus.ACTIVE,
        removed_at: Optional[datetime] = None,
    ) -> Membership:
        membership = Membership(
            user_id=user.id,
            organization_id=organization.id,
            role=role.value,
            status=status.value,
            removed_at=removed_at,
        )
        db_session.add(membership)
        db_session.flush()
        return membership
    return _make


@pytest.fixture
def now():
    return datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


# =============================================================================
# Markers
# =============================================================================


def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line("markers", "security: mark test as security-focused")
    config.addinivalue_line("markers", "slow: mark test as slow-running")


@pytest.fixture
def make_yaml_config(tmp_path):
    """
    Factory fixture that writes a YAML config file and returns its path.

    Usage:
        config_path = make_yaml_config("rate_limits.yml", {"profiles": {...}})
    """
    def _make(filename: str, config: dict) -> Path:
        config_path = tmp_path / filename
        with open(config_path, "w") as f:
            yaml.dump(config, f)
        return config_path
    return _make
