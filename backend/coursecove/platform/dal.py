"""
Page-level guards for server-rendered views.

These mirror the API authorization pipeline but fail by redirecting
instead of returning a structured error:

- not signed in             -> /sign-in
- signed in, no organization -> /onboarding
- no staff/admin role        -> /unauthorized

Each guard is memoized on request.state, so nested views that declare
the same requirement share one verification per request.

Usage:
    @router.get("/app/settings")
    def settings_page(ctx: ProcedureContext = Depends(page_guard(require_admin))):
        ...
"""

import logging
from typing import Callable, Dict, Optional

from fastapi import Depends, Request
from sqlalchemy.orm import Session

from coursecove.database.session import get_db_session
from coursecove.platform.authorization import (
    ADMIN,
    AUTHENTICATED,
    ORG_SCOPED,
    STAFF,
    Pipeline,
    ProcedureContext,
    build_context,
)
from coursecove.platform.errors import (
    InsufficientRole,
    MissingTenantContext,
    RedirectRequired,
    Unauthenticated,
)

logger = logging.getLogger(__name__)

SIGN_IN_PATH = "/sign-in"
ONBOARDING_PATH = "/onboarding"
UNAUTHORIZED_PATH = "/unauthorized"


def _dal_cache(request: Request) -> Dict[str, ProcedureContext]:
    cache = getattr(request.state, "dal_cache", None)
    if cache is None:
        cache = {}
        request.state.dal_cache = cache
    return cache


def _guard(name: str, pipeline: Pipeline, request: Request, db: Optional[Session]) -> ProcedureContext:
    cache = _dal_cache(request)
    if name in cache:
        return cache[name]

    try:
        ctx = pipeline.run(build_context(request, db))
    except Unauthenticated:
        raise RedirectRequired(SIGN_IN_PATH, "unauthenticated")
    except MissingTenantContext:
        raise RedirectRequired(ONBOARDING_PATH, "missing_organization")
    except InsufficientRole:
        raise RedirectRequired(UNAUTHORIZED_PATH, "insufficient_role")

    cache[name] = ctx
    return ctx


def verify_session(request: Request, db: Optional[Session] = None) -> ProcedureContext:
    """Signed-in user required."""
    return _guard("verify_session", AUTHENTICATED, request, db)


def require_org(request: Request, db: Session) -> ProcedureContext:
    """Signed-in user with an organization that exists locally."""
    return _guard("require_org", ORG_SCOPED, request, db)


def require_staff(request: Request, db: Session) -> ProcedureContext:
    """Organization member holding a role (not a pure customer identity)."""
    return _guard("require_staff", STAFF, request, db)


def require_admin(request: Request, db: Session) -> ProcedureContext:
    """Organization member holding one of the configured admin roles."""
    return _guard("require_admin", ADMIN, request, db)


def page_guard(guard: Callable[[Request, Session], ProcedureContext]):
    """FastAPI dependency wrapper for a DAL guard."""

    def dependency(request: Request, db: Session = Depends(get_db_session)) -> ProcedureContext:
        return guard(request, db)

    return dependency
