"""
Row-level tenancy session variables.

PostgreSQL RLS policies (see rls_policies.py) read two transaction-local
settings:

- app.clerk_user_id: the caller's Clerk user id
- app.org_id: the caller's internal organization id

Both are set with set_config(..., is_local => true), so they live exactly
as long as the current transaction. The scope is remembered in
session.info and re-applied by an after_begin listener whenever the
session opens a new transaction, which keeps the variables on the same
connection and transaction as the queries they protect. Anonymous and
no-tenant contexts set empty strings so a pooled connection never keeps
a previous caller's values.

Other dialects (SQLite in tests) only record the scope in session.info.
"""

import logging
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Iterator, Optional

from sqlalchemy import event, text
from sqlalchemy.engine import Connection
from sqlalchemy.orm import Session

logger = logging.getLogger(__name__)

SCOPE_INFO_KEY = "coursecove.tenant_scope"

_SET_SCOPE_SQL = text(
    "SELECT set_config('app.clerk_user_id', :clerk_user_id, true), "
    "set_config('app.org_id', :org_id, true)"
)


@dataclass(frozen=True)
class TenantScope:
    clerk_user_id: str = ""
    org_id: str = ""

    @property
    def is_anonymous(self) -> bool:
        return not self.clerk_user_id and not self.org_id


def _set_config(connection: Connection, scope: TenantScope) -> None:
    if connection.dialect.name != "postgresql":
        return
    connection.execute(
        _SET_SCOPE_SQL,
        {"clerk_user_id": scope.clerk_user_id, "org_id": scope.org_id},
    )


@event.listens_for(Session, "after_begin")
def _reapply_scope(session: Session, transaction, connection: Connection) -> None:
    scope = session.info.get(SCOPE_INFO_KEY)
    if scope is not None:
        _set_config(connection, scope)


def apply_tenant_scope(
    session: Session,
    clerk_user_id: Optional[str],
    org_id: Optional[str],
) -> TenantScope:
    """
    Scope the session's current (and future) transactions to a caller.

    Missing values are written as empty strings.
    """
    scope = TenantScope(clerk_user_id=clerk_user_id or "", org_id=org_id or "")
    session.info[SCOPE_INFO_KEY] = scope

    if session.in_transaction():
        _set_config(session.connection(), scope)
    else:
        # Beginning the transaction fires after_begin, which applies the scope
        session.connection()

    logger.debug(
        "Applied tenant scope",
        extra={"clerk_user_id": scope.clerk_user_id, "org_id": scope.org_id},
    )
    return scope


def clear_tenant_scope(session: Session) -> TenantScope:
    return apply_tenant_scope(session, None, None)


def current_tenant_scope(session: Session) -> TenantScope:
    return session.info.get(SCOPE_INFO_KEY) or TenantScope()


@contextmanager
def tenant_scoped_session(
    clerk_user_id: Optional[str],
    org_id: Optional[str],
) -> Iterator[Session]:
    """
    Open a session scoped to a caller for the duration of one transaction.

    Commits on success, rolls back and re-raises on error.
    """
    from coursecove.database.session import get_session_factory

    session = get_session_factory()()
    try:
        apply_tenant_scope(session, clerk_user_id, org_id)
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()
