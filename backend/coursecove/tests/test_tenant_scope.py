"""
Tests for tenant scope bookkeeping on sessions.

PostgreSQL set_config calls are not exercised here; SQLite only records
the scope in session.info.
"""

import pytest

from coursecove.database.tenant_scope import (
    SCOPE_INFO_KEY,
    TenantScope,
    apply_tenant_scope,
    clear_tenant_scope,
    current_tenant_scope,
)


class TestTenantScope:

    def test_default_scope_is_anonymous(self, db_session):
        scope = current_tenant_scope(db_session)
        assert scope == TenantScope()
        assert scope.is_anonymous

    def test_apply_records_scope(self, db_session):
        scope = apply_tenant_scope(db_session, "user_1", "org-internal-1")

        assert scope == TenantScope(clerk_user_id="user_1", org_id="org-internal-1")
        assert db_session.info[SCOPE_INFO_KEY] is scope
        assert current_tenant_scope(db_session) is scope
        assert not scope.is_anonymous

    def test_apply_opens_transaction(self, db_session):
        assert not db_session.in_transaction()
        apply_tenant_scope(db_session, "user_1", None)
        assert db_session.in_transaction()

    def test_missing_values_become_empty_strings(self, db_session):
        scope = apply_tenant_scope(db_session, "user_1", None)
        assert scope.org_id == ""

    def test_clear_resets_to_anonymous(self, db_session):
        apply_tenant_scope(db_session, "user_1", "org-internal-1")
        scope = clear_tenant_scope(db_session)
        assert scope.is_anonymous
        assert current_tenant_scope(db_session).is_anonymous

    def test_scope_survives_commit(self, db_session):
        apply_tenant_scope(db_session, "user_1", "org-internal-1")
        db_session.commit()
        assert current_tenant_scope(db_session).clerk_user_id == "user_1"

    def test_scope_is_frozen(self):
        scope = TenantScope(clerk_user_id="user_1")
        with pytest.raises(AttributeError):
            scope.clerk_user_id = "user_2"


class TestTenantScopedSession:

    def test_commits_on_success(self, session_factory, make_org, db_session):
        from coursecove.database import session as session_module
        from coursecove.database.tenant_scope import tenant_scoped_session
        from coursecove.models import BusinessLocation

        org_id = make_org().id
        db_session.commit()
        session_module.configure_session_factory(session_factory)
        try:
            with tenant_scoped_session("user_1", org_id) as session:
                assert current_tenant_scope(session).org_id == org_id
                session.add(BusinessLocation(
                    organization_id=org_id, name="Annex", address="2 Main St",
                    city="Springfield", state="IL", zip_code="62701",
                ))
        finally:
            session_module.reset_engine()

        assert db_session.query(BusinessLocation).count() == 1

    def test_rolls_back_on_error(self, session_factory, make_org, db_session):
        from coursecove.database import session as session_module
        from coursecove.database.tenant_scope import tenant_scoped_session
        from coursecove.models import BusinessLocation

        org_id = make_org().id
        db_session.commit()
        session_module.configure_session_factory(session_factory)
        try:
            with pytest.raises(RuntimeError):
                with tenant_scoped_session("user_1", org_id) as session:
                    session.add(BusinessLocation(
                        organization_id=org_id, name="Annex", address="2 Main St",
                        city="Springfield", state="IL", zip_code="62701",
                    ))
                    session.flush()
                    raise RuntimeError("boom")
        finally:
            session_module.reset_engine()

        assert db_session.query(BusinessLocation).count() == 0
