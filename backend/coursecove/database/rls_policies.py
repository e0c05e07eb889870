"""
Row-level security DDL for PostgreSQL.

Policies compare organization_id to current_org_id(), which reads the
app.org_id setting applied by tenant_scope. Only the application role is
subject to RLS; the table owner (used by the webhook worker and the
retention jobs) bypasses it because RLS is enabled, not forced.

Helper functions that read memberships are SECURITY DEFINER so that
policies on users and memberships never recurse into each other.

Applied by scripts/apply_rls.py.
"""

from typing import List

APP_ROLE = "coursecove_app"

TENANT_TABLES = (
    "appointment_types",
    "appointments",
    "appointment_type_instructors",
    "instructor_availability",
    "business_locations",
)

FUNCTIONS_SQL = """
CREATE OR REPLACE FUNCTION current_org_id()
RETURNS TEXT AS $$
  SELECT NULLIF(current_setting('app.org_id', true), '');
$$ LANGUAGE sql STABLE;

CREATE OR REPLACE FUNCTION current_clerk_user_id()
RETURNS TEXT AS $$
  SELECT NULLIF(current_setting('app.clerk_user_id', true), '');
$$ LANGUAGE sql STABLE;

CREATE OR REPLACE FUNCTION current_app_user_id()
RETURNS TEXT AS $$
  SELECT id FROM users WHERE clerk_user_id = current_clerk_user_id() LIMIT 1;
$$ LANGUAGE sql STABLE SECURITY DEFINER;

CREATE OR REPLACE FUNCTION current_membership_role()
RETURNS TEXT AS $$
  SELECT m.role
  FROM memberships m
  WHERE m.user_id = current_app_user_id()
    AND m.organization_id = current_org_id()
    AND m.status = 'ACTIVE'
  LIMIT 1;
$$ LANGUAGE sql STABLE SECURITY DEFINER;

CREATE OR REPLACE FUNCTION is_current_user_admin()
RETURNS BOOLEAN AS $$
  SELECT COALESCE(current_membership_role() IN ('SUPER_ADMIN', 'ADMIN'), false);
$$ LANGUAGE sql STABLE;

CREATE OR REPLACE FUNCTION is_current_user_instructor()
RETURNS BOOLEAN AS $$
  SELECT COALESCE(current_membership_role() IN ('SUPER_ADMIN', 'INSTRUCTOR'), false);
$$ LANGUAGE sql STABLE;
"""


def tenant_table_policy_sql(table: str) -> str:
    """Members read their organization's rows; active members write them."""
    return f"""
ALTER TABLE {table} ENABLE ROW LEVEL SECURITY;
DROP POLICY IF EXISTS {table}_tenant_select ON {table};
CREATE POLICY {table}_tenant_select ON {table}
  FOR SELECT TO {APP_ROLE}
  USING (organization_id = current_org_id());
DROP POLICY IF EXISTS {table}_tenant_write ON {table};
CREATE POLICY {table}_tenant_write ON {table}
  FOR ALL TO {APP_ROLE}
  USING (organization_id = current_org_id() AND current_membership_role() IS NOT NULL)
  WITH CHECK (organization_id = current_org_id() AND current_membership_role() IS NOT NULL);
"""


MEMBERSHIPS_SQL = f"""
ALTER TABLE memberships ENABLE ROW LEVEL SECURITY;
DROP POLICY IF EXISTS memberships_select_org ON memberships;
CREATE POLICY memberships_select_org ON memberships
  FOR SELECT TO {APP_ROLE}
  USING (organization_id = current_org_id() OR user_id = current_app_user_id());
DROP POLICY IF EXISTS memberships_admin_write ON memberships;
CREATE POLICY memberships_admin_write ON memberships
  FOR ALL TO {APP_ROLE}
  USING (organization_id = current_org_id() AND is_current_user_admin())
  WITH CHECK (organization_id = current_org_id() AND is_current_user_admin());
"""


IDENTITY_SQL = f"""
ALTER TABLE organizations ENABLE ROW LEVEL SECURITY;
DROP POLICY IF EXISTS organizations_select_all ON organizations;
CREATE POLICY organizations_select_all ON organizations
  FOR SELECT TO {APP_ROLE}
  USING (true);
DROP POLICY IF EXISTS organizations_update_admin ON organizations;
CREATE POLICY organizations_update_admin ON organizations
  FOR UPDATE TO {APP_ROLE}
  USING (id = current_org_id() AND is_current_user_admin())
  WITH CHECK (id = current_org_id() AND is_current_user_admin());

ALTER TABLE users ENABLE ROW LEVEL SECURITY;
DROP POLICY IF EXISTS users_select_self_and_org ON users;
CREATE POLICY users_select_self_and_org ON users
  FOR SELECT TO {APP_ROLE}
  USING (
    clerk_user_id = current_clerk_user_id()
    OR id IN (
      SELECT user_id FROM memberships
      WHERE organization_id = current_org_id() AND status = 'ACTIVE'
    )
  );
DROP POLICY IF EXISTS users_update_self ON users;
CREATE POLICY users_update_self ON users
  FOR UPDATE TO {APP_ROLE}
  USING (clerk_user_id = current_clerk_user_id())
  WITH CHECK (clerk_user_id = current_clerk_user_id());
"""


def all_statements() -> List[str]:
    """Full DDL in application order."""
    statements = [FUNCTIONS_SQL, IDENTITY_SQL, MEMBERSHIPS_SQL]
    statements.extend(tenant_table_policy_sql(t) for t in TENANT_TABLES)
    return statements
