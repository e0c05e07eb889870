"""
Clerk Sync Service for mirroring Clerk identity data locally.

This service handles:
- User sync: upsert by clerk_user_id, soft delete via status
- Organization sync: upsert by clerk_org_id, slug normalization
- Membership sync: upsert by (user, organization), role mapping,
  soft removal

Every write is an upsert on a natural key so that replaying an event has
the same effect as applying it once. Callers own the transaction; this
service never commits.

SECURITY:
- Clerk is the source of truth for authentication
- Local roles beyond SUPER_ADMIN/STAFF are assigned in-app and are not
  overwritten by Clerk's coarse member role
"""

import logging
from typing import Optional

from sqlalchemy.orm import Session

from coursecove.models.membership import (
    ADMIN_MEMBERSHIP_ROLES,
    Membership,
    MembershipRole,
    MembershipStatus,
)
from coursecove.models.organization import Organization, OrganizationStatus
from coursecove.models.user import User, UserStatus
from coursecove.platform.audit import AuditAction, AuditEvent, write_audit_log_sync
from coursecove.platform.errors import DependencyNotReady
from coursecove.utils.slug import check_slug_availability, suggest_slug

logger = logging.getLogger(__name__)

_CLERK_ROLE_MAPPING = {
    "admin": MembershipRole.SUPER_ADMIN,
    "super_admin": MembershipRole.SUPER_ADMIN,
    "member": MembershipRole.STAFF,
}

DEFAULT_MEMBERSHIP_ROLE = MembershipRole.STAFF


def map_clerk_role(clerk_role: Optional[str]) -> MembershipRole:
    """
    Map a Clerk organization role to the local role enum.

    org:admin -> SUPER_ADMIN, org:member -> STAFF. Anything else,
    including None, maps to STAFF. Never raises.
    """
    if not isinstance(clerk_role, str):
        return DEFAULT_MEMBERSHIP_ROLE
    role = clerk_role.strip().lower()
    if role.startswith("org:"):
        role = role[len("org:"):]
    return _CLERK_ROLE_MAPPING.get(role, DEFAULT_MEMBERSHIP_ROLE)


class ClerkSyncService:
    """Applies Clerk identity changes to the local store."""

    def __init__(self, session: Session, source: str = "webhook"):
        self.session = session
        self.source = source

    # =========================================================================
    # Lookups
    # =========================================================================

    def get_user_by_clerk_id(self, clerk_user_id: str) -> Optional[User]:
        return self.session.query(User).filter(
            User.clerk_user_id == clerk_user_id
        ).first()

    def get_organization_by_clerk_id(self, clerk_org_id: str) -> Optional[Organization]:
        return self.session.query(Organization).filter(
            Organization.clerk_org_id == clerk_org_id
        ).first()

    def get_membership(self, user_id: str, organization_id: str) -> Optional[Membership]:
        return self.session.query(Membership).filter(
            Membership.user_id == user_id,
            Membership.organization_id == organization_id,
        ).first()

    # =========================================================================
    # Users
    # =========================================================================

    def sync_user(
        self,
        clerk_user_id: str,
        email: Optional[str] = None,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
        avatar_url: Optional[str] = None,
    ) -> User:
        """Create or update a User from Clerk data."""
        user = self.get_user_by_clerk_id(clerk_user_id)
        is_new_user = user is None

        if user is None:
            user = User(clerk_user_id=clerk_user_id, status=UserStatus.ACTIVE.value)
            self.session.add(user)

        user.email = email
        user.first_name = first_name
        user.last_name = last_name
        user.avatar_url = avatar_url
        user.status = UserStatus.ACTIVE.value
        user.mark_synced()
        self.session.flush()

        logger.info(
            "Created user from Clerk" if is_new_user else "Updated user from Clerk",
            extra={"clerk_user_id": clerk_user_id, "user_id": user.id},
        )
        if is_new_user:
            write_audit_log_sync(self.session, AuditEvent(
                action=AuditAction.USER_SYNCED,
                resource_type="user",
                resource_id=user.id,
                metadata={"clerk_user_id": clerk_user_id, "email": email},
                source=self.source,
            ))
        return user

    def delete_user(self, clerk_user_id: str) -> bool:
        """
        Soft delete a user and soft-remove their active memberships.

        Returns False if the user is unknown locally.
        """
        user = self.get_user_by_clerk_id(clerk_user_id)
        if user is None:
            logger.warning("Cannot delete user: not found", extra={"clerk_user_id": clerk_user_id})
            return False

        user.status = UserStatus.DELETED.value
        user.mark_synced()

        active = self.session.query(Membership).filter(
            Membership.user_id == user.id,
            Membership.status == MembershipStatus.ACTIVE.value,
        ).all()
        for membership in active:
            membership.mark_removed(removed_by=None)

        write_audit_log_sync(self.session, AuditEvent(
            action=AuditAction.USER_DELETED,
            resource_type="user",
            resource_id=user.id,
            metadata={"clerk_user_id": clerk_user_id, "memberships_removed": len(active)},
            source=self.source,
        ))
        logger.info(
            "Deleted user from Clerk",
            extra={"clerk_user_id": clerk_user_id, "memberships_removed": len(active)},
        )
        return True

    # =========================================================================
    # Organizations
    # =========================================================================

    def _resolve_slug(self, requested: Optional[str], name: str, exclude_org_id: Optional[str]) -> str:
        if requested:
            result = check_slug_availability(self.session, requested, exclude_org_id=exclude_org_id)
            if result.valid and result.available:
                return requested
            logger.warning(
                "Clerk slug rejected, deriving one from name",
                extra={"slug": requested, "reason": result.reason.value if result.reason else None},
            )
        return suggest_slug(self.session, name or requested or "org", exclude_org_id=exclude_org_id)

    def sync_organization(
        self,
        clerk_org_id: str,
        name: str,
        slug: Optional[str] = None,
        image_url: Optional[str] = None,
    ) -> Organization:
        """Create or update an Organization from Clerk data."""
        organization = self.get_organization_by_clerk_id(clerk_org_id)
        is_new = organization is None

        if organization is None:
            organization = Organization(
                clerk_org_id=clerk_org_id,
                name=name,
                slug=self._resolve_slug(slug, name, None),
                status=OrganizationStatus.ACTIVE.value,
            )
            self.session.add(organization)
        else:
            organization.name = name
            if slug and slug != organization.slug:
                organization.slug = self._resolve_slug(slug, name, organization.id)
            organization.status = OrganizationStatus.ACTIVE.value

        organization.image_url = image_url
        self.session.flush()

        logger.info(
            "Created organization from Clerk" if is_new else "Updated organization from Clerk",
            extra={"clerk_org_id": clerk_org_id, "organization_id": organization.id, "slug": organization.slug},
        )
        if is_new:
            write_audit_log_sync(self.session, AuditEvent(
                action=AuditAction.ORGANIZATION_SYNCED,
                organization_id=organization.id,
                resource_type="organization",
                resource_id=organization.id,
                metadata={"clerk_org_id": clerk_org_id, "slug": organization.slug},
                source=self.source,
            ))
        return organization

    def delete_organization(self, clerk_org_id: str) -> bool:
        """Mark an organization DELETED. Memberships are left as they are."""
        organization = self.get_organization_by_clerk_id(clerk_org_id)
        if organization is None:
            logger.warning("Cannot delete organization: not found", extra={"clerk_org_id": clerk_org_id})
            return False

        organization.status = OrganizationStatus.DELETED.value
        write_audit_log_sync(self.session, AuditEvent(
            action=AuditAction.ORGANIZATION_DELETED,
            organization_id=organization.id,
            resource_type="organization",
            resource_id=organization.id,
            metadata={"clerk_org_id": clerk_org_id},
            source=self.source,
        ))
        logger.info("Deleted organization from Clerk", extra={"clerk_org_id": clerk_org_id})
        return True

    # =========================================================================
    # Memberships
    # =========================================================================

    def _require_dependencies(self, clerk_user_id: str, clerk_org_id: str):
        user = self.get_user_by_clerk_id(clerk_user_id)
        organization = self.get_organization_by_clerk_id(clerk_org_id)
        missing = []
        if user is None:
            missing.append(f"user {clerk_user_id}")
        if organization is None:
            missing.append(f"organization {clerk_org_id}")
        if missing:
            raise DependencyNotReady(
                f"Not synced yet: {', '.join(missing)}",
                clerk_user_id=clerk_user_id,
                clerk_org_id=clerk_org_id,
            )
        return user, organization

    def sync_membership(
        self,
        clerk_user_id: str,
        clerk_org_id: str,
        clerk_role: Optional[str],
        clerk_membership_id: Optional[str] = None,
    ) -> Membership:
        """
        Create (or reactivate) the membership for a user in an organization.

        Raises:
            DependencyNotReady: the user or organization is not synced yet
        """
        user, organization = self._require_dependencies(clerk_user_id, clerk_org_id)
        role = map_clerk_role(clerk_role)

        membership = self.get_membership(user.id, organization.id)
        if membership is not None:
            if membership.is_removed:
                membership.mark_active()
                membership.role = role.value
                logger.info(
                    "Reactivated membership",
                    extra={"membership_id": membership.id, "role": role.value},
                )
            if clerk_membership_id and not membership.clerk_membership_id:
                membership.clerk_membership_id = clerk_membership_id
            self.session.flush()
            return membership

        membership = Membership(
            user_id=user.id,
            organization_id=organization.id,
            clerk_membership_id=clerk_membership_id,
            role=role.value,
            status=MembershipStatus.ACTIVE.value,
        )
        self.session.add(membership)
        self.session.flush()

        write_audit_log_sync(self.session, AuditEvent(
            action=AuditAction.MEMBERSHIP_CREATED,
            organization_id=organization.id,
            resource_type="membership",
            resource_id=membership.id,
            metadata={"clerk_user_id": clerk_user_id, "role": role.value},
            source=self.source,
        ))
        logger.info(
            "Created membership from Clerk",
            extra={
                "clerk_user_id": clerk_user_id,
                "clerk_org_id": clerk_org_id,
                "role": role.value,
            },
        )
        return membership

    def update_membership_role(
        self,
        clerk_user_id: str,
        clerk_org_id: str,
        clerk_role: Optional[str],
        clerk_membership_id: Optional[str] = None,
    ) -> Membership:
        """
        Apply a Clerk role change.

        An admin grant always wins. A member role only demotes local admin
        roles; in-app roles (instructor, student, guardian) are kept.
        A missing membership is created.
        """
        user, organization = self._require_dependencies(clerk_user_id, clerk_org_id)
        membership = self.get_membership(user.id, organization.id)
        if membership is None or membership.is_removed:
            return self.sync_membership(clerk_user_id, clerk_org_id, clerk_role, clerk_membership_id)

        mapped = map_clerk_role(clerk_role)
        current = MembershipRole(membership.role)
        if mapped in ADMIN_MEMBERSHIP_ROLES:
            new_role = mapped
        elif current in ADMIN_MEMBERSHIP_ROLES:
            new_role = mapped
        else:
            new_role = current

        if new_role != current:
            membership.role = new_role.value
            write_audit_log_sync(self.session, AuditEvent(
                action=AuditAction.MEMBERSHIP_ROLE_CHANGED,
                organization_id=organization.id,
                resource_type="membership",
                resource_id=membership.id,
                metadata={"from": current.value, "to": new_role.value},
                source=self.source,
            ))
            logger.info(
                "Updated membership role from Clerk",
                extra={"membership_id": membership.id, "from": current.value, "to": new_role.value},
            )
        self.session.flush()
        return membership

    def remove_membership(self, clerk_user_id: str, clerk_org_id: str) -> Optional[Membership]:
        """
        Soft-remove a membership deleted in Clerk.

        Unknown or already-removed memberships are a no-op so replays are safe.
        """
        user = self.get_user_by_clerk_id(clerk_user_id)
        organization = self.get_organization_by_clerk_id(clerk_org_id)
        if user is None or organization is None:
            logger.warning(
                "Cannot remove membership: user or organization not found",
                extra={"clerk_user_id": clerk_user_id, "clerk_org_id": clerk_org_id},
            )
            return None

        membership = self.get_membership(user.id, organization.id)
        if membership is None or membership.is_removed:
            return membership

        membership.mark_removed(removed_by=None)
        write_audit_log_sync(self.session, AuditEvent(
            action=AuditAction.MEMBERSHIP_REMOVED,
            organization_id=organization.id,
            resource_type="membership",
            resource_id=membership.id,
            metadata={"clerk_user_id": clerk_user_id},
            source=self.source,
        ))
        logger.info(
            "Removed membership from Clerk",
            extra={"membership_id": membership.id, "clerk_org_id": clerk_org_id},
        )
        return membership
