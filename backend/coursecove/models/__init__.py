"""
Database models.

Tenant-scoped models inherit OrganizationScopedMixin and are covered by
the row-level tenancy policies in coursecove.database.rls_policies.
"""

from coursecove.models.base import TimestampMixin, SoftDeleteMixin, OrganizationScopedMixin
from coursecove.models.user import User, UserStatus
from coursecove.models.organization import Organization, OrganizationStatus
from coursecove.models.membership import (
    Membership,
    MembershipRole,
    MembershipStatus,
    ADMIN_MEMBERSHIP_ROLES,
    INSTRUCTOR_CAPABLE_ROLES,
)
from coursecove.models.webhook_event import WebhookEvent, WebhookEventStatus
from coursecove.models.appointment_type import AppointmentType, AppointmentTypeStatus
from coursecove.models.appointment import Appointment, AppointmentStatus
from coursecove.models.instructor import AppointmentTypeInstructor, InstructorAvailability
from coursecove.models.business_location import BusinessLocation

__all__ = [
    "TimestampMixin",
    "SoftDeleteMixin",
    "OrganizationScopedMixin",
    "User",
    "UserStatus",
    "Organization",
    "OrganizationStatus",
    "Membership",
    "MembershipRole",
    "MembershipStatus",
    "ADMIN_MEMBERSHIP_ROLES",
    "INSTRUCTOR_CAPABLE_ROLES",
    "WebhookEvent",
    "WebhookEventStatus",
    "AppointmentType",
    "AppointmentTypeStatus",
    "Appointment",
    "AppointmentStatus",
    "AppointmentTypeInstructor",
    "InstructorAvailability",
    "BusinessLocation",
]
