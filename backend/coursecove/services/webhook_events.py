"""
Typed Clerk webhook events.

A raw Clerk body ``{"type": ..., "data": {...}}`` is parsed once into a
ClerkEvent whose ``kind`` selects exactly one payload class. Event types
we do not handle map to EventKind.UNHANDLED rather than raising, so the
processor can close the ledger row with an explicit outcome.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional, Union

from coursecove.platform.errors import ValidationFailed


class EventKind(str, Enum):
    USER_UPSERTED = "user_upserted"
    USER_DELETED = "user_deleted"
    ORGANIZATION_UPSERTED = "organization_upserted"
    ORGANIZATION_DELETED = "organization_deleted"
    MEMBERSHIP_CREATED = "membership_created"
    MEMBERSHIP_UPDATED = "membership_updated"
    MEMBERSHIP_DELETED = "membership_deleted"
    UNHANDLED = "unhandled"


EVENT_TYPE_KINDS: Dict[str, EventKind] = {
    "user.created": EventKind.USER_UPSERTED,
    "user.updated": EventKind.USER_UPSERTED,
    "user.deleted": EventKind.USER_DELETED,
    "organization.created": EventKind.ORGANIZATION_UPSERTED,
    "organization.updated": EventKind.ORGANIZATION_UPSERTED,
    "organization.deleted": EventKind.ORGANIZATION_DELETED,
    "organizationMembership.created": EventKind.MEMBERSHIP_CREATED,
    "organizationMembership.updated": EventKind.MEMBERSHIP_UPDATED,
    "organizationMembership.deleted": EventKind.MEMBERSHIP_DELETED,
}


@dataclass(frozen=True)
class UserData:
    clerk_user_id: str
    email: Optional[str]
    first_name: Optional[str]
    last_name: Optional[str]
    avatar_url: Optional[str]


@dataclass(frozen=True)
class OrganizationData:
    clerk_org_id: str
    name: str
    slug: Optional[str]
    image_url: Optional[str]


@dataclass(frozen=True)
class DeletedRef:
    clerk_id: str


@dataclass(frozen=True)
class MembershipData:
    clerk_user_id: str
    clerk_org_id: str
    role: Optional[str]
    clerk_membership_id: Optional[str]


@dataclass(frozen=True)
class UnhandledData:
    event_type: str


EventPayload = Union[UserData, OrganizationData, DeletedRef, MembershipData, UnhandledData]


@dataclass(frozen=True)
class ClerkEvent:
    kind: EventKind
    event_type: str
    data: EventPayload


def _require(data: Dict[str, Any], key: str, what: str) -> str:
    value = data.get(key)
    if not value or not isinstance(value, str):
        raise ValidationFailed(f"Missing {what} in payload")
    return value


def primary_email(data: Dict[str, Any]) -> Optional[str]:
    """Pick the primary address from Clerk's email_addresses list."""
    addresses = data.get("email_addresses") or []
    primary_id = data.get("primary_email_address_id")
    for entry in addresses:
        if entry.get("id") == primary_id:
            return entry.get("email_address")
    if addresses:
        return addresses[0].get("email_address")
    return None


def _parse_user(data: Dict[str, Any]) -> UserData:
    return UserData(
        clerk_user_id=_require(data, "id", "user id"),
        email=primary_email(data),
        first_name=data.get("first_name"),
        last_name=data.get("last_name"),
        avatar_url=data.get("image_url") or data.get("profile_image_url"),
    )


def _parse_organization(data: Dict[str, Any]) -> OrganizationData:
    return OrganizationData(
        clerk_org_id=_require(data, "id", "organization id"),
        name=data.get("name") or "Unnamed Organization",
        slug=data.get("slug"),
        image_url=data.get("image_url"),
    )


def _parse_deleted(data: Dict[str, Any]) -> DeletedRef:
    return DeletedRef(clerk_id=_require(data, "id", "id"))


def _parse_membership(data: Dict[str, Any]) -> MembershipData:
    organization = data.get("organization") or {}
    public_user_data = data.get("public_user_data") or {}
    return MembershipData(
        clerk_user_id=_require(public_user_data, "user_id", "membership user id"),
        clerk_org_id=_require(organization, "id", "membership organization id"),
        role=data.get("role"),
        clerk_membership_id=data.get("id"),
    )


_PARSERS = {
    EventKind.USER_UPSERTED: _parse_user,
    EventKind.USER_DELETED: _parse_deleted,
    EventKind.ORGANIZATION_UPSERTED: _parse_organization,
    EventKind.ORGANIZATION_DELETED: _parse_deleted,
    EventKind.MEMBERSHIP_CREATED: _parse_membership,
    EventKind.MEMBERSHIP_UPDATED: _parse_membership,
    EventKind.MEMBERSHIP_DELETED: _parse_membership,
}


def parse_event(body: Dict[str, Any]) -> ClerkEvent:
    """
    Parse a Clerk webhook body.

    Raises:
        ValidationFailed: the body or a handled event's data is malformed
    """
    if not isinstance(body, dict):
        raise ValidationFailed("Webhook body must be an object")

    event_type = body.get("type")
    if not event_type or not isinstance(event_type, str):
        raise ValidationFailed("Missing event type")

    kind = EVENT_TYPE_KINDS.get(event_type, EventKind.UNHANDLED)
    if kind == EventKind.UNHANDLED:
        return ClerkEvent(kind=kind, event_type=event_type, data=UnhandledData(event_type))

    data = body.get("data")
    if not isinstance(data, dict):
        raise ValidationFailed("Missing event data")
    return ClerkEvent(kind=kind, event_type=event_type, data=_PARSERS[kind](data))
