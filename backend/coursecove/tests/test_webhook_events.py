"""Tests for parsing raw Clerk bodies into typed events."""

import pytest

from coursecove.platform.errors import ValidationFailed
from coursecove.services.webhook_events import (
    DeletedRef,
    EventKind,
    MembershipData,
    OrganizationData,
    UnhandledData,
    UserData,
    parse_event,
    primary_email,
)


def test_user_created():
    event = parse_event({
        "type": "user.created",
        "data": {
            "id": "user_1",
            "primary_email_address_id": "idn_2",
            "email_addresses": [
                {"id": "idn_1", "email_address": "old@example.com"},
                {"id": "idn_2", "email_address": "primary@example.com"},
            ],
            "first_name": "Ada",
            "last_name": "Lovelace",
            "image_url": "https://img.clerk.com/a.png",
        },
    })
    assert event.kind == EventKind.USER_UPSERTED
    assert event.data == UserData(
        clerk_user_id="user_1",
        email="primary@example.com",
        first_name="Ada",
        last_name="Lovelace",
        avatar_url="https://img.clerk.com/a.png",
    )


def test_user_updated_maps_to_upsert():
    assert parse_event({"type": "user.updated", "data": {"id": "user_1"}}).kind == EventKind.USER_UPSERTED


def test_primary_email_falls_back_to_first_address():
    assert primary_email({"email_addresses": [{"id": "a", "email_address": "x@example.com"}]}) == "x@example.com"
    assert primary_email({}) is None


@pytest.mark.parametrize("event_type,kind", [
    ("user.deleted", EventKind.USER_DELETED),
    ("organization.deleted", EventKind.ORGANIZATION_DELETED),
])
def test_deleted_events(event_type, kind):
    event = parse_event({"type": event_type, "data": {"id": "x_1", "deleted": True}})
    assert event.kind == kind
    assert event.data == DeletedRef(clerk_id="x_1")


def test_organization_defaults_name():
    event = parse_event({"type": "organization.created", "data": {"id": "org_1"}})
    assert event.data == OrganizationData(clerk_org_id="org_1", name="Unnamed Organization", slug=None, image_url=None)


def test_membership_reads_nested_ids():
    event = parse_event({
        "type": "organizationMembership.created",
        "data": {
            "id": "orgmem_1",
            "role": "org:admin",
            "organization": {"id": "org_1", "name": "Harbor"},
            "public_user_data": {"user_id": "user_1"},
        },
    })
    assert event.kind == EventKind.MEMBERSHIP_CREATED
    assert event.data == MembershipData(
        clerk_user_id="user_1",
        clerk_org_id="org_1",
        role="org:admin",
        clerk_membership_id="orgmem_1",
    )


def test_unknown_type_is_unhandled():
    event = parse_event({"type": "session.created", "data": {"id": "sess_1"}})
    assert event.kind == EventKind.UNHANDLED
    assert event.data == UnhandledData("session.created")


@pytest.mark.parametrize("body", [
    None,
    [],
    {},
    {"type": ""},
    {"type": "user.created"},
    {"type": "user.created", "data": "nope"},
    {"type": "user.created", "data": {}},
    {"type": "organizationMembership.created", "data": {"organization": {"id": "org_1"}}},
    {"type": "organizationMembership.deleted", "data": {"public_user_data": {"user_id": "user_1"}}},
])
def test_malformed_bodies(body):
    with pytest.raises(ValidationFailed):
        parse_event(body)
