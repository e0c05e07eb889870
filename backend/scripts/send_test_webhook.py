#!/usr/bin/env python3
"""
Send signed Clerk webhooks to a local server.

Usage:
    # Start your server first
    uvicorn main:app --reload

    # Then run this script
    python scripts/send_test_webhook.py --event user_created
    python scripts/send_test_webhook.py --event membership_created --org org_test
"""

import argparse
import json
import os
import uuid
from datetime import datetime, timezone

import httpx
from svix.webhooks import Webhook

DEFAULT_SECRET = os.getenv("CLERK_WEBHOOK_SECRET", "whsec_dGVzdF93ZWJob29rX3NlY3JldA==")
DEFAULT_BASE_URL = os.getenv("TEST_BASE_URL", "http://localhost:8000")
ENDPOINT = "/api/webhooks/clerk"


def signed_headers(payload: str, secret: str, msg_id: str) -> dict:
    timestamp = datetime.now(timezone.utc)
    signature = Webhook(secret).sign(msg_id, timestamp, payload)
    return {
        "Content-Type": "application/json",
        "svix-id": msg_id,
        "svix-timestamp": str(int(timestamp.timestamp())),
        "svix-signature": signature,
    }


def send_webhook(event: dict, secret: str = DEFAULT_SECRET):
    payload = json.dumps(event)
    msg_id = f"msg_{uuid.uuid4().hex}"
    url = f"{DEFAULT_BASE_URL}{ENDPOINT}"

    print(f"\n{'='*60}")
    print(f"Sending webhook: {event['type']} ({msg_id})")
    print(f"Payload: {json.dumps(event, indent=2)}")
    print(f"{'='*60}\n")

    response = httpx.post(url, content=payload, headers=signed_headers(payload, secret, msg_id))
    print(f"Response Status: {response.status_code}")
    print(f"Response Body: {response.text}")
    return response


def user_created(user_id: str, org_id: str):
    return {
        "type": "user.created",
        "data": {
            "id": user_id,
            "primary_email_address_id": "idn_1",
            "email_addresses": [{"id": "idn_1", "email_address": "test@example.com"}],
            "first_name": "Test",
            "last_name": "User",
        },
    }


def organization_created(user_id: str, org_id: str):
    return {
        "type": "organization.created",
        "data": {"id": org_id, "name": "Test Studio", "slug": "test-studio"},
    }


def membership_created(user_id: str, org_id: str):
    return {
        "type": "organizationMembership.created",
        "data": {
            "id": f"orgmem_{uuid.uuid4().hex[:12]}",
            "role": "org:admin",
            "organization": {"id": org_id},
            "public_user_data": {"user_id": user_id},
        },
    }


def membership_deleted(user_id: str, org_id: str):
    return {
        "type": "organizationMembership.deleted",
        "data": {
            "organization": {"id": org_id},
            "public_user_data": {"user_id": user_id},
        },
    }


EVENTS = {
    "user_created": user_created,
    "organization_created": organization_created,
    "membership_created": membership_created,
    "membership_deleted": membership_deleted,
}


def main():
    parser = argparse.ArgumentParser(description="Send signed Clerk webhooks")
    parser.add_argument("--event", choices=sorted(EVENTS) + ["all"], default="all")
    parser.add_argument("--user", default="user_test")
    parser.add_argument("--org", default="org_test")
    args = parser.parse_args()

    names = list(EVENTS) if args.event == "all" else [args.event]
    for name in names:
        send_webhook(EVENTS[name](args.user, args.org))


if __name__ == "__main__":
    main()
