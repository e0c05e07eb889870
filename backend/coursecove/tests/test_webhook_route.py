"""
Tests for the Clerk webhook endpoint.

SECURITY: deliveries must carry a valid Svix signature before anything
is recorded.
"""

import json
import uuid
from datetime import datetime, timezone

import pytest
from svix.webhooks import Webhook

from coursecove.config.settings import reset_settings
from coursecove.models import User, WebhookEvent, WebhookEventStatus

WEBHOOK_PATH = "/api/webhooks/clerk"


def _user_created(clerk_user_id="user_hook"):
    return {
        "type": "user.created",
        "data": {
            "id": clerk_user_id,
            "primary_email_address_id": "idn_1",
            "email_addresses": [{"id": "idn_1", "email_address": f"{clerk_user_id}@example.com"}],
            "first_name": "Grace",
        },
    }


def _signed(payload, secret, msg_id=None):
    body = json.dumps(payload)
    msg_id = msg_id or f"msg_{uuid.uuid4().hex}"
    timestamp = datetime.now(timezone.utc)
    headers = {
        "svix-id": msg_id,
        "svix-timestamp": str(int(timestamp.timestamp())),
        "svix-signature": Webhook(secret).sign(msg_id, timestamp, body),
        "content-type": "application/json",
    }
    return body, headers


@pytest.fixture
def sign(settings):
    """Sign payloads with the configured webhook secret."""
    def _sign(payload, msg_id=None):
        return _signed(payload, settings.clerk_webhook_secret, msg_id=msg_id)
    return _sign


@pytest.mark.security
class TestSignatureVerification:

    def test_missing_headers_rejected(self, client):
        response = client.post(WEBHOOK_PATH, content=json.dumps(_user_created()))
        assert response.status_code == 400
        assert response.json()["detail"] == "Missing svix headers"

    def test_bad_signature_rejected(self, client, db_session):
        body, headers = _signed(_user_created(), "whsec_d3Jvbmdfc2VjcmV0X2Zvcl90ZXN0aW5n")

        response = client.post(WEBHOOK_PATH, content=body, headers=headers)

        assert response.status_code == 400
        assert db_session.query(WebhookEvent).count() == 0

    def test_tampered_body_rejected(self, client, sign):
        body, headers = sign(_user_created())
        tampered = body.replace("Grace", "Mallory")

        response = client.post(WEBHOOK_PATH, content=tampered, headers=headers)

        assert response.status_code == 400

    def test_missing_secret_is_server_error(self, client, monkeypatch, sign):
        body, headers = sign(_user_created())
        monkeypatch.delenv("CLERK_WEBHOOK_SECRET")
        reset_settings()

        response = client.post(WEBHOOK_PATH, content=body, headers=headers)

        assert response.status_code == 500

    def test_missing_event_type_rejected(self, client, sign):
        body, headers = sign({"data": {"id": "user_1"}})
        response = client.post(WEBHOOK_PATH, content=body, headers=headers)
        assert response.status_code == 400


class TestDeliveryModes:

    def test_queue_mode_records_only(self, client, db_session, sign):
        body, headers = sign(_user_created(), msg_id="msg_queued")

        response = client.post(WEBHOOK_PATH, content=body, headers=headers)

        assert response.status_code == 200
        assert response.json()["status"] == "queued"
        event = db_session.query(WebhookEvent).filter_by(webhook_id="msg_queued").one()
        assert event.status == WebhookEventStatus.PENDING.value
        assert db_session.query(User).count() == 0

    def test_inline_mode_processes(self, client, db_session, monkeypatch, sign):
        monkeypatch.setenv("WEBHOOK_PROCESSING_MODE", "inline")
        reset_settings()
        body, headers = sign(_user_created("user_inline"), msg_id="msg_inline")

        response = client.post(WEBHOOK_PATH, content=body, headers=headers)

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "processed"
        assert data["outcome"] == "processed"
        assert db_session.query(User).filter_by(clerk_user_id="user_inline").one()

    def test_inline_redelivery_is_idempotent(self, client, db_session, monkeypatch, sign):
        monkeypatch.setenv("WEBHOOK_PROCESSING_MODE", "inline")
        reset_settings()
        payload = _user_created("user_twice")

        body, headers = sign(payload, msg_id="msg_twice")
        client.post(WEBHOOK_PATH, content=body, headers=headers)
        body, headers = sign(payload, msg_id="msg_twice")
        response = client.post(WEBHOOK_PATH, content=body, headers=headers)

        assert response.json()["outcome"] == "already_processed"
        assert db_session.query(User).filter_by(clerk_user_id="user_twice").count() == 1

    def test_health(self, client):
        response = client.get("/api/webhooks/clerk/health")
        assert response.status_code == 200
        assert response.json() == {
            "status": "healthy",
            "webhook_secret_configured": True,
            "processing_mode": "queue",
        }
