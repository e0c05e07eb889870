"""
Clerk webhook endpoint for identity synchronization.

SECURITY: Every delivery MUST pass Svix signature verification before
anything is recorded or processed. Clerk delivers through Svix.

Documentation: https://clerk.com/docs/webhooks

Modes (WEBHOOK_PROCESSING_MODE):
- queue: record the ledger row and return; the webhook event worker applies it
- inline: record and apply within the request

Supported Events:
- user.created, user.updated, user.deleted
- organization.created, organization.updated, organization.deleted
- organizationMembership.created, organizationMembership.updated, organizationMembership.deleted
"""

import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Request, status
from pydantic import BaseModel
from sqlalchemy.orm import Session
from svix.webhooks import Webhook, WebhookVerificationError

from coursecove.config.settings import get_settings
from coursecove.database.session import get_db_session
from coursecove.services.webhook_processor import WebhookProcessor, record_event

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/webhooks", tags=["webhooks"])


class WebhookResponse(BaseModel):
    """Standard webhook response."""
    received: bool = True
    status: str = "queued"
    webhook_id: Optional[str] = None
    outcome: Optional[str] = None
    message: Optional[str] = None


def verify_clerk_webhook(
    payload: bytes,
    svix_id: str,
    svix_timestamp: str,
    svix_signature: str,
    webhook_secret: str,
) -> Dict[str, Any]:
    """
    Verify the Svix signature and return the parsed body.

    Raises:
        WebhookVerificationError: signature, timestamp or body is invalid
    """
    return Webhook(webhook_secret).verify(
        payload,
        {
            "svix-id": svix_id,
            "svix-timestamp": svix_timestamp,
            "svix-signature": svix_signature,
        },
    )


@router.post("/clerk", response_model=WebhookResponse)
async def handle_clerk_webhook(
    request: Request,
    svix_id: Optional[str] = Header(None, alias="svix-id"),
    svix_timestamp: Optional[str] = Header(None, alias="svix-timestamp"),
    svix_signature: Optional[str] = Header(None, alias="svix-signature"),
    db: Session = Depends(get_db_session),
):
    """
    Receive a Clerk webhook.

    Returns 400 for missing Svix headers, a bad signature or a malformed
    body; 500 when the signing secret is not configured; 200 once the
    event is recorded (and, inline, processed).
    """
    settings = get_settings()
    if not settings.clerk_webhook_secret:
        logger.error("CLERK_WEBHOOK_SECRET not configured")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Webhook secret not configured",
        )

    if not (svix_id and svix_timestamp and svix_signature):
        logger.warning(
            "Clerk webhook missing svix headers",
            extra={
                "svix_id": svix_id,
                "has_timestamp": bool(svix_timestamp),
                "has_signature": bool(svix_signature),
            },
        )
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Missing svix headers",
        )

    body = await request.body()
    try:
        payload = verify_clerk_webhook(
            body, svix_id, svix_timestamp, svix_signature, settings.clerk_webhook_secret
        )
    except (WebhookVerificationError, ValueError) as e:
        logger.warning(
            "Clerk webhook signature verification failed",
            extra={"svix_id": svix_id, "error": str(e)},
        )
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Invalid webhook signature",
        )

    if not isinstance(payload, dict) or not payload.get("type"):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Missing event type",
        )

    event_type = payload["type"]
    logger.info("Received Clerk webhook", extra={"event_type": event_type, "svix_id": svix_id})

    if not settings.process_webhooks_inline:
        record_event(db, svix_id, payload)
        return WebhookResponse(status="queued", webhook_id=svix_id)

    processor = WebhookProcessor(db, settings=settings)
    try:
        result = await processor.handle_delivery(svix_id, payload)
    except Exception as e:
        # The ledger row carries the failure and its retry schedule.
        logger.error(
            "Error processing webhook inline",
            extra={"event_type": event_type, "svix_id": svix_id, "error": str(e)},
        )
        return WebhookResponse(
            status="failed",
            webhook_id=svix_id,
            message=f"Event {event_type} recorded for retry",
        )

    return WebhookResponse(
        status="processed",
        webhook_id=svix_id,
        outcome=result.outcome.value,
        message=f"Event {event_type} processed",
    )


@router.get("/clerk/health")
async def clerk_webhook_health():
    """Reachability check; reports whether the signing secret is configured."""
    return {
        "status": "healthy",
        "webhook_secret_configured": bool(get_settings().clerk_webhook_secret),
        "processing_mode": get_settings().webhook_processing_mode,
    }
