"""
Webhooks for the subscription provider (RevenueCat).

RevenueCat sends the Authorization header value configured in its dashboard;
we configure it as "Bearer <REVENUECAT_WEBHOOK_SECRET>".
Any non-2xx response makes RevenueCat retry the delivery.
"""
import hmac
import json
import logging
import os
from typing import Optional

from fastapi import APIRouter, Request, HTTPException, status, Depends
from pydantic import ValidationError
from sqlalchemy.orm import Session

from app.core.errors import StorageUnavailable
from app.db.session import get_db
from app.dependencies.services import get_entitlement_store
from app.schemas.webhook import RevenueCatWebhook, WebhookResponse
from app.services.entitlement_store import EntitlementStore

logger = logging.getLogger(__name__)

router = APIRouter()

REVENUECAT_WEBHOOK_SECRET = os.getenv("REVENUECAT_WEBHOOK_SECRET", "")


def _verify_revenuecat_authorization(authorization: Optional[str]) -> bool:
    if not REVENUECAT_WEBHOOK_SECRET or not authorization:
        return False
    expected = f"Bearer {REVENUECAT_WEBHOOK_SECRET}"
    return hmac.compare_digest(authorization.strip().encode(), expected.encode())


@router.post("/revenuecat", response_model=WebhookResponse, response_model_exclude_none=True)
async def revenuecat_webhook(
    request: Request,
    db: Session = Depends(get_db),
    store: EntitlementStore = Depends(get_entitlement_store),
):
    """
    RevenueCat webhook. Register https://your-backend.com/webhooks/revenuecat
    in the RevenueCat dashboard with the shared Authorization header.
    """
    if not REVENUECAT_WEBHOOK_SECRET:
        logger.error("REVENUECAT_WEBHOOK_SECRET is not set, rejecting webhook")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Webhook secret not configured"
        )
    if not _verify_revenuecat_authorization(request.headers.get("authorization")):
        logger.warning("RevenueCat webhook rejected: invalid authorization")
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")

    body = await request.body()
    try:
        data = json.loads(body)
        webhook = RevenueCatWebhook.model_validate(data)
    except ValidationError as e:
        logger.warning("RevenueCat webhook with malformed payload: %s", e)
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid webhook payload")
    except ValueError:
        # JSONDecodeError and UnicodeDecodeError both land here
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid JSON")

    event = webhook.event
    if not event.app_user_id:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Missing app_user_id")

    logger.info("RevenueCat webhook id=%s type=%s user=%s", event.id, event.type, event.app_user_id)

    try:
        outcome = store.apply_provider_event(
            db,
            user_id=event.app_user_id,
            event_id=event.id,
            event_type=event.type,
            product_id=event.product_id,
            expires_at_ms=event.expiration_at_ms,
            store=event.store,
            purchased_at_ms=event.purchased_at_ms,
            period_type=event.period_type,
            app_user_id=event.app_user_id,
            payload=data,
        )
    except StorageUnavailable as e:
        logger.error("RevenueCat event %s not applied: %s", event.id, e)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Internal server error"
        )

    if outcome.already_processed:
        return WebhookResponse(success=True, message="Event already processed")
    return WebhookResponse(success=True)
