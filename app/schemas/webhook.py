from pydantic import BaseModel, ConfigDict
from typing import Optional


class RevenueCatEvent(BaseModel):
    # RevenueCat adds fields over time; keep whatever arrives for the audit log
    model_config = ConfigDict(extra="allow")

    id: str
    type: str
    app_user_id: Optional[str] = None
    original_app_user_id: Optional[str] = None
    product_id: Optional[str] = None
    period_type: Optional[str] = None
    purchased_at_ms: Optional[int] = None
    expiration_at_ms: Optional[int] = None
    event_timestamp_ms: Optional[int] = None
    store: Optional[str] = None
    environment: Optional[str] = None


class RevenueCatWebhook(BaseModel):
    model_config = ConfigDict(extra="allow")

    api_version: Optional[str] = None
    event: RevenueCatEvent


class WebhookResponse(BaseModel):
    success: bool
    message: Optional[str] = None
