"""
Mapping of RevenueCat webhook events onto the entitlement model.

https://www.revenuecat.com/docs/integrations/webhooks/event-types-and-fields
"""
from datetime import datetime, timezone
from typing import Optional, Tuple

from app.models.user_profile import SubscriptionTier, SubscriptionStatus, SubscriptionPlatform

# Event type -> status. Tier comes from the product id unless forced below.
EVENT_STATUS = {
    "INITIAL_PURCHASE": SubscriptionStatus.ACTIVE,
    "RENEWAL": SubscriptionStatus.ACTIVE,
    "UNCANCELLATION": SubscriptionStatus.ACTIVE,
    "SUBSCRIPTION_EXTENDED": SubscriptionStatus.ACTIVE,
    "PRODUCT_CHANGE": SubscriptionStatus.ACTIVE,
    "CANCELLATION": SubscriptionStatus.CANCELLED,  # Entitled until expires_at
    "EXPIRATION": SubscriptionStatus.EXPIRED,
    "BILLING_ISSUE": SubscriptionStatus.GRACE_PERIOD,
    "SUBSCRIPTION_PAUSED": SubscriptionStatus.CANCELLED,
}

# Events that always drop the user to the free tier
FORCED_FREE_EVENTS = frozenset({"EXPIRATION"})

PREMIUM_PRODUCT_KEYWORDS = ("premium", "pro", "plus")

STORE_PLATFORMS = {
    "app_store": SubscriptionPlatform.IOS,
    "mac_app_store": SubscriptionPlatform.IOS,
    "play_store": SubscriptionPlatform.ANDROID,
    "stripe": SubscriptionPlatform.WEB,
    "promotional": SubscriptionPlatform.WEB,
}


def tier_for_product(product_id: Optional[str]) -> str:
    if not product_id:
        return SubscriptionTier.FREE.value
    product = product_id.lower()
    if any(keyword in product for keyword in PREMIUM_PRODUCT_KEYWORDS):
        return SubscriptionTier.PREMIUM.value
    return SubscriptionTier.FREE.value


def platform_for_store(store: Optional[str]) -> Optional[str]:
    platform = STORE_PLATFORMS.get((store or "").lower())
    return platform.value if platform else None


def resolve_state(
    event_type: str,
    product_id: Optional[str] = None,
    period_type: Optional[str] = None,
) -> Optional[Tuple[str, str]]:
    """Return the (tier, status) an event moves the user to, or None if it carries no entitlement change."""
    status = EVENT_STATUS.get(event_type)
    if status is None:
        return None
    if event_type in FORCED_FREE_EVENTS:
        return SubscriptionTier.FREE.value, status.value
    if status is SubscriptionStatus.ACTIVE and (period_type or "").upper() == "TRIAL":
        status = SubscriptionStatus.TRIAL
    return tier_for_product(product_id), status.value


def ms_to_datetime(value: Optional[int]) -> Optional[datetime]:
    if value is None:
        return None
    return datetime.fromtimestamp(value / 1000, tz=timezone.utc)
