from app.models.user_profile import (
    UserProfile,
    SubscriptionTier,
    SubscriptionStatus,
    SubscriptionPlatform,
    ACTIVE_STATUSES,
)
from app.models.usage_log import UsageLog, ActionType, ACTION_TYPE_VALUES
from app.models.usage_limit import UsageLimit
from app.models.subscription_event import SubscriptionEvent

__all__ = [
    "UserProfile",
    "SubscriptionTier",
    "SubscriptionStatus",
    "SubscriptionPlatform",
    "ACTIVE_STATUSES",
    "UsageLog",
    "ActionType",
    "ACTION_TYPE_VALUES",
    "UsageLimit",
    "SubscriptionEvent",
]
