"""
Subscription entitlement for an authenticated user (one row per Supabase auth user).
"""
from sqlalchemy import Column, String, Boolean, DateTime, CheckConstraint
from sqlalchemy.sql import func
from enum import Enum
from app.db.base import Base


class SubscriptionTier(str, Enum):
    FREE = "free"
    PREMIUM = "premium"


class SubscriptionStatus(str, Enum):
    NONE = "none"  # Never subscribed
    ACTIVE = "active"
    CANCELLED = "cancelled"  # Auto-renew off, still entitled until expiry
    EXPIRED = "expired"
    GRACE_PERIOD = "grace_period"  # Billing retry in progress
    TRIAL = "trial"


class SubscriptionPlatform(str, Enum):
    IOS = "ios"
    ANDROID = "android"
    WEB = "web"


# Statuses that grant access to premium features
ACTIVE_STATUSES = frozenset({
    SubscriptionStatus.ACTIVE.value,
    SubscriptionStatus.TRIAL.value,
    SubscriptionStatus.GRACE_PERIOD.value,
})


def _in(column: str, enum_cls) -> str:
    values = ", ".join(f"'{member.value}'" for member in enum_cls)
    return f"{column} IN ({values})"


class UserProfile(Base):
    __tablename__ = "user_profiles"

    id = Column(String(36), primary_key=True, index=True)  # Supabase auth user id (UUID)
    email = Column(String, nullable=True, index=True)

    subscription_tier = Column(String(20), default=SubscriptionTier.FREE.value, nullable=False)
    subscription_status = Column(String(20), default=SubscriptionStatus.NONE.value, nullable=False)
    subscription_expires_at = Column(DateTime(timezone=True), nullable=True)
    subscription_started_at = Column(DateTime(timezone=True), nullable=True)
    subscription_platform = Column(String(20), nullable=True)
    subscription_product_id = Column(String, nullable=True)
    revenuecat_app_user_id = Column(String, nullable=True, index=True)

    # Legacy users get a time-boxed premium trial
    is_grandfathered = Column(Boolean, default=False, nullable=False)
    grandfathered_until = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    __table_args__ = (
        CheckConstraint(_in("subscription_tier", SubscriptionTier), name="ck_user_profiles_tier"),
        CheckConstraint(_in("subscription_status", SubscriptionStatus), name="ck_user_profiles_status"),
        CheckConstraint(
            "subscription_platform IS NULL OR " + _in("subscription_platform", SubscriptionPlatform),
            name="ck_user_profiles_platform",
        ),
    )

    def __repr__(self):
        return f"<UserProfile(id={self.id}, tier={self.subscription_tier}, status={self.subscription_status})>"
