from pydantic import BaseModel, EmailStr
from typing import Optional
from datetime import datetime, timezone

from app.models.user_profile import ACTIVE_STATUSES


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite hands back naive datetimes; treat them as UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class Entitlement(BaseModel):
    """Read-only snapshot of a user's subscription state."""
    user_id: str
    tier: str = "free"
    status: str = "none"
    expires_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    platform: Optional[str] = None
    product_id: Optional[str] = None
    is_grandfathered: bool = False
    grandfathered_until: Optional[datetime] = None

    @classmethod
    def from_profile(cls, profile) -> "Entitlement":
        return cls(
            user_id=profile.id,
            tier=profile.subscription_tier,
            status=profile.subscription_status,
            expires_at=as_utc(profile.subscription_expires_at),
            started_at=as_utc(profile.subscription_started_at),
            platform=profile.subscription_platform,
            product_id=profile.subscription_product_id,
            is_grandfathered=bool(profile.is_grandfathered),
            grandfathered_until=as_utc(profile.grandfathered_until),
        )

    @classmethod
    def default(cls, user_id: str) -> "Entitlement":
        return cls(user_id=user_id)

    def grandfathering_lapsed(self, now: datetime) -> bool:
        return (
            self.is_grandfathered
            and self.grandfathered_until is not None
            and as_utc(self.grandfathered_until) < now
        )

    def effective(self, now: Optional[datetime] = None) -> "Entitlement":
        """Apply lazy expiry: lapsed grandfathering reads as free/expired."""
        now = now or datetime.now(timezone.utc)
        if self.grandfathering_lapsed(now):
            return self.model_copy(update={"tier": "free", "status": "expired"})
        return self

    @property
    def is_premium(self) -> bool:
        return self.tier == "premium"

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_STATUSES

    @property
    def has_access(self) -> bool:
        return self.is_premium and self.is_active


class EntitlementResponse(BaseModel):
    user_id: str
    tier: str
    status: str
    expires_at: Optional[datetime] = None
    platform: Optional[str] = None
    product_id: Optional[str] = None
    is_grandfathered: bool
    grandfathered_until: Optional[datetime] = None
    is_premium: bool
    is_active: bool
    has_access: bool

    @classmethod
    def from_entitlement(cls, entitlement: Entitlement) -> "EntitlementResponse":
        return cls(
            **entitlement.model_dump(exclude={"started_at"}),
            is_premium=entitlement.is_premium,
            is_active=entitlement.is_active,
            has_access=entitlement.has_access,
        )


class ProfileSyncRequest(BaseModel):
    email: Optional[EmailStr] = None
