from pydantic import BaseModel
from typing import Any, Dict, Optional

from app.core.plan_limits import UNLIMITED


class UsageCheckResult(BaseModel):
    allowed: bool
    used: int
    daily_limit: int
    remaining: int

    @classmethod
    def fail_open(cls) -> "UsageCheckResult":
        return cls(allowed=True, used=0, daily_limit=UNLIMITED, remaining=UNLIMITED)


class UsageLogResult(BaseModel):
    success: bool
    used: int
    daily_limit: int
    remaining: int

    @classmethod
    def fail_open(cls) -> "UsageLogResult":
        return cls(success=True, used=0, daily_limit=UNLIMITED, remaining=UNLIMITED)


class ActionUsage(BaseModel):
    used: int
    daily_limit: int
    remaining: int


class ConsumeRequest(BaseModel):
    metadata: Optional[Dict[str, Any]] = None


class ActionAllowedResponse(BaseModel):
    action_type: str
    allowed: bool


class UsageSummaryResponse(BaseModel):
    tier: str
    usage: Dict[str, ActionUsage]


class AccessSummaryResponse(BaseModel):
    tier: str
    status: str
    is_premium: bool
    is_active: bool
    has_access: bool
    is_grandfathered: bool
    should_show_paywall: bool
    should_show_upgrade_banner: bool
    usage: Dict[str, ActionUsage]
