"""
Domain errors for entitlement and quota checks.

Routes translate these into HTTP responses; services never raise HTTPException.
"""


class EntitlementError(Exception):
    """Base class for entitlement and quota errors."""


class NotFoundError(EntitlementError):
    """No entitlement row exists for the user."""

    def __init__(self, user_id: str):
        self.user_id = user_id
        super().__init__(f"No user profile found for user {user_id}")


class StorageUnavailable(EntitlementError):
    """Durable storage could not be read or written."""


class QuotaExceeded(EntitlementError):
    """The user has no remaining allowance for an action today."""

    def __init__(self, action_type: str, remaining: int, daily_limit: int):
        self.action_type = action_type
        self.remaining = remaining
        self.daily_limit = daily_limit
        super().__init__(self.message)

    @property
    def feature_unavailable(self) -> bool:
        return self.daily_limit == 0

    @property
    def code(self) -> str:
        return "feature_not_available" if self.feature_unavailable else "quota_exceeded"

    @property
    def message(self) -> str:
        if self.feature_unavailable:
            return (
                f"{self.action_type} is not available on your current plan. "
                "Upgrade to Premium to unlock this feature."
            )
        return (
            f"Daily limit exceeded for {self.action_type}. "
            f"You've used all {self.daily_limit} allowed today."
        )

    def to_detail(self) -> dict:
        return {
            "code": self.code,
            "action_type": self.action_type,
            "remaining": self.remaining,
            "daily_limit": self.daily_limit,
            "message": self.message,
        }
