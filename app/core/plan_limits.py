from typing import Dict

from sqlalchemy.orm import Session

# Default daily limits seeded into usage_limits at deploy time.
# -1 means unlimited, 0 means the feature is disabled for the tier.
DEFAULT_USAGE_LIMITS: Dict[str, Dict[str, int]] = {
    "free": {
        "translation": 10,
        "cefr_analysis": 5,
        "verb_analysis": 5,
        "verb_conjugation": 10,
        "language_detection": 20,
        "chat_message": 0,  # Chat is premium only
    },
    "premium": {
        "translation": -1,
        "cefr_analysis": -1,
        "verb_analysis": -1,
        "verb_conjugation": -1,
        "language_detection": -1,
        "chat_message": -1,
    },
}

LIMIT_DESCRIPTIONS: Dict[str, str] = {
    "translation": "Translations per day",
    "cefr_analysis": "CEFR level analyses per day",
    "verb_analysis": "Verb analyses per day",
    "verb_conjugation": "Verb conjugation lookups per day",
    "language_detection": "Language detections per day",
    "chat_message": "AI tutor chat messages per day",
}

UNLIMITED = -1
DISABLED = 0

# Features gated on an active premium entitlement (not metered)
PREMIUM_FEATURES = frozenset({
    "chat",
    "force_fresh_analysis",
    "unlimited_usage",
    "story_mode",
})

# Actions watched for the "running low" upgrade banner
UPGRADE_BANNER_ACTIONS = ("translation", "cefr_analysis", "verb_analysis", "verb_conjugation")
UPGRADE_BANNER_THRESHOLD = 0.2


def remaining_for(daily_limit: int, used: int) -> int:
    """Remaining allowance: -1 if unlimited, 0 if disabled, else never negative."""
    if daily_limit == UNLIMITED:
        return UNLIMITED
    if daily_limit <= DISABLED:
        return 0
    return max(0, daily_limit - used)


def seed_usage_limits(db: Session) -> int:
    """Insert any missing default usage_limits rows. Existing rows are left untouched."""
    from app.models.usage_limit import UsageLimit

    existing = {(row.tier, row.action_type) for row in db.query(UsageLimit).all()}
    added = 0
    for tier, limits in DEFAULT_USAGE_LIMITS.items():
        for action_type, daily_limit in limits.items():
            if (tier, action_type) in existing:
                continue
            db.add(UsageLimit(
                tier=tier,
                action_type=action_type,
                daily_limit=daily_limit,
                description=LIMIT_DESCRIPTIONS.get(action_type),
            ))
            added += 1
    db.commit()
    return added
