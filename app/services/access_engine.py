"""
Access Decision Engine: the single gate every metered feature goes through.

Premium users with an access-granting status (active, trial, grace_period)
are allowed without touching the ledger. Everyone else is checked against
the Quota Ledger. If the entitlement cannot be read the user is treated as
free/none, so a storage outage never grants a premium bypass; the ledger's
own fail-open policy then decides.
"""
import logging
from typing import Any, Dict, Optional

from sqlalchemy.orm import Session

from app.core.errors import NotFoundError, StorageUnavailable, QuotaExceeded
from app.core.plan_limits import (
    PREMIUM_FEATURES,
    UPGRADE_BANNER_ACTIONS,
    UPGRADE_BANNER_THRESHOLD,
    UNLIMITED,
)
from app.schemas.entitlement import Entitlement
from app.schemas.usage import UsageLogResult, ActionUsage, AccessSummaryResponse
from app.services.entitlement_store import EntitlementStore
from app.services.usage_ledger import UsageLedger

logger = logging.getLogger(__name__)


class AccessDecisionEngine:
    def __init__(self, entitlement_store: EntitlementStore, ledger: UsageLedger):
        self.entitlement_store = entitlement_store
        self.ledger = ledger

    def resolve_entitlement(self, db: Session, user_id: str) -> Entitlement:
        try:
            return self.entitlement_store.fetch(db, user_id)
        except NotFoundError:
            return Entitlement.default(user_id)
        except StorageUnavailable as e:
            logger.warning("Entitlement unavailable for user %s, treating as free: %s", user_id, e)
            return Entitlement.default(user_id)

    def can_perform_action(self, db: Session, user_id: str, action_type) -> bool:
        entitlement = self.resolve_entitlement(db, user_id)
        if entitlement.has_access:
            return True
        return self.ledger.check_limit(db, user_id, action_type).allowed

    def check_and_consume(
        self,
        db: Session,
        user_id: str,
        action_type,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> UsageLogResult:
        """Record one use of ``action_type`` or raise QuotaExceeded."""
        entitlement = self.resolve_entitlement(db, user_id)
        if entitlement.has_access:
            return UsageLogResult(success=True, used=0, daily_limit=UNLIMITED, remaining=UNLIMITED)

        result = self.ledger.log_and_check(db, user_id, action_type, metadata)
        if not result.success:
            action = getattr(action_type, "value", action_type)
            raise QuotaExceeded(action, remaining=result.remaining, daily_limit=result.daily_limit)
        return result

    def has_feature(self, db: Session, user_id: str, feature: str) -> bool:
        """Premium-only (non-metered) features such as chat or story mode."""
        if feature not in PREMIUM_FEATURES:
            return False
        return self.resolve_entitlement(db, user_id).has_access

    def access_summary(self, db: Session, user_id: str) -> AccessSummaryResponse:
        entitlement = self.resolve_entitlement(db, user_id)
        usage = self.ledger.usage_summary(db, user_id)
        if entitlement.has_access:
            usage = {
                action: ActionUsage(used=item.used, daily_limit=UNLIMITED, remaining=UNLIMITED)
                for action, item in usage.items()
            }
        return AccessSummaryResponse(
            tier=entitlement.tier,
            status=entitlement.status,
            is_premium=entitlement.is_premium,
            is_active=entitlement.is_active,
            has_access=entitlement.has_access,
            is_grandfathered=entitlement.is_grandfathered,
            should_show_paywall=not entitlement.has_access,
            should_show_upgrade_banner=(
                not entitlement.has_access and should_show_upgrade_banner(usage)
            ),
            usage=usage,
        )


def should_show_upgrade_banner(usage: Dict[str, ActionUsage]) -> bool:
    """True when any watched action is down to its last 20% for today."""
    for action in UPGRADE_BANNER_ACTIONS:
        item = usage.get(action)
        if item is None or item.daily_limit <= 0:
            continue
        if item.remaining <= item.daily_limit * UPGRADE_BANNER_THRESHOLD:
            return True
    return False
