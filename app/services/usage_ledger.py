"""
Quota Ledger: per-user, per-action daily usage counted from usage_logs.

"Used" is always the number of usage_logs rows for (user, action, UTC date),
so quotas reset implicitly at UTC midnight and there is no counter to drift.

log_and_check is the only write path and is atomic per (user, action, date):
- PostgreSQL: the log_usage_if_allowed() function (alembic 002) serializes
  callers with a transaction-scoped advisory lock, then counts and inserts.
- SQLite (development, tests): one conditional INSERT ... SELECT, which runs
  under SQLite's database write lock.

Storage failures fail open (the action is allowed and not logged); a missing
usage_limits row fails closed (daily_limit 0).
"""
import json
import logging
from typing import Any, Dict, Optional

from sqlalchemy import func, literal_column, text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.core.errors import NotFoundError, StorageUnavailable
from app.core.plan_limits import UNLIMITED, DISABLED, remaining_for
from app.models.usage_limit import UsageLimit
from app.models.usage_log import UsageLog, ActionType, ACTION_TYPE_VALUES
from app.models.user_profile import SubscriptionTier
from app.schemas.usage import UsageCheckResult, UsageLogResult, ActionUsage
from app.services.entitlement_store import EntitlementStore

logger = logging.getLogger(__name__)

SQLITE_LOG_USAGE = text("""
    INSERT INTO usage_logs (user_id, action_type, usage_date, metadata, created_at)
    SELECT :user_id, :action_type, CURRENT_DATE, :metadata, CURRENT_TIMESTAMP
    WHERE :daily_limit = -1
       OR (:daily_limit > 0 AND (
            SELECT COUNT(*) FROM usage_logs
            WHERE user_id = :user_id
              AND action_type = :action_type
              AND usage_date = CURRENT_DATE
          ) < :daily_limit)
""")

POSTGRES_LOG_USAGE = text("""
    SELECT success, used_count, daily_limit, remaining
    FROM log_usage_if_allowed(:user_id, :action_type, :daily_limit, CAST(:metadata AS jsonb))
""")


def _action_value(action_type) -> str:
    return action_type.value if isinstance(action_type, ActionType) else str(action_type)


def _dialect(db: Session) -> str:
    return db.get_bind().dialect.name


def utc_today(db: Session):
    """SQL expression for the current UTC date, evaluated by the database."""
    if _dialect(db) == "postgresql":
        return literal_column("(timezone('UTC', now()))::date")
    # SQLite's CURRENT_DATE is always UTC
    return func.current_date()


class UsageLedger:
    def __init__(self, entitlement_store: EntitlementStore):
        self.entitlement_store = entitlement_store

    def resolve_tier(self, db: Session, user_id: str) -> str:
        """Tier used for limit lookup. A user without a profile is on the free tier."""
        try:
            return self.entitlement_store.fetch(db, user_id).tier
        except NotFoundError:
            return SubscriptionTier.FREE.value

    def get_daily_limit(self, db: Session, tier: str, action_type: str) -> int:
        row = (
            db.query(UsageLimit.daily_limit)
            .filter(UsageLimit.tier == tier, UsageLimit.action_type == action_type)
            .first()
        )
        if row is None:
            logger.warning("No usage limit configured for tier=%s action=%s, denying", tier, action_type)
            return DISABLED
        return row[0]

    def count_today(self, db: Session, user_id: str, action_type: str) -> int:
        return (
            db.query(func.count(UsageLog.id))
            .filter(
                UsageLog.user_id == user_id,
                UsageLog.action_type == action_type,
                UsageLog.usage_date == utc_today(db),
            )
            .scalar()
        ) or 0

    def check_limit(self, db: Session, user_id: str, action_type) -> UsageCheckResult:
        """Read-only: would the action be allowed right now?"""
        action = _action_value(action_type)
        try:
            tier = self.resolve_tier(db, user_id)
            daily_limit = self.get_daily_limit(db, tier, action)
            used = self.count_today(db, user_id, action)
        except (SQLAlchemyError, StorageUnavailable) as e:
            db.rollback()
            logger.warning("Usage check failed for user %s action %s, allowing: %s", user_id, action, e)
            return UsageCheckResult.fail_open()

        if daily_limit == UNLIMITED:
            allowed = True
        elif daily_limit <= DISABLED:
            allowed = False
        else:
            allowed = used < daily_limit
        return UsageCheckResult(
            allowed=allowed,
            used=used,
            daily_limit=daily_limit,
            remaining=remaining_for(daily_limit, used),
        )

    def log_and_check(
        self,
        db: Session,
        user_id: str,
        action_type,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> UsageLogResult:
        """
        Atomically record one use if the user is under today's limit.

        On denial nothing is written and the current counts are returned.
        On success exactly one usage_logs row is written and the counts
        include it.
        """
        action = _action_value(action_type)
        try:
            tier = self.resolve_tier(db, user_id)
            daily_limit = self.get_daily_limit(db, tier, action)
            if _dialect(db) == "postgresql":
                result = self._log_postgres(db, user_id, action, daily_limit, metadata)
            else:
                result = self._log_sqlite(db, user_id, action, daily_limit, metadata)
        except (SQLAlchemyError, StorageUnavailable) as e:
            db.rollback()
            logger.warning("Usage logging failed for user %s action %s, allowing: %s", user_id, action, e)
            return UsageLogResult.fail_open()

        if not result.success:
            logger.info(
                "Usage denied for user %s action %s (%d/%d)",
                user_id, action, result.used, result.daily_limit,
            )
        return result

    def _log_postgres(self, db, user_id, action, daily_limit, metadata) -> UsageLogResult:
        row = db.execute(POSTGRES_LOG_USAGE, {
            "user_id": user_id,
            "action_type": action,
            "daily_limit": daily_limit,
            "metadata": json.dumps(metadata) if metadata is not None else None,
        }).one()
        db.commit()
        return UsageLogResult(
            success=row.success,
            used=row.used_count,
            daily_limit=row.daily_limit,
            remaining=row.remaining,
        )

    def _log_sqlite(self, db, user_id, action, daily_limit, metadata) -> UsageLogResult:
        inserted = db.execute(SQLITE_LOG_USAGE, {
            "user_id": user_id,
            "action_type": action,
            "daily_limit": daily_limit,
            "metadata": json.dumps(metadata) if metadata is not None else None,
        }).rowcount
        # Count inside the same transaction so the result includes our own row
        used = self.count_today(db, user_id, action)
        db.commit()
        return UsageLogResult(
            success=inserted == 1,
            used=used,
            daily_limit=daily_limit,
            remaining=remaining_for(daily_limit, used),
        )

    def usage_summary(self, db: Session, user_id: str) -> Dict[str, ActionUsage]:
        """Today's usage for every action type, from the same tables as the checks."""
        try:
            tier = self.resolve_tier(db, user_id)
            limits = dict(
                db.query(UsageLimit.action_type, UsageLimit.daily_limit)
                .filter(UsageLimit.tier == tier)
                .all()
            )
            counts = dict(
                db.query(UsageLog.action_type, func.count(UsageLog.id))
                .filter(UsageLog.user_id == user_id, UsageLog.usage_date == utc_today(db))
                .group_by(UsageLog.action_type)
                .all()
            )
        except (SQLAlchemyError, StorageUnavailable) as e:
            db.rollback()
            logger.warning("Usage summary failed for user %s: %s", user_id, e)
            return {
                action: ActionUsage(used=0, daily_limit=UNLIMITED, remaining=UNLIMITED)
                for action in ACTION_TYPE_VALUES
            }

        summary = {}
        for action in ACTION_TYPE_VALUES:
            daily_limit = limits.get(action, DISABLED)
            used = counts.get(action, 0)
            summary[action] = ActionUsage(
                used=used,
                daily_limit=daily_limit,
                remaining=remaining_for(daily_limit, used),
            )
        return summary
