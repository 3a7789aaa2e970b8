"""
Migration: Grandfather users who signed up before paid plans launched.

Every profile created before GRANDFATHER_CUTOFF that never had a subscription
(status 'none') gets a time-boxed premium trial:
tier=premium, status=trial, is_grandfathered=true,
grandfathered_until = now + GRANDFATHER_DAYS (default 30).

When grandfathered_until passes, reads treat the user as free/expired
immediately; scripts/expire_grandfathered.py persists that later.

Idempotent - already grandfathered or subscribed users are never touched.
Skipped when GRANDFATHER_CUTOFF is not set.
"""
from datetime import datetime, timedelta, timezone
from sqlalchemy import create_engine, text, bindparam, Boolean, DateTime
import os
from dotenv import load_dotenv

load_dotenv()

GRANDFATHER_CUTOFF = os.getenv("GRANDFATHER_CUTOFF")  # ISO timestamp, e.g. 2026-02-01T00:00:00+00:00
GRANDFATHER_DAYS = int(os.getenv("GRANDFATHER_DAYS", "30"))


def _database_url():
    url = os.getenv("DATABASE_URL")
    if not url:
        raise ValueError("DATABASE_URL environment variable is not set")
    if url.startswith("postgres://"):
        url = "postgresql://" + url[10:]
    return url


def _parse_cutoff(value: str) -> datetime:
    cutoff = datetime.fromisoformat(value)
    if cutoff.tzinfo is None:
        cutoff = cutoff.replace(tzinfo=timezone.utc)
    return cutoff


def run_migration(database_url=None, cutoff=None, days=None, now=None):
    """Grant the grandfathered premium trial to eligible legacy users."""
    cutoff = cutoff or GRANDFATHER_CUTOFF
    if not cutoff:
        print("ℹ️ GRANDFATHER_CUTOFF not set, skipping grandfathering")
        return True

    if isinstance(cutoff, str):
        cutoff = _parse_cutoff(cutoff)
    now = now or datetime.now(timezone.utc)
    until = now + timedelta(days=days if days is not None else GRANDFATHER_DAYS)

    engine = create_engine(database_url or _database_url())
    try:
        with engine.connect() as conn:
            result = conn.execute(text("""
                UPDATE user_profiles
                SET subscription_tier = 'premium',
                    subscription_status = 'trial',
                    is_grandfathered = :grandfathered,
                    grandfathered_until = :until,
                    updated_at = :now
                WHERE created_at < :cutoff
                  AND subscription_status = 'none'
                  AND is_grandfathered = :not_grandfathered
            """).bindparams(
                bindparam("grandfathered", type_=Boolean()),
                bindparam("not_grandfathered", type_=Boolean()),
                bindparam("until", type_=DateTime(timezone=True)),
                bindparam("now", type_=DateTime(timezone=True)),
                bindparam("cutoff", type_=DateTime(timezone=True)),
            ), {
                "grandfathered": True,
                "not_grandfathered": False,
                "until": until,
                "now": now,
                "cutoff": cutoff,
            })
            conn.commit()
            print(f"✅ Grandfathered {result.rowcount} existing users until {until.isoformat()}")
            return True

    except Exception as e:
        print(f"❌ Grandfathering migration failed: {str(e)}")
        return False
    finally:
        engine.dispose()


if __name__ == "__main__":
    run_migration()
