"""PostgreSQL functions for atomic usage logging and Supabase auth triggers.

log_usage_if_allowed() is the atomic check-and-insert used by the Quota Ledger:
a transaction-scoped advisory lock on (user, action, UTC date) serializes
concurrent callers, so two requests racing for the last allowed use cannot
both succeed.

On Supabase (auth schema present) this also:
- creates a free/none profile for every new auth.users row
- deletes profiles and usage logs when the auth user is deleted

No-op on SQLite.

Revision ID: 002_usage_functions_and_auth_triggers
Revises: 001_entitlement_schema
Create Date: 2026-10-16
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


revision: str = "002_usage_functions_and_auth_triggers"
down_revision: Union[str, None] = "001_entitlement_schema"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _is_postgresql(conn) -> bool:
    return conn.dialect.name == "postgresql"


def _has_auth_schema(conn) -> bool:
    return conn.execute(sa.text(
        "SELECT 1 FROM information_schema.schemata WHERE schema_name = 'auth'"
    )).first() is not None


def upgrade() -> None:
    conn = op.get_bind()
    if not _is_postgresql(conn):
        print("ℹ️ Skipping PostgreSQL functions on", conn.dialect.name)
        return

    # Usage dates are UTC everywhere, regardless of the session time zone
    conn.execute(sa.text("""
        ALTER TABLE public.usage_logs
        ALTER COLUMN usage_date SET DEFAULT (timezone('UTC', now()))::date
    """))

    conn.execute(sa.text("""
        CREATE OR REPLACE FUNCTION public.log_usage_if_allowed(
            p_user_id VARCHAR,
            p_action_type VARCHAR,
            p_daily_limit INTEGER,
            p_metadata JSONB DEFAULT NULL
        )
        RETURNS TABLE(success BOOLEAN, used_count INTEGER, daily_limit INTEGER, remaining INTEGER)
        LANGUAGE plpgsql
        AS $$
        DECLARE
            v_today DATE := (timezone('UTC', now()))::date;
            v_used INTEGER;
            v_allowed BOOLEAN;
        BEGIN
            -- Serialize check-and-insert per (user, action, day); released at commit
            PERFORM pg_advisory_xact_lock(
                hashtext(p_user_id || ':' || p_action_type || ':' || v_today::text)
            );

            SELECT COUNT(*) INTO v_used
            FROM public.usage_logs ul
            WHERE ul.user_id = p_user_id
              AND ul.action_type = p_action_type
              AND ul.usage_date = v_today;

            v_allowed := p_daily_limit = -1 OR (p_daily_limit > 0 AND v_used < p_daily_limit);

            IF v_allowed THEN
                INSERT INTO public.usage_logs (user_id, action_type, usage_date, metadata)
                VALUES (p_user_id, p_action_type, v_today, p_metadata::json);
                v_used := v_used + 1;
            END IF;

            RETURN QUERY SELECT
                v_allowed,
                v_used,
                p_daily_limit,
                CASE
                    WHEN p_daily_limit = -1 THEN -1
                    WHEN p_daily_limit <= 0 THEN 0
                    ELSE GREATEST(0, p_daily_limit - v_used)
                END;
        END;
        $$;
    """))

    if not _has_auth_schema(conn):
        print("ℹ️ No auth schema (not Supabase), skipping auth triggers")
        print("✅ Created log_usage_if_allowed()")
        return

    conn.execute(sa.text("""
        CREATE OR REPLACE FUNCTION public.handle_new_auth_user()
        RETURNS TRIGGER AS $$
        BEGIN
            INSERT INTO public.user_profiles (id, email, subscription_tier, subscription_status)
            VALUES (NEW.id::text, NEW.email, 'free', 'none')
            ON CONFLICT (id) DO NOTHING;
            RETURN NEW;
        END;
        $$ LANGUAGE plpgsql SECURITY DEFINER;
    """))
    conn.execute(sa.text("""
        DROP TRIGGER IF EXISTS on_auth_user_created ON auth.users;

        CREATE TRIGGER on_auth_user_created
        AFTER INSERT ON auth.users
        FOR EACH ROW
        EXECUTE FUNCTION public.handle_new_auth_user();
    """))

    # Account deletion cascades to the profile and its usage history
    conn.execute(sa.text("""
        CREATE OR REPLACE FUNCTION public.handle_auth_user_deleted()
        RETURNS TRIGGER AS $$
        BEGIN
            DELETE FROM public.usage_logs WHERE user_id = OLD.id::text;
            DELETE FROM public.user_profiles WHERE id = OLD.id::text;
            RETURN OLD;
        END;
        $$ LANGUAGE plpgsql SECURITY DEFINER;
    """))
    conn.execute(sa.text("""
        DROP TRIGGER IF EXISTS on_auth_user_deleted ON auth.users;

        CREATE TRIGGER on_auth_user_deleted
        AFTER DELETE ON auth.users
        FOR EACH ROW
        EXECUTE FUNCTION public.handle_auth_user_deleted();
    """))

    print("✅ Created log_usage_if_allowed() and auth.users profile triggers")


def downgrade() -> None:
    conn = op.get_bind()
    if not _is_postgresql(conn):
        return

    if _has_auth_schema(conn):
        conn.execute(sa.text("DROP TRIGGER IF EXISTS on_auth_user_deleted ON auth.users;"))
        conn.execute(sa.text("DROP TRIGGER IF EXISTS on_auth_user_created ON auth.users;"))
    conn.execute(sa.text("DROP FUNCTION IF EXISTS public.handle_auth_user_deleted();"))
    conn.execute(sa.text("DROP FUNCTION IF EXISTS public.handle_new_auth_user();"))
    conn.execute(sa.text(
        "DROP FUNCTION IF EXISTS public.log_usage_if_allowed(VARCHAR, VARCHAR, INTEGER, JSONB);"
    ))
    conn.execute(sa.text("ALTER TABLE public.usage_logs ALTER COLUMN usage_date SET DEFAULT CURRENT_DATE"))
