"""Entitlement and usage quota schema with default usage limits.

Creates user_profiles, usage_limits, usage_logs and subscription_events and
seeds the per-tier daily limits. Portable across PostgreSQL and SQLite;
PostgreSQL-only objects live in 002.

Revision ID: 001_entitlement_schema
Revises:
Create Date: 2026-10-16
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


revision: str = "001_entitlement_schema"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

ACTION_TYPES = (
    "translation",
    "cefr_analysis",
    "verb_analysis",
    "verb_conjugation",
    "language_detection",
    "chat_message",
)

# Snapshot of the limits at the time of this migration; later changes get their own revision
FREE_LIMITS = {
    "translation": (10, "Translations per day"),
    "cefr_analysis": (5, "CEFR level analyses per day"),
    "verb_analysis": (5, "Verb analyses per day"),
    "verb_conjugation": (10, "Verb conjugation lookups per day"),
    "language_detection": (20, "Language detections per day"),
    "chat_message": (0, "AI tutor chat messages per day"),
}


def _in(column, values):
    return "{} IN ({})".format(column, ", ".join(f"'{v}'" for v in values))


def upgrade() -> None:
    op.create_table(
        "user_profiles",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("email", sa.String(), nullable=True),
        sa.Column("subscription_tier", sa.String(20), nullable=False, server_default="free"),
        sa.Column("subscription_status", sa.String(20), nullable=False, server_default="none"),
        sa.Column("subscription_expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("subscription_started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("subscription_platform", sa.String(20), nullable=True),
        sa.Column("subscription_product_id", sa.String(), nullable=True),
        sa.Column("revenuecat_app_user_id", sa.String(), nullable=True),
        sa.Column("is_grandfathered", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("grandfathered_until", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.CheckConstraint(_in("subscription_tier", ("free", "premium")), name="ck_user_profiles_tier"),
        sa.CheckConstraint(
            _in("subscription_status", ("none", "active", "cancelled", "expired", "grace_period", "trial")),
            name="ck_user_profiles_status",
        ),
        sa.CheckConstraint(
            "subscription_platform IS NULL OR " + _in("subscription_platform", ("ios", "android", "web")),
            name="ck_user_profiles_platform",
        ),
    )
    op.create_index("ix_user_profiles_id", "user_profiles", ["id"])
    op.create_index("ix_user_profiles_email", "user_profiles", ["email"])
    op.create_index("ix_user_profiles_revenuecat_app_user_id", "user_profiles", ["revenuecat_app_user_id"])

    usage_limits = op.create_table(
        "usage_limits",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("tier", sa.String(20), nullable=False),
        sa.Column("action_type", sa.String(32), nullable=False),
        sa.Column("daily_limit", sa.Integer(), nullable=False),
        sa.Column("description", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.UniqueConstraint("tier", "action_type", name="uq_usage_limits_tier_action"),
    )
    op.create_index("ix_usage_limits_id", "usage_limits", ["id"])

    op.create_table(
        "usage_logs",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.String(36), nullable=False),
        sa.Column("action_type", sa.String(32), nullable=False),
        sa.Column("usage_date", sa.Date(), nullable=False, server_default=sa.text("CURRENT_DATE")),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("metadata", sa.JSON(), nullable=True),
        sa.CheckConstraint(_in("action_type", ACTION_TYPES), name="ck_usage_logs_action_type"),
    )
    op.create_index("ix_usage_logs_id", "usage_logs", ["id"])
    op.create_index("ix_usage_logs_user_action_date", "usage_logs", ["user_id", "action_type", "usage_date"])

    op.create_table(
        "subscription_events",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("event_id", sa.String(), nullable=False),
        sa.Column(
            "user_id",
            sa.String(36),
            sa.ForeignKey("user_profiles.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("revenuecat_app_user_id", sa.String(), nullable=True),
        sa.Column("event_type", sa.String(64), nullable=False),
        sa.Column("event_data", sa.JSON(), nullable=True),
        sa.Column("error", sa.Text(), nullable=True),
        sa.Column("processed_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_subscription_events_id", "subscription_events", ["id"])
    op.create_index("ix_subscription_events_event_id", "subscription_events", ["event_id"], unique=True)
    op.create_index("ix_subscription_events_user_id", "subscription_events", ["user_id"])

    rows = []
    for action_type, (daily_limit, description) in FREE_LIMITS.items():
        rows.append({"tier": "free", "action_type": action_type, "daily_limit": daily_limit, "description": description})
        rows.append({"tier": "premium", "action_type": action_type, "daily_limit": -1, "description": description})
    op.bulk_insert(usage_limits, rows)

    print("✅ Created entitlement tables and seeded usage limits")


def downgrade() -> None:
    op.drop_table("subscription_events")
    op.drop_table("usage_logs")
    op.drop_table("usage_limits")
    op.drop_table("user_profiles")
