from sqlalchemy import Column, Integer, String, DateTime, UniqueConstraint
from sqlalchemy.sql import func
from app.db.base import Base


class UsageLimit(Base):
    """Daily allowance per (tier, action_type). -1 means unlimited, 0 means disabled."""
    __tablename__ = "usage_limits"

    id = Column(Integer, primary_key=True, index=True)
    tier = Column(String(20), nullable=False)
    action_type = Column(String(32), nullable=False)
    daily_limit = Column(Integer, nullable=False)
    description = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    __table_args__ = (
        UniqueConstraint("tier", "action_type", name="uq_usage_limits_tier_action"),
    )
