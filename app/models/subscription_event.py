"""
Audit and deduplication log of RevenueCat webhook events.

A row with ``error IS NULL`` means the event was applied; redeliveries of that
event id are ignored. A row with an error is re-applied when the provider retries.
"""
from sqlalchemy import Column, Integer, String, Text, JSON, ForeignKey, DateTime
from sqlalchemy.sql import func
from app.db.base import Base


class SubscriptionEvent(Base):
    __tablename__ = "subscription_events"

    id = Column(Integer, primary_key=True, index=True)
    event_id = Column(String, unique=True, nullable=False, index=True)
    user_id = Column(String(36), ForeignKey("user_profiles.id", ondelete="SET NULL"), nullable=True, index=True)
    revenuecat_app_user_id = Column(String, nullable=True)
    event_type = Column(String(64), nullable=False)
    event_data = Column(JSON, nullable=True)  # Raw webhook payload
    error = Column(Text, nullable=True)
    processed_at = Column(DateTime(timezone=True), server_default=func.now())

    def __repr__(self):
        return f"<SubscriptionEvent(event_id={self.event_id}, type={self.event_type}, error={self.error is not None})>"
