"""
Append-only log of metered actions. The number of rows for
(user_id, action_type, usage_date) is the authoritative daily usage count.
"""
from sqlalchemy import Column, Integer, String, Date, DateTime, JSON, Index, CheckConstraint, text
from sqlalchemy.sql import func
from enum import Enum
from app.db.base import Base


class ActionType(str, Enum):
    """Metered features. Adding one also needs usage_limits rows for every tier."""
    TRANSLATION = "translation"
    CEFR_ANALYSIS = "cefr_analysis"
    VERB_ANALYSIS = "verb_analysis"
    VERB_CONJUGATION = "verb_conjugation"
    LANGUAGE_DETECTION = "language_detection"
    CHAT_MESSAGE = "chat_message"


ACTION_TYPE_VALUES = tuple(action.value for action in ActionType)


class UsageLog(Base):
    __tablename__ = "usage_logs"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(String(36), nullable=False)  # Supabase auth user id
    action_type = Column(String(32), nullable=False)
    # UTC calendar date, always computed by the database
    usage_date = Column(Date, nullable=False, server_default=text("CURRENT_DATE"))
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    usage_metadata = Column("metadata", JSON, nullable=True)  # Diagnostics only

    __table_args__ = (
        Index("ix_usage_logs_user_action_date", "user_id", "action_type", "usage_date"),
        CheckConstraint(
            "action_type IN ({})".format(", ".join(f"'{v}'" for v in ACTION_TYPE_VALUES)),
            name="ck_usage_logs_action_type",
        ),
    )

    def __repr__(self):
        return f"<UsageLog(user_id={self.user_id}, action_type={self.action_type}, usage_date={self.usage_date})>"
