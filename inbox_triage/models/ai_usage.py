from sqlalchemy import Column, Integer, Text
from sqlalchemy.dialects.postgresql import TIMESTAMP

from inbox_triage.database import Base


class AiUsageDaily(Base):
    __tablename__ = "ai_usage_daily"

    date = Column(Text, primary_key=True)  # YYYY-MM-DD, UTC
    calls = Column(Integer, nullable=False, default=0)
    updated_at = Column(TIMESTAMP(timezone=True), nullable=False)


class AiUsageConversationDaily(Base):
    __tablename__ = "ai_usage_conversation_daily"

    conversation_id = Column(Text, primary_key=True)
    date = Column(Text, primary_key=True)
    calls = Column(Integer, nullable=False, default=0)
