from sqlalchemy import BigInteger, Column, ForeignKey, Integer, Text
from sqlalchemy.dialects.postgresql import JSONB, TIMESTAMP
from sqlalchemy.sql import func

from app.database import Base


class AdminTask(Base):
    __tablename__ = "admin_tasks"

    id = Column(Integer, primary_key=True)
    task_type = Column(Text, nullable=False)  # payment, publish, escalation
    status = Column(Text, nullable=False, default="pending")
    payload = Column(JSONB, nullable=False, default=dict)
    user_id = Column(Text)
    session_id = Column(Integer, ForeignKey("conversations.id"))
    admin_message_id = Column(BigInteger)
    admin_topic_id = Column(Integer)
    admin_action_by = Column(Text)
    admin_action_at = Column(TIMESTAMP(timezone=True))
    created_at = Column(TIMESTAMP(timezone=True), nullable=False, server_default=func.now())
    updated_at = Column(TIMESTAMP(timezone=True), nullable=False, server_default=func.now())
