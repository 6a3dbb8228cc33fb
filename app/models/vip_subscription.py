from sqlalchemy import Column, Integer, Text
from sqlalchemy.dialects.postgresql import TIMESTAMP
from sqlalchemy.sql import func

from app.database import Base


class VipSubscription(Base):
    __tablename__ = "vip_subscriptions"

    id = Column(Integer, primary_key=True)
    user_id = Column(Text, nullable=False)
    status = Column(Text, nullable=False, default="active")  # active, expired
    starts_at = Column(TIMESTAMP(timezone=True), nullable=False)
    expires_at = Column(TIMESTAMP(timezone=True), nullable=False)
    reminder_sent_at = Column(TIMESTAMP(timezone=True))
    created_at = Column(TIMESTAMP(timezone=True), nullable=False, server_default=func.now())
    updated_at = Column(TIMESTAMP(timezone=True), nullable=False, server_default=func.now())
