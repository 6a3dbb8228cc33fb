from sqlalchemy import CheckConstraint, Column, Integer, Text
from sqlalchemy.dialects.postgresql import TIMESTAMP
from sqlalchemy.sql import func

from app.database import Base


class ConversationProfile(Base):
    __tablename__ = "user_profiles"
    __table_args__ = (CheckConstraint("ad_count >= 0", name="user_profiles_ad_count_non_negative"),)

    id = Column(Integer, primary_key=True)
    user_id = Column(Text, nullable=False, unique=True)
    display_name = Column(Text)
    preferred_language = Column(Text, nullable=False, default="uz")
    role_use_case = Column(Text)
    timezone = Column(Text)
    gender = Column(Text)  # female, male
    phone_number = Column(Text)
    email = Column(Text)
    notes = Column(Text)
    current_step = Column(Text, nullable=False, default="idle")
    ad_count = Column(Integer, nullable=False, default=0)
    created_at = Column(TIMESTAMP(timezone=True), nullable=False, server_default=func.now())
    updated_at = Column(TIMESTAMP(timezone=True), nullable=False, server_default=func.now())
