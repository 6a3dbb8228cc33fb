from sqlalchemy import Column, Integer, Text
from sqlalchemy.dialects.postgresql import TIMESTAMP
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from app.database import Base


class Conversation(Base):
    __tablename__ = "conversations"

    id = Column(Integer, primary_key=True)
    user_id = Column(Text, nullable=False, unique=True)
    username = Column(Text)
    first_name = Column(Text)
    last_name = Column(Text)
    started_at = Column(TIMESTAMP(timezone=True), nullable=False, server_default=func.now())
    last_message_at = Column(TIMESTAMP(timezone=True))

    messages = relationship("Message", back_populates="conversation")
