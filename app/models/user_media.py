from sqlalchemy import BigInteger, Column, ForeignKey, Integer, Text
from sqlalchemy.dialects.postgresql import TIMESTAMP
from sqlalchemy.sql import func

from app.database import Base


class MediaAsset(Base):
    __tablename__ = "user_media"

    id = Column(Integer, primary_key=True)
    user_id = Column(Text, nullable=False)
    session_id = Column(Integer, ForeignKey("conversations.id"))
    order_id = Column(Integer, ForeignKey("orders.id"))
    message_id = Column(BigInteger)
    file_id = Column(Text)
    media_type = Column(Text, nullable=False)  # photo, video
    archive_group_id = Column(Text)
    archive_topic_id = Column(Integer)
    archive_message_id = Column(BigInteger)
    created_at = Column(TIMESTAMP(timezone=True), nullable=False, server_default=func.now())
