from sqlalchemy import BigInteger, Column, ForeignKey, Integer, Text
from sqlalchemy.dialects.postgresql import TIMESTAMP
from sqlalchemy.sql import func

from app.database import Base


class AdPost(Base):
    __tablename__ = "ad_posts"

    id = Column(Integer, primary_key=True)
    task_id = Column(Integer, ForeignKey("admin_tasks.id"))
    user_id = Column(Text)
    content = Column(Text, nullable=False)
    status = Column(Text, nullable=False, default="publishing")  # publishing, published, partial_failed
    public_status = Column(Text, nullable=False, default="pending")
    vip_status = Column(Text, nullable=False, default="pending")
    archive_status = Column(Text, nullable=False, default="pending")
    public_message_id = Column(BigInteger)
    vip_message_id = Column(BigInteger)
    archive_message_id = Column(BigInteger)
    created_at = Column(TIMESTAMP(timezone=True), nullable=False, server_default=func.now())
    updated_at = Column(TIMESTAMP(timezone=True), nullable=False, server_default=func.now())
