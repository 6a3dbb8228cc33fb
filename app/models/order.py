from sqlalchemy import Column, ForeignKey, Index, Integer, Text
from sqlalchemy.dialects.postgresql import TIMESTAMP
from sqlalchemy.sql import func

from app.database import Base


class Order(Base):
    __tablename__ = "orders"
    __table_args__ = (Index("orders_user_status_idx", "user_id", "status"),)

    id = Column(Integer, primary_key=True)
    order_type = Column(Text, nullable=False)  # contact, vip, ad
    status = Column(Text, nullable=False, default="awaiting_payment")
    user_id = Column(Text, nullable=False)
    session_id = Column(Integer, ForeignKey("conversations.id"))
    amount = Column(Integer, nullable=False, default=0)
    ad_id = Column(Integer)  # ad_posts.id for contact orders
    created_at = Column(TIMESTAMP(timezone=True), nullable=False, server_default=func.now())
    updated_at = Column(TIMESTAMP(timezone=True), nullable=False, server_default=func.now())
