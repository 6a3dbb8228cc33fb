from app.models.ad_post import AdPost
from app.models.admin_task import AdminTask
from app.models.conversation import Conversation
from app.models.message import Message
from app.models.order import Order
from app.models.profile import ConversationProfile
from app.models.user_media import MediaAsset
from app.models.vip_subscription import VipSubscription

__all__ = [
    "ConversationProfile",
    "Conversation",
    "Message",
    "Order",
    "MediaAsset",
    "AdminTask",
    "AdPost",
    "VipSubscription",
]
