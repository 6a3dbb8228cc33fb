"""What happens after an admin approves: contact reveal, VIP access, ad content and channel publishing.

Media is re-sent by Telegram ``file_id``; only the public channel photo is
downloaded, because it has to be blurred first.
"""

import asyncio
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy.orm import Session

from app.config import TelegramRouting, settings
from app.logging_config import get_logger
from app.models import AdminTask, AdPost, MediaAsset, Order
from app.services.anketa_service import build_anketa_template
from app.services.face_blur_service import FaceBlurService
from app.services.media_router import (
    MAX_PHOTOS,
    MAX_VIDEOS,
    PHOTO,
    VIDEO,
    clear_order_media,
    get_media_counts,
    get_order_media,
)
from app.services.moderation_queue import Responder, payload_order_id
from app.services.order_ledger import (
    PAYMENT_PENDING_STATUSES,
    OrderStatus,
    OrderType,
    can_transition,
    get_order,
    set_order_status,
)
from app.services.profile_service import increment_ad_count
from app.services.result import Result
from app.services.step_machine import ConversationStep, set_current_step
from app.services.telegram_service import FileRef, TelegramService, message_id_of
from app.services.vip_service import upsert_vip_subscription

logger = get_logger("fulfillment_service")

CONTACT_NOT_FOUND_TEXT = "Kontakt topilmadi. Admin tekshiradi."
CONTACT_PHOTO_CAPTION = "Rasm 10 soniyada o'chadi."
CONTACT_PHOTO_TTL_SECONDS = 10
MEDIA_REQUEST_TEXT = "Keyin 2 ta rasm va 1 ta yumaloq video yuboring."
MEDIA_REJECTED_TEXT = "Media mos emas. Qaytadan 2 ta rasm va 1 ta video yuboring."
MEDIA_RESET_TEXT = "Media tozalandi. 2 ta rasm va 1 ta video yuboring."

PHONE_PATTERN = re.compile(r"\+?\d[\d\s-]{8,}")
USERNAME_PATTERN = re.compile(r"@[a-zA-Z0-9_]{4,}")
CONTACT_LINE_PATTERN = re.compile(r"^\s*(tel|telefon|phone|aloqa)\s*:", re.IGNORECASE)


@dataclass(frozen=True)
class PublishOutcome:
    fully_published: bool
    ad_id: Optional[int] = None
    public_status: str = "pending"
    vip_status: str = "pending"
    archive_status: str = "pending"


def extract_contact_info(text: str) -> Optional[str]:
    """Phone number (spaces removed) or @username from the anketa text."""
    phone = PHONE_PATTERN.search(text or "")
    if phone:
        return re.sub(r"\s+", "", phone.group(0))
    username = USERNAME_PATTERN.search(text or "")
    return username.group(0) if username else None


def build_open_channel_message(text: str) -> str:
    """The public post never carries contact lines."""
    lines = re.split(r"\r?\n", text or "")
    return "\n".join(line for line in lines if not CONTACT_LINE_PATTERN.match(line)).strip()


def build_closed_channel_message(text: str) -> str:
    return text


def build_archive_banner(order_id: Optional[int], photos: Optional[int] = None, videos: Optional[int] = None) -> str:
    parts = []
    if order_id is not None:
        parts.append(f"order: #{order_id}")
    if photos is not None and videos is not None:
        parts.append(f"media: {photos} photo, {videos} video")
    return " | ".join(parts)


def build_anketa_link_text(link: str) -> str:
    return f"Anketani to'ldirish uchun quyidagi havolani bosing:\n{link}"


class FulfillmentService:
    def __init__(
        self,
        telegram: TelegramService,
        routing: TelegramRouting,
        blur: FaceBlurService,
        responder: Responder,
    ):
        self.telegram = telegram
        self.routing = routing
        self.blur = blur
        self.responder = responder

    def _load_order(self, db: Session, order_id: Optional[int], order_type: OrderType) -> Result[Order]:
        order = get_order(db, order_id) if order_id else None
        if order is None:
            return Result.failure(f"Order {order_id} not found", "not_found")
        if order.order_type != order_type.value:
            return Result.failure(f"Order {order_id} is {order.order_type}, not {order_type.value}", "wrong_type")
        return Result.success(order)

    def _load_payable_order(self, db: Session, order_id: Optional[int], order_type: OrderType) -> Result[Order]:
        """Load an order whose payment is still unsettled; a second approval for it is refused."""
        loaded = self._load_order(db, order_id, order_type)
        if loaded and loaded.value.status not in PAYMENT_PENDING_STATUSES:
            return Result.failure(f"Order {order_id} is already {loaded.value.status}", "already_settled")
        return loaded

    def _advance(self, db: Session, order: Order, target: OrderStatus) -> bool:
        """Move the order to ``target``, through payment_submitted when the receipt step was skipped."""
        if not can_transition(order.order_type, order.status, target.value) and can_transition(
            order.order_type, order.status, OrderStatus.PAYMENT_SUBMITTED.value
        ):
            set_order_status(db, order, OrderStatus.PAYMENT_SUBMITTED)
        if order.status != target.value and not can_transition(order.order_type, order.status, target.value):
            logger.warning(
                "Order cannot reach status",
                extra={"context": {"order_id": order.id, "status": order.status, "target": target.value}},
            )
            return False
        set_order_status(db, order, target)
        return True

    # Payment approvals

    async def fulfill_contact_order(self, db: Session, order_id: int) -> bool:
        loaded = self._load_payable_order(db, order_id, OrderType.CONTACT)
        if not loaded:
            logger.warning("Order not loadable", extra={"context": loaded.log_context(order_id=order_id)})
            return False
        order = loaded.value

        ad_post = db.query(AdPost).filter(AdPost.id == order.ad_id).first() if order.ad_id else None
        contact = extract_contact_info(ad_post.content) if ad_post and ad_post.user_id else None
        if not contact:
            await self.responder(db, order.user_id, CONTACT_NOT_FOUND_TEXT)
            self._advance(db, order, OrderStatus.FAILED)
            return False

        await self.responder(db, order.user_id, f"Kontakt: {contact}")

        photos = get_order_media(db, ad_post.user_id, PHOTO, 1)
        if photos and photos[0].file_id:
            self._send_self_destruct_photo(order.user_id, photos[0].file_id)

        self._advance(db, order, OrderStatus.COMPLETED)
        logger.info("Contact order fulfilled", extra={"context": {"order_id": order.id, "ad_id": order.ad_id}})
        return True

    def _send_self_destruct_photo(self, user_id: str, file_id: str) -> None:
        result = self.telegram.send_photo(user_id, file_id, caption=CONTACT_PHOTO_CAPTION, protect_content=True)
        message_id = message_id_of(result)
        if message_id is None:
            logger.warning("Contact photo send failed", extra={"context": {"user_id": user_id}})
            return
        asyncio.get_running_loop().call_later(
            CONTACT_PHOTO_TTL_SECONDS, self.telegram.delete_message, user_id, message_id
        )

    def _vip_invite_link(self) -> Optional[str]:
        if not self.routing.vip_channel_id:
            return None
        return self.telegram.create_chat_invite_link(
            self.routing.vip_channel_id
        ) or self.telegram.export_chat_invite_link(self.routing.vip_channel_id)

    async def activate_vip_order(self, db: Session, order_id: int) -> bool:
        loaded = self._load_payable_order(db, order_id, OrderType.VIP)
        if not loaded:
            logger.warning("Order not loadable", extra={"context": loaded.log_context(order_id=order_id)})
            return False
        order = loaded.value

        subscription = upsert_vip_subscription(db, order.user_id)
        link = self._vip_invite_link()
        if link:
            await self.responder(db, order.user_id, f"VIP kanal link: {link}")
        else:
            logger.warning("No VIP invite link available", extra={"context": {"order_id": order.id}})
        if subscription.expires_at:
            await self.responder(db, order.user_id, f"VIP obuna {settings.vip_duration_days} kun faol bo'ladi.")

        self._advance(db, order, OrderStatus.COMPLETED)
        return True

    async def send_anketa_template(self, db: Session, user_id: str) -> None:
        if settings.template_link:
            await self.responder(db, user_id, build_anketa_link_text(settings.template_link))
        else:
            await self.responder(db, user_id, build_anketa_template("Anketa shabloni:"))
        await self.responder(db, user_id, MEDIA_REQUEST_TEXT)

    async def handle_ad_payment_approved(self, db: Session, order_id: int) -> bool:
        loaded = self._load_payable_order(db, order_id, OrderType.AD)
        if not loaded:
            logger.warning("Order not loadable", extra={"context": loaded.log_context(order_id=order_id)})
            return False
        order = loaded.value

        if not self._advance(db, order, OrderStatus.AWAITING_CONTENT):
            return False
        await self.send_anketa_template(db, order.user_id)
        return True

    def reopen_payment(self, db: Session, order_id: int) -> bool:
        order = get_order(db, order_id)
        if order is None:
            return False
        if not can_transition(order.order_type, order.status, OrderStatus.AWAITING_PAYMENT.value):
            logger.info(
                "Rejected payment left order unchanged",
                extra={"context": {"order_id": order.id, "status": order.status}},
            )
            return False
        set_order_status(db, order, OrderStatus.AWAITING_PAYMENT)
        return True

    # Media decisions

    async def _restart_media(self, db: Session, user_id: str, order_id: Optional[int], text: str) -> None:
        await self.responder(db, user_id, text)
        if not order_id:
            return
        clear_order_media(db, user_id, order_id)
        order = get_order(db, order_id)
        if order is not None and can_transition(order.order_type, order.status, OrderStatus.AWAITING_CONTENT.value):
            set_order_status(db, order, OrderStatus.AWAITING_CONTENT)
        # The media-ready step survives an order re-sync, so clear it explicitly.
        set_current_step(db, user_id, ConversationStep.AWAITING_CANDIDATE_MEDIA)

    async def reject_media(self, db: Session, user_id: str, order_id: Optional[int]) -> None:
        await self._restart_media(db, user_id, order_id, MEDIA_REJECTED_TEXT)

    async def reset_media(self, db: Session, user_id: str, order_id: Optional[int]) -> None:
        await self._restart_media(db, user_id, order_id, MEDIA_RESET_TEXT)

    # Publishing

    def _send_media(
        self,
        chat_id: str,
        photos: list[FileRef],
        videos: list[FileRef],
        topic_id: Optional[int] = None,
    ) -> bool:
        ok = True
        for photo in photos:
            ok = bool(self.telegram.send_photo(chat_id, photo, message_thread_id=topic_id).get("ok")) and ok
        for video in videos:
            ok = bool(self.telegram.send_video(chat_id, video, message_thread_id=topic_id).get("ok")) and ok
        return ok

    def _post(
        self,
        chat_id: Optional[str],
        text: str,
        photos: list[FileRef],
        videos: list[FileRef],
        topic_id: Optional[int] = None,
    ) -> tuple[str, Optional[int]]:
        """Media first, then the text. Returns (status, text message id)."""
        if not chat_id:
            return "skipped", None
        try:
            media_ok = self._send_media(chat_id, photos, videos, topic_id)
            result = self.telegram.send_message(chat_id, text, message_thread_id=topic_id)
        except Exception as e:
            logger.warning(f"Channel post failed: {e}", extra={"context": {"chat_id": chat_id}})
            return "failed", None
        message_id = message_id_of(result)
        if message_id is None or not media_ok:
            logger.warning(
                "Channel post incomplete",
                extra={"context": {"chat_id": chat_id, "media_ok": media_ok, "error": result.get("description")}},
            )
            return "failed", message_id
        return "published", message_id

    def _blurred_photo(self, asset: Optional[MediaAsset]) -> list[FileRef]:
        """The public photo, blurred. An image that cannot be blurred is left out."""
        if asset is None or not asset.file_id:
            return []
        data = self.telegram.get_file_bytes(asset.file_id)
        if not data:
            return []
        blurred = self.blur.blur(data)
        return [blurred] if blurred else []

    async def publish_ad_task(self, db: Session, task: AdminTask, text: str) -> PublishOutcome:
        """Post an approved anketa to the archive, public and VIP channels.

        The order completes and the user hears about it only when both channels
        took the post.
        """
        if not self.routing.public_channel_id and not self.routing.vip_channel_id:
            logger.warning("Channel ids not configured for publishing", extra={"context": {"task_id": task.id}})
            return PublishOutcome(fully_published=False)

        order_id = payload_order_id(task.payload)
        order = get_order(db, order_id) if order_id else None
        user_id = order.user_id if order else task.user_id
        if not user_id:
            return PublishOutcome(fully_published=False)

        counts = get_media_counts(db, user_id, order_id)
        if not counts.ready or counts.photos > MAX_PHOTOS or counts.videos > MAX_VIDEOS:
            logger.warning(
                "Media not publishable",
                extra={"context": {"task_id": task.id, "photos": counts.photos, "videos": counts.videos}},
            )
            return PublishOutcome(fully_published=False)

        now = datetime.now(timezone.utc)
        ad_post = AdPost(task_id=task.id, user_id=user_id, content=text, status="publishing", created_at=now, updated_at=now)
        db.add(ad_post)
        db.flush()
        source_text = f"{text}\n\nID: #{ad_post.id}"

        photos = get_order_media(db, user_id, PHOTO, MAX_PHOTOS, order_id)
        videos = get_order_media(db, user_id, VIDEO, MAX_VIDEOS, order_id)
        photo_ids = [asset.file_id for asset in photos if asset.file_id]
        video_ids = [asset.file_id for asset in videos if asset.file_id]
        best_photo = photos[0] if photos else None

        archive_status, archive_message_id = "skipped", None
        if self.routing.storage_group_id and self.routing.archive_topic_id:
            banner = build_archive_banner(order_id, counts.photos, counts.videos)
            archive_status, archive_message_id = self._post(
                self.routing.storage_group_id,
                f"{banner}\n\n{source_text}" if banner else source_text,
                photo_ids,
                video_ids,
                self.routing.archive_topic_id,
            )

        public_status, public_message_id = self._post(
            self.routing.public_channel_id,
            build_open_channel_message(source_text),
            self._blurred_photo(best_photo) if self.routing.public_channel_id else [],
            video_ids,
        )
        vip_status, vip_message_id = self._post(
            self.routing.vip_channel_id,
            build_closed_channel_message(source_text),
            [best_photo.file_id] if best_photo and best_photo.file_id else [],
            video_ids,
        )

        fully_published = public_status == "published" and vip_status == "published"
        ad_post.status = "published" if fully_published else "partial_failed"
        ad_post.public_status = public_status
        ad_post.vip_status = vip_status
        ad_post.archive_status = archive_status
        ad_post.public_message_id = public_message_id
        ad_post.vip_message_id = vip_message_id
        ad_post.archive_message_id = archive_message_id
        ad_post.updated_at = datetime.now(timezone.utc)
        db.flush()

        if fully_published:
            if order is not None and order.order_type == OrderType.AD.value:
                self._advance(db, order, OrderStatus.COMPLETED)
                increment_ad_count(db, order.user_id)
            await self.responder(db, user_id, f"Anketangiz chiqdi. ID: #{ad_post.id}")

        logger.info(
            "Anketa published" if fully_published else "Anketa partially published",
            extra={
                "context": {
                    "task_id": task.id,
                    "ad_id": ad_post.id,
                    "public": public_status,
                    "vip": vip_status,
                    "archive": archive_status,
                }
            },
        )
        return PublishOutcome(
            fully_published=fully_published,
            ad_id=ad_post.id,
            public_status=public_status,
            vip_status=vip_status,
            archive_status=archive_status,
        )

    async def send_preview(self, db: Session, user_id: Optional[str], order_id: Optional[int]) -> bool:
        """Re-send the candidate's media to the anketas topic for review."""
        if not user_id or not self.routing.management_group_id or not self.routing.anketas_topic_id:
            return False
        photos = [a.file_id for a in get_order_media(db, user_id, PHOTO, MAX_PHOTOS, order_id) if a.file_id]
        videos = [a.file_id for a in get_order_media(db, user_id, VIDEO, MAX_VIDEOS, order_id) if a.file_id]
        if not photos and not videos:
            return False
        return self._send_media(self.routing.management_group_id, photos, videos, self.routing.anketas_topic_id)
