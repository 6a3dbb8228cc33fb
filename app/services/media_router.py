"""Route inbound attachments to payment review or candidate collection."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy.exc import DBAPIError
from sqlalchemy.orm import Session

from app.config import TelegramRouting
from app.logging_config import get_logger
from app.models import MediaAsset, Order
from app.schemas.telegram import TelegramMessage
from app.services.errors import ConnectivityError, ReadinessError
from app.services.face_blur_service import FaceBlurService
from app.services.moderation_queue import Responder, create_admin_task
from app.services.order_ledger import (
    PAYMENT_PENDING_STATUSES,
    OrderStatus,
    OrderType,
    can_transition,
    get_open_ad_order,
    set_order_status,
)
from app.services.schema_readiness import SchemaReadinessGuard, extract_archive_columns_from_db_error
from app.services.step_machine import CANDIDATE_MEDIA_STEPS, ConversationStep, set_current_step
from app.services.telegram_service import TelegramService, message_id_of

logger = get_logger("media_router")

PHOTO = "photo"
VIDEO = "video"
STICKER = "sticker"
UNSUPPORTED = "unsupported"

PAYMENT_RECEIPT = "payment_receipt"
CANDIDATE_MEDIA = "candidate_media"
UNKNOWN = "unknown"

ROUTING_MATRIX = {
    PAYMENT_RECEIPT: {PHOTO},
    CANDIDATE_MEDIA: {PHOTO, VIDEO},
    UNKNOWN: set(),
}

PAYMENT_KEYWORDS = ("chek", "check", "oplata", "payment", "tolov", "tulov", "kvitansiya", "skrin", "kvitan")

MAX_PHOTOS = 2
MAX_VIDEOS = 1

RECEIPT_FORWARDED_TEXT = "To'lov tushgach, anketangizni yuborasiz."
RECEIPT_NOT_PHOTO_TEXT = "To'lov cheki rasm bo'lishi kerak. Chekni rasm qilib yuboring."
CANDIDATE_WRONG_TYPE_TEXT = "Faqat rasm yoki video yuboring."
UNEXPECTED_MEDIA_TEXT = "Hozir fayl kutilmayapti. Nima kerakligini yozing."
ASK_GENDER_TEXT = "Ayolmisiz yoki erkak?"
PHOTO_CAP_TEXT = "2 ta rasm yetarli. Ortiqcha yubormang."
VIDEO_CAP_TEXT = "1 ta video yetarli. Ortiqcha yubormang."
READINESS_TEXT = "Kechirasiz, hozir faylni saqlab bo'lmadi. Birozdan keyin qayta yuboring."
CONNECTIVITY_TEXT = "Kechirasiz, serverga ulanishda muammo. Birozdan keyin qayta urinib ko'ring."


@dataclass(frozen=True)
class MediaCounts:
    photos: int
    videos: int

    @property
    def ready(self) -> bool:
        return self.photos >= MAX_PHOTOS and self.videos >= MAX_VIDEOS


@dataclass(frozen=True)
class RouteOutcome:
    context: str
    media_type: str
    accepted: bool
    reason: Optional[str] = None


def classify_media(message: TelegramMessage) -> Optional[str]:
    """photo | video | sticker | unsupported, or None for a message without attachment."""
    if message.photo:
        return PHOTO
    if message.video is not None or message.video_note is not None:
        return VIDEO
    if message.document is not None:
        mime = message.document.mime_type or ""
        if mime.startswith("video/"):
            return VIDEO
        if mime.startswith("image/"):
            return PHOTO
        return UNSUPPORTED
    if message.sticker is not None:
        return STICKER
    if message.has_attachment:
        return UNSUPPORTED
    return None


def file_id_of(message: TelegramMessage) -> Optional[str]:
    if message.photo:
        # Sizes are ascending; the last one is the original.
        return message.photo[-1].file_id
    for attachment in (message.video, message.video_note, message.document):
        if attachment is not None:
            return attachment.file_id
    return None


def is_payment_evidence(text: Optional[str]) -> bool:
    normalized = (text or "").lower()
    return any(word in normalized for word in PAYMENT_KEYWORDS)


def resolve_routing_context(step: ConversationStep, caption: Optional[str], open_order: Optional[Order]) -> str:
    if (
        step == ConversationStep.AWAITING_PAYMENT_RECEIPT
        or is_payment_evidence(caption)
        or (open_order is not None and open_order.status in PAYMENT_PENDING_STATUSES)
    ):
        return PAYMENT_RECEIPT
    if step in CANDIDATE_MEDIA_STEPS:
        return CANDIDATE_MEDIA
    return UNKNOWN


def get_media_counts(db: Session, user_id: str, order_id: Optional[int] = None) -> MediaCounts:
    query = db.query(MediaAsset.media_type).filter(MediaAsset.user_id == user_id)
    if order_id:
        query = query.filter(MediaAsset.order_id == order_id)
    types = [row[0] for row in query.all()]
    return MediaCounts(photos=types.count(PHOTO), videos=types.count(VIDEO))


def get_order_media(
    db: Session, user_id: str, media_type: str, limit: int, order_id: Optional[int] = None
) -> list[MediaAsset]:
    """Most recent assets of one type, newest first."""
    query = db.query(MediaAsset).filter(MediaAsset.user_id == user_id, MediaAsset.media_type == media_type)
    if order_id:
        query = query.filter(MediaAsset.order_id == order_id)
    return query.order_by(MediaAsset.id.desc()).limit(limit).all()


def clear_order_media(db: Session, user_id: str, order_id: int) -> int:
    deleted = (
        db.query(MediaAsset)
        .filter(MediaAsset.user_id == user_id, MediaAsset.order_id == order_id)
        .delete(synchronize_session=False)
    )
    logger.info("Order media cleared", extra={"context": {"user_id": user_id, "order_id": order_id, "deleted": deleted}})
    return deleted


class MediaRouter:
    def __init__(
        self,
        telegram: TelegramService,
        routing: TelegramRouting,
        guard: SchemaReadinessGuard,
        blur: FaceBlurService,
        responder: Responder,
    ):
        self.telegram = telegram
        self.routing = routing
        self.guard = guard
        self.blur = blur
        self.responder = responder

    async def _reject(self, db: Session, user_id: str, context: str, media_type: str, reason: str, text: Optional[str]):
        logger.info(
            "Media rejected",
            extra={"context": {"user_id": user_id, "routing_context": context, "media_type": media_type, "reason": reason}},
        )
        if text:
            await self.responder(db, user_id, text)
        return RouteOutcome(context=context, media_type=media_type, accepted=False, reason=reason)

    def _forward(self, chat_id: Optional[str], topic_id: Optional[int], user_id: str, message_id: int) -> Optional[int]:
        if not chat_id or not topic_id:
            return None
        result = self.telegram.forward_message(chat_id, user_id, message_id, message_thread_id=topic_id)
        if not result.get("ok"):
            logger.warning(
                "Failed to forward media to topic",
                extra={"context": {"user_id": user_id, "topic_id": topic_id, "error": result.get("description")}},
            )
        return message_id_of(result)

    async def route(
        self,
        db: Session,
        user_id: str,
        session_id: Optional[int],
        message: TelegramMessage,
        step: ConversationStep,
        open_order: Optional[Order],
    ) -> Optional[RouteOutcome]:
        """Handle one attachment. Returns None when the message carries none."""
        media_type = classify_media(message)
        if media_type is None:
            return None

        context = resolve_routing_context(step, message.caption, open_order)
        if media_type not in ROUTING_MATRIX[context]:
            if context == PAYMENT_RECEIPT:
                return await self._reject(db, user_id, context, media_type, "wrong_type", RECEIPT_NOT_PHOTO_TEXT)
            if context == CANDIDATE_MEDIA:
                return await self._reject(db, user_id, context, media_type, "wrong_type", CANDIDATE_WRONG_TYPE_TEXT)
            if media_type == STICKER:
                return await self._reject(db, user_id, context, media_type, "wrong_context", None)
            if open_order is not None and open_order.status == OrderStatus.AWAITING_GENDER.value:
                return await self._reject(db, user_id, context, media_type, "wrong_context", ASK_GENDER_TEXT)
            return await self._reject(db, user_id, context, media_type, "wrong_context", UNEXPECTED_MEDIA_TEXT)

        if context == PAYMENT_RECEIPT:
            await self._accept_payment_receipt(db, user_id, session_id, message, open_order)
            return RouteOutcome(context=context, media_type=media_type, accepted=True)

        return await self._accept_candidate_media(db, user_id, session_id, message, media_type)

    async def _accept_payment_receipt(
        self,
        db: Session,
        user_id: str,
        session_id: Optional[int],
        message: TelegramMessage,
        open_order: Optional[Order],
    ) -> None:
        self._forward(
            self.routing.confirm_payments_group_id,
            self.routing.confirm_payments_topic_id,
            user_id,
            message.message_id,
        )

        if open_order is not None:
            if can_transition(open_order.order_type, open_order.status, OrderStatus.PAYMENT_SUBMITTED.value):
                set_order_status(db, open_order, OrderStatus.PAYMENT_SUBMITTED)
            elif open_order.status != OrderStatus.PAYMENT_SUBMITTED.value:
                logger.warning(
                    "Receipt for order outside payment flow",
                    extra={"context": {"order_id": open_order.id, "status": open_order.status}},
                )
        set_current_step(db, user_id, ConversationStep.PAYMENT_RECEIPT_SUBMITTED)

        create_admin_task(
            db,
            "payment",
            session_id=session_id,
            user_id=user_id,
            payload={
                "messageId": message.message_id,
                "text": message.body,
                "orderId": open_order.id if open_order else None,
                "orderType": open_order.order_type if open_order else None,
                "orderAmount": open_order.amount if open_order else None,
                "adId": open_order.ad_id if open_order else None,
            },
        )
        if open_order is not None and open_order.order_type == OrderType.AD.value:
            await self.responder(db, user_id, RECEIPT_FORWARDED_TEXT)

    async def _accept_candidate_media(
        self,
        db: Session,
        user_id: str,
        session_id: Optional[int],
        message: TelegramMessage,
        media_type: str,
    ) -> RouteOutcome:
        order = get_open_ad_order(db, user_id)
        order_id = order.id if order else None
        counts = get_media_counts(db, user_id, order_id)
        if media_type == PHOTO and counts.photos >= MAX_PHOTOS:
            return await self._reject(db, user_id, CANDIDATE_MEDIA, media_type, "cap_exceeded", PHOTO_CAP_TEXT)
        if media_type == VIDEO and counts.videos >= MAX_VIDEOS:
            return await self._reject(db, user_id, CANDIDATE_MEDIA, media_type, "cap_exceeded", VIDEO_CAP_TEXT)

        try:
            self.guard.ensure(db, "runtime")
        except ReadinessError:
            self.guard.reset("probe_failed")
            return await self._reject(db, user_id, CANDIDATE_MEDIA, media_type, "schema_not_ready", READINESS_TEXT)
        except ConnectivityError:
            self.guard.reset("connectivity")
            return await self._reject(db, user_id, CANDIDATE_MEDIA, media_type, "connectivity", CONNECTIVITY_TEXT)

        topic_id = self.routing.photos_topic_id if media_type == PHOTO else self.routing.videos_topic_id
        archive_message_id = self._forward(self.routing.storage_group_id, topic_id, user_id, message.message_id)

        asset = MediaAsset(
            user_id=user_id,
            session_id=session_id,
            order_id=order_id,
            message_id=message.message_id,
            file_id=file_id_of(message),
            media_type=media_type,
            archive_group_id=self.routing.storage_group_id if archive_message_id else None,
            archive_topic_id=topic_id if archive_message_id else None,
            archive_message_id=archive_message_id,
            created_at=datetime.now(timezone.utc),
        )
        try:
            with db.begin_nested():
                db.add(asset)
                db.flush()
        except DBAPIError as e:
            missing = extract_archive_columns_from_db_error(e)
            if not missing:
                raise
            self.guard.reset("insert_failed")
            logger.error(
                "media_archive.schema_readiness.mismatch",
                extra={
                    "event": "media_archive.schema_readiness.mismatch",
                    "context": {"source": "runtime_insert", "table": "user_media", "missing_columns": missing},
                },
            )
            return await self._reject(db, user_id, CANDIDATE_MEDIA, media_type, "schema_not_ready", READINESS_TEXT)

        logger.info(
            "Media stored",
            extra={"context": {"user_id": user_id, "order_id": order_id, "media_type": media_type, "asset_id": asset.id}},
        )

        if media_type == PHOTO:
            self._forward_blurred(user_id, asset.file_id)

        counts = get_media_counts(db, user_id, order_id)
        next_step = ConversationStep.CANDIDATE_MEDIA_READY if counts.ready else ConversationStep.AWAITING_CANDIDATE_MEDIA
        set_current_step(db, user_id, next_step)
        return RouteOutcome(context=CANDIDATE_MEDIA, media_type=media_type, accepted=True)

    def _forward_blurred(self, user_id: str, file_id: Optional[str]) -> None:
        if not file_id or not self.routing.storage_group_id or not self.routing.hidden_photos_topic_id:
            return
        try:
            data = self.telegram.get_file_bytes(file_id)
            if not data:
                return
            blurred = self.blur.blur(data)
            self.telegram.send_photo(
                self.routing.storage_group_id,
                blurred or data,
                caption=f"user: {user_id}",
                message_thread_id=self.routing.hidden_photos_topic_id,
            )
        except Exception as e:
            logger.warning(f"Failed to forward blurred photo: {e}", extra={"context": {"user_id": user_id}})
