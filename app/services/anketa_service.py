"""Listing form ("anketa") detection, validation and publish task creation."""

import re
from dataclasses import dataclass, field
from typing import Optional

from sqlalchemy.orm import Session

from app.config import TelegramRouting
from app.logging_config import get_logger
from app.services.intent_service import is_likely_anketa, parse_gender
from app.services.media_router import MAX_PHOTOS, MAX_VIDEOS, PHOTO, VIDEO, get_media_counts, get_order_media
from app.services.moderation_queue import Responder, create_admin_task
from app.services.order_ledger import OrderStatus, get_open_ad_order, set_order_status
from app.services.profile_service import set_gender

logger = get_logger("anketa_service")

ANKETA_FIELDS = ("jins", "ism", "yosh", "manzil", "boy", "talab", "tel")
ANKETA_LABELS = ("Jins", "Ism", "Yosh", "Manzil", "Boy", "Talab", "Tel")

PAYMENT_FIRST_TEXT = "Avval to'lovni yakunlaymiz."
IN_PROGRESS_TEXT = "Joriy e'lon jarayoni davom etyapti."
TOO_MANY_MEDIA_TEXT = "Ortiqcha fayllarni yubormang. 2 ta rasm va 1 ta video kerak."
ACCEPTED_TEXT = "Anketa qabul qilindi. Admin tekshiradi."
TASK_FAILED_TEXT = "Kechirasiz, anketani saqlab bo'lmadi. Birozdan keyin qayta yuboring."


@dataclass(frozen=True)
class AnketaValidation:
    valid: bool
    missing: list[str] = field(default_factory=list)


def build_anketa_template(title: Optional[str] = None) -> str:
    lines = [f"{label}: " for label in ANKETA_LABELS]
    if title:
        lines.insert(0, title)
    return "\n".join(lines)


def validate_anketa(text: str) -> AnketaValidation:
    lowered = (text or "").lower()
    missing = [name for name in ANKETA_FIELDS if not re.search(rf"{name}[ \t]*:[ \t]*\S", lowered)]
    return AnketaValidation(valid=not missing, missing=missing)


def build_missing_fields_text(missing: list[str]) -> str:
    return f"Shablonni to'liq toldiring. Yetishmayapti: {', '.join(missing)}."


def build_media_progress_text(photos: int, videos: int) -> str:
    return f"2 ta rasm va 1 ta yumaloq video yuboring. Hozir: {photos} rasm, {videos} video."


async def maybe_create_publish_task(
    db: Session,
    routing: TelegramRouting,
    responder: Responder,
    user_id: str,
    session_id: Optional[int],
    text: str,
) -> bool:
    """Turn a submitted anketa into a pending publish task.

    Returns True when the text was treated as an anketa and answered, so the
    caller does not route it further.
    """
    if not text or not routing.management_group_id or not routing.anketas_topic_id:
        return False
    if not is_likely_anketa(text):
        return False

    validation = validate_anketa(text)
    if not validation.valid:
        await responder(db, user_id, build_missing_fields_text(validation.missing))
        await responder(db, user_id, build_anketa_template())
        return True

    gender = parse_gender(text)
    if gender:
        set_gender(db, user_id, gender, only_if_unknown=True)

    order = get_open_ad_order(db, user_id)
    if order is not None and order.status == OrderStatus.READY_TO_PUBLISH.value:
        await responder(db, user_id, IN_PROGRESS_TEXT)
        return True
    if order is not None and order.status != OrderStatus.AWAITING_CONTENT.value:
        await responder(db, user_id, PAYMENT_FIRST_TEXT)
        return True

    order_id = order.id if order else None
    counts = get_media_counts(db, user_id, order_id)
    if not counts.ready:
        await responder(db, user_id, build_media_progress_text(counts.photos, counts.videos))
        return True
    if counts.photos > MAX_PHOTOS or counts.videos > MAX_VIDEOS:
        await responder(db, user_id, TOO_MANY_MEDIA_TEXT)
        return True

    photos = get_order_media(db, user_id, PHOTO, 10, order_id)
    videos = get_order_media(db, user_id, VIDEO, 5, order_id)
    task_id = create_admin_task(
        db,
        "publish",
        session_id=session_id,
        user_id=user_id,
        payload={
            "text": text.strip(),
            "orderId": order_id,
            "photoCount": counts.photos,
            "videoCount": counts.videos,
            "photoIds": [asset.message_id for asset in photos],
            "videoIds": [asset.message_id for asset in videos],
        },
    )
    if task_id is None:
        await responder(db, user_id, TASK_FAILED_TEXT)
        return True

    if order is not None:
        set_order_status(db, order, OrderStatus.READY_TO_PUBLISH)
    logger.info(
        "Publish task created from anketa",
        extra={"context": {"user_id": user_id, "order_id": order_id, "task_id": task_id}},
    )
    await responder(db, user_id, ACCEPTED_TEXT)
    return True
