"""Text commands that open and advance orders before the AI is consulted."""

from typing import Optional

from sqlalchemy.orm import Session

from app.config import settings
from app.logging_config import get_logger
from app.models import Order
from app.services.intent_service import (
    AdIntent,
    Affirmative,
    ContactIntent,
    Negative,
    VipIntent,
    classify_intent,
    is_media_reset_command,
    is_negative,
    parse_gender,
)
from app.services.media_router import ASK_GENDER_TEXT
from app.services.moderation_queue import Responder
from app.services.order_ledger import (
    OrderStatus,
    OrderType,
    create_order,
    format_amount,
    get_latest_open_order,
    get_open_ad_order,
    price_ad_order,
    set_order_status,
    start_ad_order,
)
from app.services.profile_service import get_or_create_profile, set_gender

logger = get_logger("order_flow")

CANCELLED_TEXT = "Mayli, bekor qildim."
FREE_AD_TEXT = "Birinchi e'lon bepul."
FINISH_PAYMENT_TEXT = "To'lovni yakunlaymiz, keyin davom etamiz."
AD_IN_PROGRESS_TEXT = "Joriy e'lon jarayoni davom etyapti."


def build_ad_price_message(gender: Optional[str], ad_count: int, amount: int) -> str:
    base = f"Narxi {format_amount(amount)}. Karta tashlaymi?"
    if gender == "female" and ad_count > 0:
        return f"Birinchi e'lon bepul edi. {base}"
    return base


def build_payment_message(amount: int) -> str:
    lines = [f"Narxi {format_amount(amount)}."]
    if settings.payment_card_number:
        lines.append("Karta raqami:")
        lines.append(settings.payment_card_number)
    if settings.payment_card_owner:
        lines.append(f"Karta egasi: {settings.payment_card_owner}")
    lines.append("Chekni yuborasiz.")
    return "\n".join(lines)


def build_contact_offer() -> str:
    return f"Narxi {format_amount(settings.contact_price)}. To'lovdan keyin kontakt va 1 ta rasm beriladi. Olasizmi?"


def build_vip_offer() -> str:
    return f"Oyiga {format_amount(settings.vip_price)}. Olasizmi?"


async def _announce_ad_price(db: Session, user_id: str, order: Order, fulfillment, responder: Responder) -> None:
    profile = get_or_create_profile(db, user_id)
    if order.status == OrderStatus.AWAITING_CONTENT.value:
        await responder(db, user_id, FREE_AD_TEXT)
        await fulfillment.handle_ad_payment_approved(db, order.id)
    else:
        await responder(db, user_id, build_ad_price_message(profile.gender, profile.ad_count or 0, order.amount))


async def _handle_awaiting_gender(db: Session, user_id: str, order: Order, text: str, fulfillment, responder) -> bool:
    if is_negative(text):
        set_order_status(db, order, OrderStatus.CANCELLED)
        await responder(db, user_id, CANCELLED_TEXT)
        return True

    gender = parse_gender(text)
    if not gender:
        await responder(db, user_id, ASK_GENDER_TEXT)
        return True

    profile = set_gender(db, user_id, gender)
    price_ad_order(db, order, gender, profile.ad_count or 0)
    await _announce_ad_price(db, user_id, order, fulfillment, responder)
    return True


async def handle_order_flow(
    db: Session,
    user_id: str,
    session_id: Optional[int],
    text: str,
    responder: Responder,
    fulfillment,
) -> bool:
    """Advance the user's orders from a text message.

    Returns True when the message was fully answered here and no AI reply
    should follow.
    """
    text = (text or "").strip()
    if not text:
        return False

    if is_media_reset_command(text):
        ad_order = get_open_ad_order(db, user_id)
        if ad_order is None:
            return False
        await fulfillment.reset_media(db, user_id, ad_order.id)
        return True

    open_order = get_latest_open_order(db, user_id)
    awaiting_payment = open_order is not None and open_order.status == OrderStatus.AWAITING_PAYMENT.value
    intent = classify_intent(text, expecting_answer=awaiting_payment)

    if open_order is not None and open_order.order_type == OrderType.AD.value:
        if open_order.status == OrderStatus.AWAITING_GENDER.value:
            return await _handle_awaiting_gender(db, user_id, open_order, text, fulfillment, responder)
        if isinstance(intent, AdIntent):
            if open_order.status in (OrderStatus.AWAITING_PAYMENT.value, OrderStatus.AWAITING_CHECK.value):
                await responder(db, user_id, FINISH_PAYMENT_TEXT)
            else:
                await responder(db, user_id, AD_IN_PROGRESS_TEXT)
            return True

    if awaiting_payment and isinstance(intent, Affirmative):
        set_order_status(db, open_order, OrderStatus.AWAITING_CHECK)
        await responder(db, user_id, build_payment_message(open_order.amount))
        if open_order.order_type == OrderType.AD.value and open_order.amount > 0:
            profile = get_or_create_profile(db, user_id)
            if profile.gender == "female" and (profile.ad_count or 0) > 0:
                await responder(db, user_id, f"Bu keyingi e'lon, narxi {format_amount(settings.ad_price)}.")
        return True

    if awaiting_payment and isinstance(intent, Negative):
        set_order_status(db, open_order, OrderStatus.CANCELLED)
        await responder(db, user_id, CANCELLED_TEXT)
        return True

    if isinstance(intent, ContactIntent):
        order = create_order(
            db, OrderType.CONTACT, user_id, settings.contact_price, session_id=session_id, ad_id=intent.ad_id
        )
        logger.info("Contact order opened", extra={"context": {"order_id": order.id, "ad_id": intent.ad_id}})
        await responder(db, user_id, build_contact_offer())
        return True

    if isinstance(intent, VipIntent):
        create_order(db, OrderType.VIP, user_id, settings.vip_price, session_id=session_id)
        await responder(db, user_id, build_vip_offer())
        return True

    if isinstance(intent, AdIntent):
        profile = get_or_create_profile(db, user_id)
        order, created = start_ad_order(db, profile, session_id=session_id)
        if not created:
            await responder(db, user_id, AD_IN_PROGRESS_TEXT)
        elif order.status == OrderStatus.AWAITING_GENDER.value:
            await responder(db, user_id, ASK_GENDER_TEXT)
        else:
            await _announce_ad_price(db, user_id, order, fulfillment, responder)
        return True

    return False
