from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from sqlalchemy import update
from sqlalchemy.orm import Session

from app.logging_config import get_logger
from app.models import ConversationProfile, Order
from app.services.errors import InvalidStepError
from app.services.profile_service import get_or_create_profile

logger = get_logger("step_machine")


class ConversationStep(str, Enum):
    IDLE = "idle"
    AWAITING_GENDER = "awaiting_gender"
    AWAITING_PAYMENT_CONFIRMATION = "awaiting_payment_confirmation"
    AWAITING_PAYMENT_RECEIPT = "awaiting_payment_receipt"
    PAYMENT_RECEIPT_SUBMITTED = "payment_receipt_submitted"
    AWAITING_CANDIDATE_MEDIA = "awaiting_candidate_media"
    CANDIDATE_MEDIA_READY = "candidate_media_ready"
    AWAITING_PUBLISH_REVIEW = "awaiting_publish_review"
    ESCALATED_TO_ADMIN = "escalated_to_admin"


CANDIDATE_MEDIA_STEPS = {ConversationStep.AWAITING_CANDIDATE_MEDIA, ConversationStep.CANDIDATE_MEDIA_READY}

# (order_type or "*", status) -> step
ORDER_STEP_MAP = {
    ("ad", "awaiting_gender"): ConversationStep.AWAITING_GENDER,
    ("*", "awaiting_payment"): ConversationStep.AWAITING_PAYMENT_CONFIRMATION,
    ("*", "awaiting_check"): ConversationStep.AWAITING_PAYMENT_RECEIPT,
    ("*", "payment_submitted"): ConversationStep.PAYMENT_RECEIPT_SUBMITTED,
    ("ad", "awaiting_content"): ConversationStep.AWAITING_CANDIDATE_MEDIA,
    ("ad", "ready_to_publish"): ConversationStep.AWAITING_PUBLISH_REVIEW,
}

# Consumed by the prompt builder to bound what the model may offer next.
ALLOWED_NEXT_ACTIONS = {
    ConversationStep.IDLE: ["answer_question", "offer_contact", "offer_vip", "offer_ad"],
    ConversationStep.AWAITING_GENDER: ["ask_gender", "cancel_order"],
    ConversationStep.AWAITING_PAYMENT_CONFIRMATION: ["confirm_payment", "cancel_order", "answer_question"],
    ConversationStep.AWAITING_PAYMENT_RECEIPT: ["request_payment_receipt", "repeat_payment_details"],
    ConversationStep.PAYMENT_RECEIPT_SUBMITTED: ["wait_for_payment_review"],
    ConversationStep.AWAITING_CANDIDATE_MEDIA: ["request_anketa", "request_candidate_media"],
    ConversationStep.CANDIDATE_MEDIA_READY: ["request_anketa"],
    ConversationStep.AWAITING_PUBLISH_REVIEW: ["wait_for_publish_review"],
    ConversationStep.ESCALATED_TO_ADMIN: ["wait_for_admin"],
}


def to_step(value: Optional[str]) -> ConversationStep:
    if not value:
        return ConversationStep.IDLE
    try:
        return ConversationStep(value)
    except ValueError:
        raise InvalidStepError(value)


def infer_step_from_order(order: Optional[Order]) -> ConversationStep:
    """Map the open order's (type, status) pair to a step; no order means idle."""
    if order is None:
        return ConversationStep.IDLE
    step = ORDER_STEP_MAP.get((order.order_type, order.status))
    if step is None:
        step = ORDER_STEP_MAP.get(("*", order.status))
    return step or ConversationStep.IDLE


def allowed_next_actions(step: ConversationStep) -> list[str]:
    return list(ALLOWED_NEXT_ACTIONS.get(step, []))


def set_current_step(
    db: Session,
    user_id: str,
    next_step: ConversationStep,
    expected_current: Optional[ConversationStep] = None,
) -> bool:
    """Guarded write of the persisted step.

    With ``expected_current`` the update only applies while the stored value
    still equals it, so a concurrently changed step is never clobbered.
    Returns True when a row was written.
    """
    next_step = ConversationStep(next_step)
    get_or_create_profile(db, user_id)

    stmt = update(ConversationProfile).where(ConversationProfile.user_id == user_id)
    if expected_current is not None:
        stmt = stmt.where(ConversationProfile.current_step == ConversationStep(expected_current).value)
    result = db.execute(
        stmt.values(current_step=next_step.value, updated_at=datetime.now(timezone.utc)).execution_options(
            synchronize_session="fetch"
        )
    )

    written = (result.rowcount or 0) > 0
    if not written:
        logger.info(
            "Step write skipped, stored step changed",
            extra={
                "context": {
                    "user_id": user_id,
                    "next_step": next_step.value,
                    "expected": expected_current.value if expected_current else None,
                }
            },
        )
    return written


def resolve_current_step(db: Session, user_id: str, open_order: Optional[Order] = None) -> ConversationStep:
    """Current step from the persisted value merged with the latest open order.

    An escalated step always wins. A non-idle inferred step that differs from the
    persisted one is written back. Otherwise the persisted step is kept unless it
    is idle.
    """
    # Local import: order_ledger re-syncs steps through this module.
    from app.services.order_ledger import get_latest_open_order

    profile = get_or_create_profile(db, user_id)
    persisted = to_step(profile.current_step)
    if persisted == ConversationStep.ESCALATED_TO_ADMIN:
        return persisted

    if open_order is None:
        open_order = get_latest_open_order(db, user_id)
    inferred = infer_step_from_order(open_order)

    # Media readiness refines awaiting_candidate_media without the order changing.
    if inferred == ConversationStep.AWAITING_CANDIDATE_MEDIA and persisted == ConversationStep.CANDIDATE_MEDIA_READY:
        return persisted

    if inferred != ConversationStep.IDLE and inferred != persisted:
        set_current_step(db, user_id, inferred, expected_current=persisted)
        return inferred

    if persisted != ConversationStep.IDLE:
        return persisted
    return inferred


def sync_step_from_order(db: Session, order: Order) -> ConversationStep:
    """Re-derive the step after an order status write."""
    from app.services.order_ledger import get_latest_open_order

    profile = get_or_create_profile(db, order.user_id)
    persisted = to_step(profile.current_step)
    if persisted == ConversationStep.ESCALATED_TO_ADMIN:
        return persisted

    latest = get_latest_open_order(db, order.user_id)
    inferred = infer_step_from_order(latest)
    if inferred == ConversationStep.AWAITING_CANDIDATE_MEDIA and persisted == ConversationStep.CANDIDATE_MEDIA_READY:
        return persisted

    if inferred != persisted:
        set_current_step(db, order.user_id, inferred, expected_current=persisted)
    return inferred
