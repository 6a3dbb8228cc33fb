from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from sqlalchemy.orm import Session

from app.config import settings
from app.logging_config import get_logger
from app.models import ConversationProfile, Order
from app.services.errors import InvalidOrderTransitionError
from app.services.step_machine import sync_step_from_order

logger = get_logger("order_ledger")


class OrderType(str, Enum):
    CONTACT = "contact"
    VIP = "vip"
    AD = "ad"


class OrderStatus(str, Enum):
    AWAITING_GENDER = "awaiting_gender"
    AWAITING_PAYMENT = "awaiting_payment"
    AWAITING_CHECK = "awaiting_check"
    PAYMENT_SUBMITTED = "payment_submitted"
    AWAITING_CONTENT = "awaiting_content"
    READY_TO_PUBLISH = "ready_to_publish"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    FAILED = "failed"


OPEN_STATUSES = (
    OrderStatus.AWAITING_PAYMENT.value,
    OrderStatus.AWAITING_CHECK.value,
    OrderStatus.PAYMENT_SUBMITTED.value,
    OrderStatus.AWAITING_GENDER.value,
    OrderStatus.AWAITING_CONTENT.value,
    OrderStatus.READY_TO_PUBLISH.value,
)
PAYMENT_PENDING_STATUSES = (
    OrderStatus.AWAITING_PAYMENT.value,
    OrderStatus.AWAITING_CHECK.value,
    OrderStatus.PAYMENT_SUBMITTED.value,
)

S = OrderStatus
VALID_ORDER_TRANSITIONS = {
    OrderType.AD: {
        S.AWAITING_GENDER: [S.AWAITING_PAYMENT, S.AWAITING_CONTENT, S.CANCELLED],
        S.AWAITING_PAYMENT: [S.AWAITING_CHECK, S.PAYMENT_SUBMITTED, S.CANCELLED, S.FAILED],
        S.AWAITING_CHECK: [S.PAYMENT_SUBMITTED, S.CANCELLED, S.FAILED],
        S.PAYMENT_SUBMITTED: [S.AWAITING_CONTENT, S.AWAITING_PAYMENT, S.CANCELLED, S.FAILED],
        S.AWAITING_CONTENT: [S.READY_TO_PUBLISH, S.AWAITING_CONTENT],
        S.READY_TO_PUBLISH: [S.COMPLETED, S.AWAITING_CONTENT],
    },
    OrderType.CONTACT: {
        S.AWAITING_PAYMENT: [S.AWAITING_CHECK, S.PAYMENT_SUBMITTED, S.CANCELLED, S.FAILED],
        S.AWAITING_CHECK: [S.PAYMENT_SUBMITTED, S.CANCELLED, S.FAILED],
        S.PAYMENT_SUBMITTED: [S.COMPLETED, S.FAILED, S.AWAITING_PAYMENT],
    },
    OrderType.VIP: {
        S.AWAITING_PAYMENT: [S.AWAITING_CHECK, S.PAYMENT_SUBMITTED, S.CANCELLED, S.FAILED],
        S.AWAITING_CHECK: [S.PAYMENT_SUBMITTED, S.CANCELLED, S.FAILED],
        S.PAYMENT_SUBMITTED: [S.COMPLETED, S.FAILED, S.AWAITING_PAYMENT],
    },
}


def compute_ad_price(gender: Optional[str], ad_count: int) -> int:
    """First ad is free for female profiles; everything else pays the fixed fee."""
    if gender == "female" and (ad_count or 0) == 0:
        return 0
    return settings.ad_price


def format_amount(amount: int) -> str:
    if amount % 1000 == 0:
        return f"{amount // 1000} ming"
    return str(amount)


def can_transition(order_type: str, from_status: str, to_status: str) -> bool:
    try:
        allowed = VALID_ORDER_TRANSITIONS[OrderType(order_type)].get(OrderStatus(from_status), [])
    except ValueError:
        return False
    return OrderStatus(to_status) in allowed


def create_order(
    db: Session,
    order_type: OrderType,
    user_id: str,
    amount: int,
    status: OrderStatus = OrderStatus.AWAITING_PAYMENT,
    session_id: Optional[int] = None,
    ad_id: Optional[int] = None,
) -> Order:
    now = datetime.now(timezone.utc)
    order = Order(
        order_type=OrderType(order_type).value,
        status=OrderStatus(status).value,
        user_id=user_id,
        session_id=session_id,
        amount=amount,
        ad_id=ad_id,
        created_at=now,
        updated_at=now,
    )
    db.add(order)
    db.flush()

    logger.info(
        "Order created",
        extra={
            "context": {
                "order_id": order.id,
                "order_type": order.order_type,
                "status": order.status,
                "user_id": user_id,
                "amount": amount,
            }
        },
    )
    sync_step_from_order(db, order)
    return order


def get_order(db: Session, order_id: int) -> Optional[Order]:
    return db.query(Order).filter(Order.id == order_id).first()


def get_latest_open_order(db: Session, user_id: str) -> Optional[Order]:
    """Most recent open order of any type; last writer wins."""
    return (
        db.query(Order)
        .filter(Order.user_id == user_id, Order.status.in_(OPEN_STATUSES))
        .order_by(Order.id.desc())
        .first()
    )


def get_open_ad_order(db: Session, user_id: str) -> Optional[Order]:
    return (
        db.query(Order)
        .filter(
            Order.user_id == user_id,
            Order.order_type == OrderType.AD.value,
            Order.status.in_(OPEN_STATUSES),
        )
        .order_by(Order.id.desc())
        .first()
    )


def set_order_status(db: Session, order: Order, status: OrderStatus) -> Order:
    """Validated status write followed by a step re-sync."""
    status = OrderStatus(status)
    if order.status == status.value and status != OrderStatus.AWAITING_CONTENT:
        return order
    if not can_transition(order.order_type, order.status, status.value):
        raise InvalidOrderTransitionError(order.order_type, order.status, status.value)

    previous = order.status
    order.status = status.value
    order.updated_at = datetime.now(timezone.utc)
    db.flush()

    logger.info(
        "Order status changed",
        extra={"context": {"order_id": order.id, "from": previous, "to": status.value, "user_id": order.user_id}},
    )
    sync_step_from_order(db, order)
    return order


def start_ad_order(db: Session, profile: ConversationProfile, session_id: Optional[int] = None) -> tuple[Order, bool]:
    """Open an ad order for the profile, or return the one already open.

    Returns (order, created).
    """
    existing = get_open_ad_order(db, profile.user_id)
    if existing:
        logger.info(
            "Ad order already open",
            extra={"context": {"order_id": existing.id, "status": existing.status, "user_id": profile.user_id}},
        )
        return existing, False

    if not profile.gender:
        order = create_order(
            db, OrderType.AD, profile.user_id, 0, status=OrderStatus.AWAITING_GENDER, session_id=session_id
        )
        return order, True

    amount = compute_ad_price(profile.gender, profile.ad_count or 0)
    status = OrderStatus.AWAITING_CONTENT if amount == 0 else OrderStatus.AWAITING_PAYMENT
    order = create_order(db, OrderType.AD, profile.user_id, amount, status=status, session_id=session_id)
    return order, True


def price_ad_order(db: Session, order: Order, gender: str, ad_count: int) -> Order:
    """Apply the price rule to an order that was waiting for the user's gender."""
    amount = compute_ad_price(gender, ad_count)
    order.amount = amount
    status = OrderStatus.AWAITING_CONTENT if amount == 0 else OrderStatus.AWAITING_PAYMENT
    return set_order_status(db, order, status)
