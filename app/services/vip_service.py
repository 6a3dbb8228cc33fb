from datetime import datetime, timedelta, timezone
from typing import Optional

from sqlalchemy.orm import Session

from app.config import TelegramRouting, settings
from app.logging_config import get_logger
from app.models import VipSubscription
from app.services.telegram_service import TelegramService

logger = get_logger("vip_service")

VIP_EXPIRED_TEXT = "VIP obuna muddati tugadi."


def build_vip_reminder_text(days: int) -> str:
    return f"VIP obuna tugashiga {days} kun qoldi. Uzaytiramizmi?"


def _aware(value: datetime) -> datetime:
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


def get_active_subscription(db: Session, user_id: str) -> Optional[VipSubscription]:
    return (
        db.query(VipSubscription)
        .filter(VipSubscription.user_id == user_id, VipSubscription.status == "active")
        .order_by(VipSubscription.id.desc())
        .first()
    )


def upsert_vip_subscription(db: Session, user_id: str, now: Optional[datetime] = None) -> VipSubscription:
    """Extend the active subscription, or start one, by the configured duration.

    The new expiry counts from the later of now and the current unexpired expiry.
    """
    now = now or datetime.now(timezone.utc)
    duration = timedelta(days=settings.vip_duration_days)
    current = get_active_subscription(db, user_id)

    if current and _aware(current.expires_at) > now:
        current.expires_at = _aware(current.expires_at) + duration
        current.reminder_sent_at = None
        current.updated_at = now
        subscription = current
    else:
        if current:
            current.status = "expired"
            current.updated_at = now
        subscription = VipSubscription(
            user_id=user_id,
            status="active",
            starts_at=now,
            expires_at=now + duration,
            created_at=now,
            updated_at=now,
        )
        db.add(subscription)
    db.flush()

    logger.info(
        "VIP subscription extended",
        extra={"context": {"user_id": user_id, "expires_at": subscription.expires_at}},
    )
    return subscription


def remove_from_vip_channel(telegram: TelegramService, routing: TelegramRouting, user_id: str) -> bool:
    """Kick without a permanent ban so the user can rejoin after renewing."""
    if not routing.vip_channel_id:
        return False
    result = telegram.ban_chat_member(routing.vip_channel_id, user_id)
    if not result.get("ok"):
        logger.warning("Failed to remove VIP member", extra={"context": {"user_id": user_id, "error": result.get("description")}})
        return False
    telegram.unban_chat_member(routing.vip_channel_id, user_id)
    return True


async def run_vip_sweep(
    db: Session,
    telegram: TelegramService,
    routing: TelegramRouting,
    responder,
    now: Optional[datetime] = None,
) -> dict:
    """Expire lapsed subscriptions and remind the ones close to expiry, once."""
    now = now or datetime.now(timezone.utc)
    reminder_window = timedelta(days=settings.vip_reminder_days)
    stats = {"expired": 0, "reminded": 0}

    subscriptions = db.query(VipSubscription).filter(VipSubscription.status == "active").all()
    for subscription in subscriptions:
        expires_at = _aware(subscription.expires_at)
        if expires_at <= now:
            remove_from_vip_channel(telegram, routing, subscription.user_id)
            subscription.status = "expired"
            subscription.updated_at = now
            db.flush()
            await responder(db, subscription.user_id, VIP_EXPIRED_TEXT)
            stats["expired"] += 1
            continue

        if subscription.reminder_sent_at is None and expires_at - now <= reminder_window:
            await responder(db, subscription.user_id, build_vip_reminder_text(settings.vip_reminder_days))
            subscription.reminder_sent_at = now
            subscription.updated_at = now
            db.flush()
            stats["reminded"] += 1

    db.commit()
    logger.info("VIP sweep finished", extra={"context": stats})
    return stats
