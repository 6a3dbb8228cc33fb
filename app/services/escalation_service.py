import re
from dataclasses import dataclass
from typing import Callable, Optional

from sqlalchemy.orm import Session

from app.config import TelegramRouting
from app.logging_config import get_logger
from app.models import Conversation, Message
from app.services.moderation_queue import create_admin_task
from app.services.orchestrator_state import OrchestratorState
from app.services.order_ledger import get_latest_open_order
from app.services.profile_service import get_profile
from app.services.step_machine import ConversationStep, infer_step_from_order, set_current_step
from app.services.telegram_service import TelegramService

logger = get_logger("escalation_service")

ESCALATION_SENTINEL = "escalate_to_human"

ESCALATION_KEYWORDS = (
    "shikoyat",
    "muammo",
    "haqorat",
    "aldadingiz",
    "pulim",
    "qaytar",
    "tulov qilmadim",
    "tulov qilganman",
    "janjal",
    "nohaq",
    "firib",
    "politsiya",
    "sud",
    "prokur",
    "uraman",
    "so'kish",
    "axmoq",
    "ahmoq",
    "xayvon",
    "tentak",
    "sharmanda",
    "yolg'on",
    "dolboyob",
    "pidar",
    "suka",
    "blya",
    "fuck",
    "shit",
)

PHONE_PATTERN = re.compile(r"\+?\d[\d\s-]{8,}")
PHONE_SCAN_LIMIT = 50


def should_escalate_locally(text: str) -> bool:
    normalized = (text or "").lower()
    return any(word in normalized for word in ESCALATION_KEYWORDS)


def is_escalation_response(response_text: Optional[str]) -> bool:
    return (response_text or "").strip().lower() == ESCALATION_SENTINEL


@dataclass(frozen=True)
class BlockOutcome:
    telegram_blocked: bool


def resolve_identity(db: Session, user_id: str) -> tuple[str, Optional[str]]:
    """Best-effort (name, phone) for the admin card."""
    profile = get_profile(db, user_id)
    conversation = db.query(Conversation).filter(Conversation.user_id == user_id).first()

    name = profile.display_name if profile and profile.display_name else None
    if not name and conversation:
        full_name = " ".join(part for part in (conversation.first_name, conversation.last_name) if part)
        name = full_name or (f"@{conversation.username}" if conversation.username else None)

    phone = profile.phone_number if profile and profile.phone_number else None
    if not phone and conversation:
        messages = (
            db.query(Message)
            .filter(Message.conversation_id == conversation.id, Message.role == "user")
            .order_by(Message.id.desc())
            .limit(PHONE_SCAN_LIMIT)
            .all()
        )
        for message in messages:
            match = PHONE_PATTERN.search(message.content or "")
            if match:
                phone = re.sub(r"\s+", "", match.group(0))
                break

    return name or user_id, phone


class EscalationController:
    """Hands a conversation to a human and applies the admin's resume/block outcome."""

    def __init__(
        self,
        state: OrchestratorState,
        telegram: TelegramService,
        routing: TelegramRouting,
        cancel_reply: Callable[[str], int],
    ):
        self.state = state
        self.telegram = telegram
        self.routing = routing
        self.cancel_reply = cancel_reply

    def escalate(self, db: Session, user_id: str, text: str, session_id: Optional[int] = None) -> Optional[int]:
        self.state.pause(user_id)
        set_current_step(db, user_id, ConversationStep.ESCALATED_TO_ADMIN)

        name, phone = resolve_identity(db, user_id)
        task_id = create_admin_task(
            db,
            "escalation",
            session_id=session_id,
            user_id=user_id,
            payload={
                "name": name,
                "phone": phone,
                "message": text,
                "openUrl": f"tg://user?id={user_id}",
            },
        )
        logger.info(
            "Conversation escalated",
            extra={"context": {"user_id": user_id, "task_id": task_id, "session_id": session_id}},
        )
        return task_id

    def resume(self, db: Session, user_id: str) -> ConversationStep:
        self.state.unpause(user_id)
        self.state.unblock(user_id)
        self.cancel_reply(user_id)

        step = infer_step_from_order(get_latest_open_order(db, user_id))
        set_current_step(db, user_id, step)
        logger.info("AI resumed", extra={"context": {"user_id": user_id, "step": step.value}})
        return step

    def block(self, user_id: str) -> BlockOutcome:
        self.state.block(user_id)
        self.cancel_reply(user_id)

        channels = [
            channel
            for channel in dict.fromkeys((self.routing.public_channel_id, self.routing.vip_channel_id))
            if channel
        ]
        banned = False
        for channel in channels:
            try:
                result = self.telegram.ban_chat_member(channel, user_id)
            except Exception as e:
                logger.warning(f"Ban failed: {e}", extra={"context": {"user_id": user_id, "channel": channel}})
                continue
            if result.get("ok"):
                banned = True
            else:
                logger.warning(
                    "Ban rejected by Telegram",
                    extra={"context": {"user_id": user_id, "channel": channel, "error": result.get("description")}},
                )

        logger.info("User blocked", extra={"context": {"user_id": user_id, "telegram_blocked": banned}})
        return BlockOutcome(telegram_blocked=banned)
