"""Entry point for one inbound private Telegram message, and the buffered AI reply it may trigger."""

import asyncio
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Optional

from sqlalchemy.orm import Session

from app.config import TelegramRouting
from app.database import SessionLocal
from app.logging_config import get_logger
from app.models import Conversation, Message
from app.schemas.telegram import TelegramMessage, TelegramUser
from app.services.ai_service import generate_reply
from app.services.anketa_service import maybe_create_publish_task
from app.services.escalation_service import EscalationController, is_escalation_response, should_escalate_locally
from app.services.face_blur_service import FaceBlurService
from app.services.fulfillment_service import FulfillmentService
from app.services.media_router import MediaRouter, classify_media
from app.services.moderation_queue import ModerationQueue
from app.services.orchestrator_state import OrchestratorState
from app.services.order_flow_service import handle_order_flow
from app.services.order_ledger import get_latest_open_order
from app.services.profile_service import get_or_create_profile
from app.services.reply_debouncer import AsyncioScheduler, ReplyDebouncer, Scheduler, deliver_fragments
from app.services.schema_readiness import SchemaReadinessGuard
from app.services.step_machine import resolve_current_step
from app.services.telegram_service import TelegramService

logger = get_logger("conversation_service")


def get_or_create_conversation(db: Session, user: TelegramUser) -> Conversation:
    """One conversation per Telegram user; names are refreshed on every message."""
    user_id = str(user.id)
    conversation = db.query(Conversation).filter(Conversation.user_id == user_id).first()
    if not conversation:
        conversation = Conversation(user_id=user_id, started_at=datetime.now(timezone.utc))
        db.add(conversation)
    conversation.username = user.username
    conversation.first_name = user.first_name
    conversation.last_name = user.last_name
    db.flush()
    return conversation


def get_conversation(db: Session, user_id: str) -> Optional[Conversation]:
    return db.query(Conversation).filter(Conversation.user_id == user_id).first()


def ensure_conversation(db: Session, user_id: str) -> Conversation:
    """Conversation for a user we only know by id, e.g. when a worker messages them."""
    conversation = get_conversation(db, user_id)
    if not conversation:
        conversation = Conversation(user_id=user_id, started_at=datetime.now(timezone.utc))
        db.add(conversation)
        db.flush()
    return conversation


def save_message(
    db: Session,
    conversation: Conversation,
    role: str,
    content: str,
    telegram_message_id: Optional[int] = None,
) -> Message:
    now = datetime.now(timezone.utc)
    message = Message(
        conversation_id=conversation.id,
        role=role,
        content=content or "",
        telegram_message_id=telegram_message_id,
        created_at=now,
    )
    db.add(message)
    conversation.last_message_at = now
    db.flush()
    return message


def describe_message(message: TelegramMessage) -> str:
    """Stored content: the text or caption, or a placeholder for a bare attachment."""
    if message.body:
        return message.body
    media_type = classify_media(message)
    return f"[{media_type}]" if media_type else ""


class Orchestrator:
    """Wires the conversation components for one process."""

    def __init__(
        self,
        telegram: TelegramService,
        routing: TelegramRouting,
        state: OrchestratorState,
        scheduler: Optional[Scheduler] = None,
        session_factory: Callable[[], Session] = SessionLocal,
        blur: Optional[FaceBlurService] = None,
        guard: Optional[SchemaReadinessGuard] = None,
        llm_provider=None,
        sleep_func: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.telegram = telegram
        self.routing = routing
        self.state = state
        self.session_factory = session_factory
        self.llm_provider = llm_provider
        self.sleep_func = sleep_func
        self.guard = guard or SchemaReadinessGuard()
        blur = blur or FaceBlurService()

        self.debouncer = ReplyDebouncer(state, scheduler or AsyncioScheduler(), self.dispatch_reply)
        self.escalation = EscalationController(state, telegram, routing, self.debouncer.cancel)
        self.fulfillment = FulfillmentService(telegram, routing, blur, self.send_system_response)
        self.media_router = MediaRouter(telegram, routing, self.guard, blur, self.send_system_response)
        self.moderation = ModerationQueue(
            telegram, routing, self.fulfillment, self.escalation, self.send_system_response
        )

    async def _deliver(self, db: Session, user_id: str, text: str, token: int, session_id: Optional[int] = None) -> int:
        conversation = db.get(Conversation, session_id) if session_id else None
        if conversation is None:
            conversation = ensure_conversation(db, user_id)

        def persist(fragment: str, message_id: Optional[int]) -> None:
            save_message(db, conversation, "assistant", fragment, message_id)

        return await deliver_fragments(
            self.telegram, self.state, user_id, text, token, persist, sleep_func=self.sleep_func
        )

    async def send_system_response(self, db: Session, user_id: str, text: str) -> None:
        """A scripted reply.

        It interrupts any AI reply in flight; fragments still buffered are answered
        after it, once the quiet period runs out again.
        """
        token = self.debouncer.interrupt(user_id)
        try:
            await self._deliver(db, user_id, text, token)
        finally:
            self.debouncer.resume(user_id, token)

    async def handle_incoming_message(self, db: Session, message: TelegramMessage) -> str:
        """Store, then route one private message. Returns a short outcome label."""
        if message.chat.type != "private" or message.from_user is None or message.from_user.is_bot:
            return "ignored"

        user_id = str(message.from_user.id)
        conversation = get_or_create_conversation(db, message.from_user)
        get_or_create_profile(db, user_id)
        stored = save_message(db, conversation, "user", describe_message(message), message.message_id)

        if self.state.is_blocked(user_id) or self.state.is_paused(user_id):
            db.commit()
            logger.info("Message stored without reply, user paused", extra={"context": {"user_id": user_id}})
            return "paused"

        open_order = get_latest_open_order(db, user_id)
        step = resolve_current_step(db, user_id, open_order)

        if message.has_attachment:
            outcome = await self.media_router.route(db, user_id, conversation.id, message, step, open_order)
            db.commit()
            if outcome is not None:
                logger.info(
                    "Attachment routed",
                    extra={
                        "context": {
                            "user_id": user_id,
                            "routing_context": outcome.context,
                            "accepted": outcome.accepted,
                            "reason": outcome.reason,
                        }
                    },
                )
            return "media"

        text = message.body
        if not text:
            db.commit()
            return "empty"

        if await maybe_create_publish_task(db, self.routing, self.send_system_response, user_id, conversation.id, text):
            db.commit()
            return "anketa"

        if await handle_order_flow(db, user_id, conversation.id, text, self.send_system_response, self.fulfillment):
            db.commit()
            return "order_flow"

        db.commit()
        self.debouncer.enqueue(user_id, text, session_id=conversation.id, message_id=stored.id)
        return "buffered"

    async def dispatch_reply(
        self,
        user_id: str,
        session_id: Optional[int],
        combined: str,
        token: int,
        message_ids: list[int],
    ) -> None:
        """Answer the combined buffered text once, unless escalated or superseded."""
        db = self.session_factory()
        try:
            await self._dispatch(db, user_id, session_id, combined, token, message_ids)
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    async def _dispatch(
        self,
        db: Session,
        user_id: str,
        session_id: Optional[int],
        combined: str,
        token: int,
        message_ids: list[int],
    ) -> None:
        if self.state.is_blocked(user_id) or self.state.is_paused(user_id):
            return

        if should_escalate_locally(combined):
            self.escalation.escalate(db, user_id, combined, session_id)
            return

        conversation = db.get(Conversation, session_id) if session_id else get_conversation(db, user_id)
        if conversation is None:
            logger.warning("Conversation missing for buffered reply", extra={"context": {"user_id": user_id}})
            return

        profile = get_or_create_profile(db, user_id)
        open_order = get_latest_open_order(db, user_id)
        step = resolve_current_step(db, user_id, open_order)

        if not self.state.is_token_active(user_id, token):
            return

        result = await generate_reply(
            db,
            conversation.id,
            combined,
            step,
            profile=profile,
            open_order=open_order,
            exclude_ids=message_ids,
            provider=self.llm_provider,
        )
        if not result.ok:
            logger.warning(
                "No AI reply",
                extra={"context": result.log_context(user_id=user_id)},
            )
            return
        if not self.state.is_token_active(user_id, token):
            return

        response_text = result.value
        if not response_text:
            logger.warning("Empty AI response", extra={"context": {"user_id": user_id}})
            return
        if is_escalation_response(response_text):
            self.escalation.escalate(db, user_id, combined, conversation.id)
            return

        await self._deliver(db, user_id, response_text, token, conversation.id)
