"""Admin review tasks: creation, posting to review topics, and at-most-once decisions.

A decision is a pure transition (``apply_transition``) applied in storage as one
conditional UPDATE guarded by the allowed predecessor statuses. Zero affected
rows means another click already won, so no side effect runs.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Optional, Union

from sqlalchemy import update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.config import TelegramRouting
from app.logging_config import get_logger
from app.models import AdminTask
from app.schemas.telegram import TelegramCallbackQuery
from app.services.errors import RateLimitedError
from app.services.telegram_service import (
    TelegramService,
    build_escalation_buttons,
    build_payment_buttons,
    build_publish_buttons,
    message_id_of,
    retry_after_seconds,
)

logger = get_logger("moderation_queue")

Responder = Callable[[Session, str, str], Awaitable[None]]

ALREADY_PROCESSED = "Allaqachon ishlangan."
TASK_NOT_FOUND = "Task topilmadi."

PAYMENT_APPROVED_TEXT = "To'lov tushdi. Endi ma'lumotlarni yuboring."
PAYMENT_REJECTED_TEXT = "To'lov topilmadi. Iltimos, chekingizni qayta yuboring."


@dataclass(frozen=True)
class NewState:
    status: str


@dataclass(frozen=True)
class AlreadyTransitioned:
    status: str


Transition = Union[NewState, AlreadyTransitioned]

# (task_type, action) -> (allowed predecessor statuses, resulting status)
TASK_TRANSITIONS: dict[tuple[str, str], tuple[tuple[str, ...], str]] = {
    ("payment", "approve"): (("pending", "posted", "payment_submitted"), "approved"),
    ("payment", "reject"): (("pending", "posted", "payment_submitted"), "rejected"),
    ("publish", "media_approve"): (("pending", "posted"), "media_approved"),
    ("publish", "media_reject"): (("pending", "posted", "media_approved"), "media_rejected"),
    ("publish", "media_reset"): (("pending", "posted", "media_approved"), "media_reset"),
    ("publish", "publish"): (("media_approved",), "publishing"),
    ("escalation", "resume"): (("pending", "posted"), "resolved"),
    ("escalation", "block"): (("pending", "posted"), "blocked"),
}

PUBLISH_FINAL_STATUSES = ("publishing", "published", "publish_partial_failed")


def apply_transition(task_type: str, action: str, current_status: str) -> Transition:
    try:
        allowed, target = TASK_TRANSITIONS[(task_type, action)]
    except KeyError:
        raise ValueError(f"Unknown action {action!r} for {task_type} task")
    if current_status in allowed:
        return NewState(target)
    return AlreadyTransitioned(current_status)


@dataclass(frozen=True)
class CallbackAction:
    task_type: str
    action: str
    task_id: int


CALLBACK_MAX_BYTES = 128
CALLBACK_PATTERNS = (
    (re.compile(r"^pay:(approve|reject):(\d+)$"), "payment", {"approve": "approve", "reject": "reject"}),
    (
        re.compile(r"^pub:(post|media|media_reject|preview|media_reset):(\d+)$"),
        "publish",
        {
            "post": "publish",
            "media": "media_approve",
            "media_reject": "media_reject",
            "preview": "preview",
            "media_reset": "media_reset",
        },
    ),
    (re.compile(r"^esc:(resume|block):(\d+)$"), "escalation", {"resume": "resume", "block": "block"}),
)


def parse_callback(data: Optional[str]) -> Optional[CallbackAction]:
    """Map inline-button data to an action. Unknown or oversized payloads give None."""
    if not data or len(data.encode("utf-8")) > CALLBACK_MAX_BYTES:
        return None
    for pattern, task_type, verbs in CALLBACK_PATTERNS:
        match = pattern.match(data)
        if match:
            return CallbackAction(task_type=task_type, action=verbs[match.group(1)], task_id=int(match.group(2)))
    return None


def create_admin_task(
    db: Session,
    task_type: str,
    session_id: Optional[int] = None,
    user_id: Optional[str] = None,
    payload: Optional[dict] = None,
) -> Optional[int]:
    """Insert a pending task. Never raises: a failure is logged and None returned."""
    now = datetime.now(timezone.utc)
    try:
        with db.begin_nested():
            task = AdminTask(
                task_type=task_type,
                status="pending",
                payload=payload or {},
                user_id=user_id,
                session_id=session_id,
                created_at=now,
                updated_at=now,
            )
            db.add(task)
            db.flush()
        logger.info(
            "Admin task created",
            extra={"context": {"task_id": task.id, "task_type": task_type, "user_id": user_id}},
        )
        return task.id
    except SQLAlchemyError as e:
        logger.warning(
            f"Failed to create admin task: {e}",
            extra={"context": {"task_type": task_type, "user_id": user_id}},
        )
        return None


def get_task(db: Session, task_id: int) -> Optional[AdminTask]:
    return db.query(AdminTask).filter(AdminTask.id == task_id).first()


def transition_task(db: Session, task: AdminTask, action: str, admin_id: Optional[str] = None) -> Transition:
    """Apply ``action`` as a compare-and-swap on the task status and commit it."""
    result = apply_transition(task.task_type, action, task.status)
    if isinstance(result, AlreadyTransitioned):
        return result

    allowed, _ = TASK_TRANSITIONS[(task.task_type, action)]
    now = datetime.now(timezone.utc)
    values: dict[str, Any] = {"status": result.status, "updated_at": now}
    if admin_id:
        values["admin_action_by"] = admin_id
        values["admin_action_at"] = now

    updated = db.execute(
        update(AdminTask)
        .where(AdminTask.id == task.id, AdminTask.status.in_(allowed))
        .values(**values)
        .execution_options(synchronize_session="fetch")
    )
    if (updated.rowcount or 0) == 0:
        db.rollback()
        winner = db.query(AdminTask.status).filter(AdminTask.id == task.id).scalar() or task.status
        logger.info(
            "Task already transitioned",
            extra={"context": {"task_id": task.id, "action": action, "status": winner}},
        )
        return AlreadyTransitioned(winner)

    db.commit()
    logger.info(
        "Task transitioned",
        extra={"context": {"task_id": task.id, "action": action, "status": result.status, "admin_id": admin_id}},
    )
    return result


def set_task_status(db: Session, task_id: int, status: str, expected: tuple[str, ...]) -> bool:
    updated = db.execute(
        update(AdminTask)
        .where(AdminTask.id == task_id, AdminTask.status.in_(expected))
        .values(status=status, updated_at=datetime.now(timezone.utc))
        .execution_options(synchronize_session="fetch")
    )
    return (updated.rowcount or 0) > 0


def payload_order_id(payload: Optional[dict]) -> Optional[int]:
    value = (payload or {}).get("orderId")
    try:
        return int(value) if value is not None else None
    except (TypeError, ValueError):
        return None


def build_payment_text(task: AdminTask) -> str:
    payload = task.payload or {}
    lines = [
        "Tolov tekshiruv",
        f"task: #{task.id}",
        f"user: {task.user_id}" if task.user_id else "",
        f"order: #{payload['orderId']}" if payload.get("orderId") else "",
        f"type: {payload['orderType']}" if payload.get("orderType") else "",
        f"message: {payload['messageId']}" if payload.get("messageId") else "",
    ]
    return "\n".join(line for line in lines if line)


def build_media_summary(payload: Optional[dict]) -> str:
    if not payload:
        return ""
    lines = [f"media: {int(payload.get('photoCount') or 0)} photo, {int(payload.get('videoCount') or 0)} video"]
    photo_ids = payload.get("photoIds") or []
    video_ids = payload.get("videoIds") or []
    if photo_ids:
        lines.append("photo_ids: " + ", ".join(str(i) for i in photo_ids[:4]))
    if video_ids:
        lines.append("video_ids: " + ", ".join(str(i) for i in video_ids[:2]))
    return "\n".join(lines)


def build_checklist(payload: Optional[dict], status: Optional[str]) -> str:
    if not payload:
        return ""
    items = []
    if payload.get("orderId"):
        items.append(f"order: #{payload['orderId']}")
    if status:
        items.append(f"status: {status}")
    return f"checklist: {' | '.join(items)}" if items else ""


def build_escalation_text(task: AdminTask) -> str:
    payload = task.payload or {}
    name = payload.get("name") if isinstance(payload.get("name"), str) and payload.get("name") else "Noma'lum"
    phone = payload.get("phone") if isinstance(payload.get("phone"), str) and payload.get("phone") else "Mavjud emas"
    message = (
        payload.get("message") if isinstance(payload.get("message"), str) and payload.get("message") else "[bo'sh]"
    )
    lines = [
        "#muammo",
        f"task: #{task.id}",
        f"user: {task.user_id}" if task.user_id else "",
        f"Ism: {name}",
        f"Telefon: {phone}",
        "Xabar:",
        message,
    ]
    return "\n".join(line for line in lines if line)


class ModerationQueue:
    """Posts pending tasks and applies admin button presses.

    Collaborators are injected: ``fulfillment`` (FulfillmentService),
    ``escalation`` (EscalationController) and ``responder`` for user-facing
    system messages.
    """

    def __init__(
        self,
        telegram: TelegramService,
        routing: TelegramRouting,
        fulfillment,
        escalation,
        responder: Responder,
    ):
        self.telegram = telegram
        self.routing = routing
        self.fulfillment = fulfillment
        self.escalation = escalation
        self.responder = responder

    # Worker

    def _post(self, db: Session, task: AdminTask, chat_id: str, topic_id: int, text: str, buttons: dict) -> bool:
        result = self.telegram.send_message(chat_id, text, reply_markup=buttons, message_thread_id=topic_id)
        retry_after = retry_after_seconds(result)
        if retry_after is not None:
            raise RateLimitedError(retry_after)
        if not result.get("ok"):
            logger.warning(
                f"Failed to post {task.task_type} task",
                extra={"context": {"task_id": task.id, "error": result.get("description") or result.get("error")}},
            )
            return False

        posted = db.execute(
            update(AdminTask)
            .where(AdminTask.id == task.id, AdminTask.status == "pending")
            .values(
                status="posted",
                admin_message_id=message_id_of(result),
                admin_topic_id=topic_id,
                updated_at=datetime.now(timezone.utc),
            )
            .execution_options(synchronize_session="fetch")
        )
        db.commit()
        return (posted.rowcount or 0) > 0

    async def _post_publish_task(self, db: Session, task: AdminTask) -> bool:
        payload = task.payload or {}
        text = str(payload.get("text") or "")
        if not text.strip():
            set_task_status(db, task.id, "skipped", ("pending",))
            db.commit()
            logger.info("Publish task skipped, no text", extra={"context": {"task_id": task.id}})
            return False

        if task.user_id:
            try:
                await self.fulfillment.send_preview(db, task.user_id, payload_order_id(payload))
            except Exception as e:
                logger.warning(f"Preview before posting failed: {e}", extra={"context": {"task_id": task.id}})

        header = "\n\n".join(
            part for part in (build_media_summary(payload), build_checklist(payload, task.status), text) if part
        )
        return self._post(
            db,
            task,
            self.routing.management_group_id,
            self.routing.anketas_topic_id,
            header,
            build_publish_buttons(task.id),
        )

    async def post_pending_tasks(self, db: Session, limit: int = 10) -> int:
        """One worker pass. Raises RateLimitedError when Telegram asks us to slow down."""
        if not self.routing.management_group_id:
            logger.warning("Management group not configured, moderation posting disabled")
            return 0

        tasks = (
            db.query(AdminTask).filter(AdminTask.status == "pending").order_by(AdminTask.id.desc()).limit(limit).all()
        )
        posted = 0
        for task in tasks:
            if task.task_type == "payment" and self.routing.confirm_payments_topic_id:
                ok = self._post(
                    db,
                    task,
                    self.routing.confirm_payments_group_id or self.routing.management_group_id,
                    self.routing.confirm_payments_topic_id,
                    build_payment_text(task),
                    build_payment_buttons(task.id),
                )
            elif task.task_type == "publish" and self.routing.anketas_topic_id:
                ok = await self._post_publish_task(db, task)
            elif task.task_type == "escalation" and self.routing.problems_topic_id:
                payload = task.payload or {}
                open_url = payload.get("openUrl") or (f"tg://user?id={task.user_id}" if task.user_id else None)
                ok = self._post(
                    db,
                    task,
                    self.routing.management_group_id,
                    self.routing.problems_topic_id,
                    build_escalation_text(task),
                    build_escalation_buttons(task.id, open_url),
                )
            else:
                continue
            posted += int(ok)

        if posted:
            logger.info("Moderation tasks posted", extra={"context": {"count": posted}})
        return posted

    # Audit

    def log_admin_action(
        self,
        action: str,
        task_id: int,
        order_id: Optional[int] = None,
        admin_id: Optional[str] = None,
        user_id: Optional[str] = None,
        details: Optional[str] = None,
    ) -> None:
        if not self.routing.management_group_id or not self.routing.audit_topic_id:
            return
        lines = [
            f"action: {action}",
            f"task: #{task_id}",
            f"order: #{order_id}" if order_id else "",
            f"admin: {admin_id}" if admin_id else "",
            f"user: {user_id}" if user_id else "",
            f"details: {details}" if details else "",
        ]
        try:
            result = self.telegram.send_message(
                self.routing.management_group_id,
                "\n".join(line for line in lines if line),
                message_thread_id=self.routing.audit_topic_id,
            )
            if not result.get("ok"):
                logger.warning("Audit log send failed", extra={"context": {"action": action, "task_id": task_id}})
        except Exception as e:
            logger.warning(f"Audit log failed: {e}", extra={"context": {"action": action, "task_id": task_id}})

    # Callbacks

    def _answer(self, callback: TelegramCallbackQuery, text: str) -> str:
        self.telegram.answer_callback_query(callback.id, text)
        return text

    def _edit(self, callback: TelegramCallbackQuery, text: str) -> None:
        if callback.message is None:
            return
        result = self.telegram.edit_message_text(str(callback.message.chat.id), callback.message.message_id, text)
        if not result.get("ok"):
            logger.warning("Failed to edit callback message", extra={"context": {"callback_id": callback.id}})

    async def handle_callback(self, db: Session, callback: TelegramCallbackQuery) -> Optional[str]:
        """Apply one button press. Returns the text shown to the admin, None when ignored."""
        parsed = parse_callback(callback.data)
        if parsed is None:
            return None

        task = get_task(db, parsed.task_id)
        if task is None or task.task_type != parsed.task_type:
            return self._answer(callback, TASK_NOT_FOUND)

        admin_id = str(callback.from_user.id)
        logger.info(
            "Moderation callback",
            extra={"context": {"task_id": task.id, "action": parsed.action, "admin_id": admin_id}},
        )

        if parsed.task_type == "payment":
            return await self._handle_payment(db, task, parsed.action, admin_id, callback)
        if parsed.task_type == "escalation":
            return await self._handle_escalation(db, task, parsed.action, admin_id, callback)
        if parsed.action == "publish":
            return await self._handle_publish(db, task, admin_id, callback)
        if parsed.action == "preview":
            return await self._handle_preview(db, task, admin_id, callback)
        return await self._handle_media(db, task, parsed.action, admin_id, callback)

    async def _handle_payment(
        self, db: Session, task: AdminTask, action: str, admin_id: str, callback: TelegramCallbackQuery
    ) -> str:
        if isinstance(transition_task(db, task, action, admin_id), AlreadyTransitioned):
            return self._answer(callback, ALREADY_PROCESSED)

        payload = task.payload or {}
        order_id = payload_order_id(payload)
        order_type = payload.get("orderType")

        handled = False
        try:
            if action == "approve" and order_id and order_type == "contact":
                await self.fulfillment.fulfill_contact_order(db, order_id)
                handled = True
            elif action == "approve" and order_id and order_type == "vip":
                await self.fulfillment.activate_vip_order(db, order_id)
                handled = True
            elif action == "approve" and order_id and order_type == "ad":
                await self.fulfillment.handle_ad_payment_approved(db, order_id)
                handled = True
            elif action == "reject" and order_id:
                self.fulfillment.reopen_payment(db, order_id)
            db.commit()
        except Exception as e:
            db.rollback()
            logger.error(
                f"Payment {action} follow-up failed: {e}",
                extra={"context": {"task_id": task.id, "order_id": order_id}},
                exc_info=True,
            )

        self.log_admin_action(f"payment_{action}", task.id, order_id, admin_id, task.user_id)

        if not handled and task.user_id:
            text = PAYMENT_APPROVED_TEXT if action == "approve" else PAYMENT_REJECTED_TEXT
            try:
                await self.responder(db, task.user_id, text)
                db.commit()
            except Exception as e:
                logger.error(f"Payment notice failed: {e}", extra={"context": {"task_id": task.id}})

        label = "Tasdiqlandi" if action == "approve" else "Rad etildi"
        self._edit(callback, f"{build_payment_text(task)}\nstatus: {label}\nby: {admin_id}")
        return self._answer(callback, label)

    async def _handle_escalation(
        self, db: Session, task: AdminTask, action: str, admin_id: str, callback: TelegramCallbackQuery
    ) -> str:
        if not task.user_id:
            return self._answer(callback, "Foydalanuvchi topilmadi.")
        if isinstance(transition_task(db, task, action, admin_id), AlreadyTransitioned):
            return self._answer(callback, ALREADY_PROCESSED)

        details = None
        try:
            if action == "resume":
                self.escalation.resume(db, task.user_id)
                details = "AI resumed"
            else:
                outcome = self.escalation.block(task.user_id)
                details = "blocked in Telegram" if outcome.telegram_blocked else "local block only"
            db.commit()
        except Exception as e:
            db.rollback()
            logger.error(
                f"Escalation {action} follow-up failed: {e}",
                extra={"context": {"task_id": task.id, "user_id": task.user_id}},
                exc_info=True,
            )

        self.log_admin_action(
            "escalation_resume" if action == "resume" else "escalation_block",
            task.id,
            admin_id=admin_id,
            user_id=task.user_id,
            details=details,
        )
        label = "AI qaytarildi" if action == "resume" else "Foydalanuvchi bloklandi"
        self._edit(callback, f"{build_escalation_text(task)}\nstatus: {label}\nby: {admin_id}")
        return self._answer(callback, label)

    async def _handle_media(
        self, db: Session, task: AdminTask, action: str, admin_id: str, callback: TelegramCallbackQuery
    ) -> str:
        if isinstance(transition_task(db, task, action, admin_id), AlreadyTransitioned):
            return self._answer(callback, ALREADY_PROCESSED)

        order_id = payload_order_id(task.payload)
        if action != "media_approve" and task.user_id:
            try:
                if action == "media_reject":
                    await self.fulfillment.reject_media(db, task.user_id, order_id)
                else:
                    await self.fulfillment.reset_media(db, task.user_id, order_id)
                db.commit()
            except Exception as e:
                db.rollback()
                logger.error(
                    f"Media {action} follow-up failed: {e}",
                    extra={"context": {"task_id": task.id, "order_id": order_id}},
                    exc_info=True,
                )

        audit_action = {"media_approve": "media_approved", "media_reject": "media_rejected"}.get(action, action)
        self.log_admin_action(audit_action, task.id, order_id, admin_id, task.user_id)
        label = {
            "media_approve": "Media tasdiqlandi.",
            "media_reject": "Media rad etildi.",
            "media_reset": "Media reset qilindi.",
        }[action]
        return self._answer(callback, label)

    async def _handle_preview(self, db: Session, task: AdminTask, admin_id: str, callback: TelegramCallbackQuery) -> str:
        order_id = payload_order_id(task.payload)
        if not task.user_id or not await self.fulfillment.send_preview(db, task.user_id, order_id):
            return self._answer(callback, "Preview topilmadi.")
        self.log_admin_action("preview", task.id, order_id, admin_id, task.user_id)
        return self._answer(callback, "Preview yuborildi.")

    async def _handle_publish(self, db: Session, task: AdminTask, admin_id: str, callback: TelegramCallbackQuery) -> str:
        if task.status in PUBLISH_FINAL_STATUSES:
            return self._answer(callback, ALREADY_PROCESSED)
        if task.status != "media_approved":
            return self._answer(callback, "Avval media tasdiqlang.")
        text = str((task.payload or {}).get("text") or "")
        if not text.strip():
            return self._answer(callback, "Matn topilmadi.")

        if isinstance(transition_task(db, task, "publish", admin_id), AlreadyTransitioned):
            return self._answer(callback, ALREADY_PROCESSED)

        order_id = payload_order_id(task.payload)
        fully_published = False
        try:
            outcome = await self.fulfillment.publish_ad_task(db, task, text)
            fully_published = outcome.fully_published
        except Exception as e:
            db.rollback()
            logger.error(
                f"Publish failed: {e}",
                extra={"context": {"task_id": task.id, "order_id": order_id}},
                exc_info=True,
            )

        final_status = "published" if fully_published else "publish_partial_failed"
        set_task_status(db, task.id, final_status, ("publishing",))
        db.commit()

        self.log_admin_action("publish", task.id, order_id, admin_id, task.user_id, details=final_status)
        if fully_published:
            self._edit(callback, f"{text}\n\nstatus: chiqarildi")
            return self._answer(callback, "Kanalga chiqarildi.")
        return self._answer(callback, "Qisman chiqarildi, loglarni tekshiring.")
