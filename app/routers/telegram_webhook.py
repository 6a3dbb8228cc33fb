import json
from typing import Optional

from fastapi import APIRouter, Depends, Request
from sqlalchemy.orm import Session

from app.database import get_db
from app.logging_config import get_logger
from app.schemas.telegram import TelegramUpdate, TelegramWebhookResponse
from app.services.conversation_service import Orchestrator

logger = get_logger("telegram_webhook")

router = APIRouter()


def get_orchestrator(request: Request) -> Orchestrator:
    return request.app.state.orchestrator


async def parse_telegram_update(request: Request) -> Optional[dict]:
    """
    Parse Telegram update with tolerant decoding to avoid utf-8 crashes.
    Returns dict or None.
    """
    try:
        return await request.json()
    except ValueError as e:
        logger.warning(f"Standard request.json() failed: {e}, fallback decoding")

    raw = await request.body()
    for enc in ("utf-8", "latin-1"):
        try:
            return json.loads(raw.decode(enc, errors="replace"))
        except ValueError:
            continue

    logger.error("Failed to decode Telegram webhook payload after fallbacks")
    return None


@router.post("/telegram-webhook", response_model=TelegramWebhookResponse)
async def handle_telegram_webhook(
    request: Request,
    db: Session = Depends(get_db),
    orchestrator: Orchestrator = Depends(get_orchestrator),
):
    """
    Handle Telegram webhook updates:
    - Callback queries (moderation buttons) -> ModerationQueue
    - Private user messages -> Orchestrator
    """
    try:
        body = await parse_telegram_update(request)
        if body is None:
            return TelegramWebhookResponse(success=False, message="Invalid telegram payload")

        logger.debug(f"Telegram webhook received: {body}")
        update = TelegramUpdate(**body)

        if update.callback_query:
            answer = await orchestrator.moderation.handle_callback(db, update.callback_query)
            return TelegramWebhookResponse(success=True, message=answer or "Ignored callback")

        if update.message:
            outcome = await orchestrator.handle_incoming_message(db, update.message)
            return TelegramWebhookResponse(success=True, message=outcome)

        return TelegramWebhookResponse(success=True, message="No actionable content")

    except Exception as e:
        db.rollback()
        logger.error(f"Telegram webhook error: {e}", exc_info=True)
        return TelegramWebhookResponse(success=False, message=str(e))
