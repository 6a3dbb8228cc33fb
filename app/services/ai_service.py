import asyncio
import time
from typing import Iterable, List, Optional

import httpx
from sqlalchemy.orm import Session

from app.config import settings
from app.logging_config import get_logger
from app.models import ConversationProfile, Message, Order
from app.services.alert_service import alert_error
from app.services.llm import LLMProvider, OpenAIProvider
from app.services.prompt_context import build_system_prompt
from app.services.result import Result
from app.services.step_machine import ConversationStep

logger = get_logger("ai_service")

# Global LLM provider instance
_llm_provider: Optional[LLMProvider] = None


def _log_timing(stage: str, elapsed_ms: float, extra: Optional[dict] = None) -> None:
    context = dict(extra or {})
    context["stage"] = stage
    context["elapsed_ms"] = round(elapsed_ms, 2)
    logger.info("Timing", extra={"context": context})


def get_llm_provider() -> LLMProvider:
    """Get or create LLM provider instance."""
    global _llm_provider
    if _llm_provider is None:
        _llm_provider = OpenAIProvider(
            api_key=settings.openai_api_key,
            default_model=settings.openai_model,
            base_url=settings.openai_base_url,
        )
    return _llm_provider


def get_conversation_history(
    db: Session,
    conversation_id: int,
    exclude_ids: Optional[Iterable[int]] = None,
    limit: Optional[int] = None,
) -> List[dict]:
    """Recent turns in chronological order, without system rows and the excluded ids.

    The buffered messages being answered are excluded; the caller sends them
    as one combined user turn.
    """
    limit = settings.ai_max_history_messages if limit is None else limit
    query = db.query(Message).filter(Message.conversation_id == conversation_id, Message.role != "system")
    excluded = [message_id for message_id in (exclude_ids or []) if message_id is not None]
    if excluded:
        query = query.filter(Message.id.notin_(excluded))
    messages = list(reversed(query.order_by(Message.id.desc()).limit(limit).all()))

    return [
        {"role": "assistant" if msg.role == "assistant" else "user", "content": msg.content}
        for msg in messages
        if msg.content
    ]


def build_messages(system_prompt: str, history: List[dict], user_message: str) -> List[dict]:
    return [{"role": "system", "content": system_prompt}, *history, {"role": "user", "content": user_message}]


async def generate_reply(
    db: Session,
    conversation_id: int,
    user_message: str,
    step: ConversationStep,
    profile: Optional[ConversationProfile] = None,
    open_order: Optional[Order] = None,
    exclude_ids: Optional[Iterable[int]] = None,
    provider: Optional[LLMProvider] = None,
) -> Result[str]:
    """One model call for the combined buffered text.

    History is read on the caller's thread and the provider call runs in a worker
    thread. An empty completion is a success with "" so the caller can log and
    skip it. Any failure comes back as ``llm_error``.
    """
    system_prompt = build_system_prompt(step, profile, open_order)
    history = get_conversation_history(db, conversation_id, exclude_ids)
    messages = build_messages(system_prompt, history, user_message)
    return await asyncio.to_thread(_complete, provider or get_llm_provider(), messages, conversation_id, step)


def _complete(llm: LLMProvider, messages: List[dict], conversation_id: int, step: ConversationStep) -> Result[str]:
    started = time.monotonic()
    try:
        response = llm.generate(
            messages,
            temperature=settings.openai_temperature,
            max_tokens=settings.openai_max_tokens,
            timeout_seconds=settings.openai_timeout_seconds,
        )
    except httpx.TimeoutException as e:
        _log_timing("llm_ms", (time.monotonic() - started) * 1000, {"timeout": True, "messages": len(messages)})
        logger.warning(f"LLM timeout after {settings.openai_timeout_seconds}s: {e}")
        return Result.failure(str(e) or "timeout", "llm_error")
    except Exception as e:
        logger.error(f"AI generation error: {e}", exc_info=True)
        alert_error("AI generation failed", {"conversation_id": conversation_id, "error": str(e)})
        return Result.failure(str(e), "llm_error")

    _log_timing(
        "llm_ms",
        (time.monotonic() - started) * 1000,
        {"timeout": False, "messages": len(messages), "model": response.model, "step": step.value},
    )
    return Result.success((response.content or "").strip())
