"""Coalesce rapid user messages into one AI reply, delivered in humanized fragments.

Every enqueue bumps the user's token before anything awaits. A fire or a
delivery step whose token is no longer current stops without side effects, so
the newest message always supersedes the reply in flight.
"""

import asyncio
import random
import re
from typing import Any, Awaitable, Callable, Optional, Protocol

from app.config import settings
from app.logging_config import get_logger
from app.services.orchestrator_state import OrchestratorState

logger = get_logger("reply_debouncer")

# (user_id, session_id, combined_text, token, message_ids)
Dispatcher = Callable[[str, Optional[int], str, int, list[int]], Awaitable[None]]

SENTENCE_BOUNDARY = re.compile(r"(?<=[.!?])\s+")


class Scheduler(Protocol):
    def schedule(self, delay: float, callback: Callable[[], Awaitable[None]]) -> Any: ...

    def cancel(self, handle: Any) -> None: ...


class AsyncioScheduler:
    """Runs the callback as a task on the running loop after ``delay`` seconds."""

    def __init__(self):
        self._tasks: set[asyncio.Task] = set()

    def _spawn(self, callback: Callable[[], Awaitable[None]]) -> None:
        task = asyncio.ensure_future(callback())
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    def schedule(self, delay: float, callback: Callable[[], Awaitable[None]]) -> asyncio.TimerHandle:
        loop = asyncio.get_running_loop()
        return loop.call_later(delay, self._spawn, callback)

    def cancel(self, handle: Any) -> None:
        if handle is not None:
            handle.cancel()


def is_numeric_only_line(value: str) -> bool:
    """Card-number-like lines (8+ digits once spaces are removed) are never split or merged."""
    compact = re.sub(r"\s+", "", value)
    return compact.isdigit() and len(compact) >= 8


def merge_short_fragments(segments: list[str], min_chars: int, max_chars: int) -> list[str]:
    merged: list[str] = []
    for segment in segments:
        if not segment:
            continue
        previous = merged[-1] if merged else None
        if (
            previous is not None
            and not is_numeric_only_line(segment)
            and not is_numeric_only_line(previous)
            and len(segment) < min_chars
            and len(previous) + 1 + len(segment) <= max_chars
        ):
            merged[-1] = f"{previous} {segment}"
        else:
            merged.append(segment)
    return merged


def split_response(text: str, min_chars: Optional[int] = None, max_chars: Optional[int] = None) -> list[str]:
    min_chars = settings.min_fragment_chars if min_chars is None else min_chars
    max_chars = settings.max_fragment_chars if max_chars is None else max_chars

    normalized = (text or "").replace("\r\n", "\n").strip()
    if not normalized:
        return []

    segments: list[str] = []
    for line in (line.strip() for line in normalized.split("\n")):
        if not line:
            continue
        if is_numeric_only_line(line):
            segments.append(line)
            continue

        buffer = ""
        for sentence in SENTENCE_BOUNDARY.split(line):
            sentence = sentence.strip()
            if not sentence:
                continue
            candidate = f"{buffer} {sentence}" if buffer else sentence
            if len(candidate) > max_chars and buffer:
                segments.append(buffer)
                buffer = sentence
            else:
                buffer = candidate
        if buffer:
            segments.append(buffer)

    return merge_short_fragments(segments, min_chars, max_chars)


def compute_typing_delay(text: str, rng: Callable[[], float] = random.random) -> float:
    length = len(re.sub(r"\s+", "", text or ""))
    raw = settings.typing_base_seconds + length * settings.typing_per_char_seconds
    jittered = raw * (0.85 + rng() * 0.3)
    return min(settings.typing_max_seconds, max(settings.typing_min_seconds, jittered))


class ReplyDebouncer:
    def __init__(
        self,
        state: OrchestratorState,
        scheduler: Scheduler,
        dispatcher: Dispatcher,
        delay_seconds: Optional[float] = None,
    ):
        self.state = state
        self.scheduler = scheduler
        self.dispatcher = dispatcher
        self.delay_seconds = settings.reply_buffer_seconds if delay_seconds is None else delay_seconds

    def enqueue(self, user_id: str, text: str, session_id: Optional[int] = None, message_id: Optional[int] = None) -> int:
        """Buffer a fragment and restart the quiet-period timer. Synchronous by contract."""
        token = self.state.next_token(user_id)
        pending = self.state.get_or_create_pending(user_id)
        if pending.timer is not None:
            self.scheduler.cancel(pending.timer)

        pending.token = token
        if session_id is not None:
            pending.session_id = session_id
        if message_id is not None:
            pending.message_ids.append(message_id)
        trimmed = (text or "").strip()
        if trimmed:
            pending.fragments.append(trimmed)

        pending.timer = self.scheduler.schedule(self.delay_seconds, lambda: self.fire(user_id, token))
        logger.debug(
            "Reply buffered",
            extra={"context": {"user_id": user_id, "token": token, "fragments": len(pending.fragments)}},
        )
        return token

    async def fire(self, user_id: str, token: int) -> None:
        pending = self.state.get_pending(user_id)
        if pending is None or not self.state.is_token_active(user_id, token):
            return
        pending.timer = None

        combined = "\n".join(pending.fragments).strip()
        if not combined:
            logger.warning("Buffered reply empty, skipping", extra={"context": {"user_id": user_id}})
            self._release(user_id, token)
            return

        try:
            await self.dispatcher(user_id, pending.session_id, combined, token, list(pending.message_ids))
        except Exception as e:
            logger.error(
                f"Buffered reply failed: {e}",
                extra={"context": {"user_id": user_id, "token": token}},
                exc_info=True,
            )

        # A superseded dispatch keeps the fragments so the next reply answers them too.
        if self.state.is_token_active(user_id, token):
            self._release(user_id, token)

    def _release(self, user_id: str, token: int) -> None:
        self.state.drop_pending(user_id)
        self.state.release_token(user_id, token)

    def cancel(self, user_id: str) -> int:
        """Drop the buffer and timer and invalidate any reply in flight."""
        pending = self.state.drop_pending(user_id)
        if pending is not None and pending.timer is not None:
            self.scheduler.cancel(pending.timer)
        token = self.state.next_token(user_id)
        self.state.release_token(user_id, token)
        return token

    def interrupt(self, user_id: str) -> int:
        """Stop the timer and invalidate any reply in flight. Buffered fragments stay.

        Returns the token the interrupting delivery runs under.
        """
        token = self.state.next_token(user_id)
        pending = self.state.get_pending(user_id)
        if pending is not None and pending.timer is not None:
            self.scheduler.cancel(pending.timer)
            pending.timer = None
        return token

    def resume(self, user_id: str, token: int) -> None:
        """End an interruption: re-arm the timer for kept fragments, or forget the user."""
        if not self.state.is_token_active(user_id, token):
            return
        pending = self.state.get_pending(user_id)
        if pending is not None and pending.fragments:
            self.enqueue(user_id, "")
            return
        self._release(user_id, token)


async def deliver_fragments(
    telegram,
    state: OrchestratorState,
    user_id: str,
    text: str,
    token: int,
    persist: Callable[[str, Optional[int]], None],
    sleep_func: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    rng: Callable[[], float] = random.random,
) -> int:
    """Send ``text`` as typing-paced fragments while ``token`` stays current.

    ``persist`` receives each sent fragment and its Telegram message id.
    Returns the number of fragments sent.
    """
    sent = 0
    for fragment in split_response(text):
        if not state.is_token_active(user_id, token):
            break

        try:
            telegram.send_chat_action(user_id, "typing")
        except Exception as e:
            logger.warning(f"Typing indicator failed: {e}", extra={"context": {"user_id": user_id}})
        await sleep_func(compute_typing_delay(fragment, rng))

        if not state.is_token_active(user_id, token):
            break

        result = telegram.send_message(user_id, fragment)
        if not result.get("ok"):
            logger.warning(
                "Fragment send failed",
                extra={"context": {"user_id": user_id, "error": result.get("description") or result.get("error")}},
            )
            break
        message_id = (result.get("result") or {}).get("message_id")
        persist(fragment, message_id)
        sent += 1

    if sent:
        logger.info("Reply delivered", extra={"context": {"user_id": user_id, "fragments": sent}})
    return sent
