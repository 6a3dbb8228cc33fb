"""Per-user conversational state that lives outside the database.

Holds the pending reply buffer, the debounce tokens, and the pause/block flags.
Flags go through a ``FlagStore`` so several API replicas can share them via
Redis; buffers and timers are always process-local.
"""

import itertools
from dataclasses import dataclass, field
from typing import Any, Optional, Protocol

import redis

from app.logging_config import get_logger

logger = get_logger("orchestrator_state")


@dataclass
class PendingReply:
    session_id: Optional[int] = None
    fragments: list[str] = field(default_factory=list)
    message_ids: list[int] = field(default_factory=list)
    token: int = 0
    timer: Any = None


class FlagStore(Protocol):
    def is_set(self, kind: str, user_id: str) -> bool: ...

    def set(self, kind: str, user_id: str) -> None: ...

    def clear(self, kind: str, user_id: str) -> None: ...


class InMemoryFlagStore:
    def __init__(self):
        self._flags: dict[str, set[str]] = {}

    def is_set(self, kind: str, user_id: str) -> bool:
        return user_id in self._flags.get(kind, set())

    def set(self, kind: str, user_id: str) -> None:
        self._flags.setdefault(kind, set()).add(user_id)

    def clear(self, kind: str, user_id: str) -> None:
        self._flags.get(kind, set()).discard(user_id)


class RedisFlagStore:
    """Flags in a Redis set per kind: matchmaker:flags:<kind>."""

    def __init__(self, client: "redis.Redis", prefix: str = "matchmaker:flags"):
        self.client = client
        self.prefix = prefix

    @classmethod
    def from_url(cls, url: str, socket_timeout_seconds: float = 0.5) -> "RedisFlagStore":
        client = redis.Redis.from_url(
            url,
            decode_responses=True,
            socket_connect_timeout=socket_timeout_seconds,
            socket_timeout=socket_timeout_seconds,
        )
        return cls(client)

    def _key(self, kind: str) -> str:
        return f"{self.prefix}:{kind}"

    def is_set(self, kind: str, user_id: str) -> bool:
        try:
            return bool(self.client.sismember(self._key(kind), user_id))
        except redis.RedisError as e:
            # Fail open for pause checks rather than silencing every user.
            logger.warning(f"Flag store unavailable: {e}", extra={"context": {"kind": kind, "user_id": user_id}})
            return False

    def set(self, kind: str, user_id: str) -> None:
        self.client.sadd(self._key(kind), user_id)

    def clear(self, kind: str, user_id: str) -> None:
        self.client.srem(self._key(kind), user_id)


PAUSED = "paused"
BLOCKED = "blocked"


class OrchestratorState:
    """Process-lifetime container for per-user orchestration state."""

    def __init__(self, flags: Optional[FlagStore] = None):
        self.flags = flags or InMemoryFlagStore()
        self._pending: dict[str, PendingReply] = {}
        self._tokens: dict[str, int] = {}
        self._token_counter = itertools.count(1)

    # Debounce tokens. Bumping is synchronous so it always happens before any await.
    # Values come from one process-wide counter and are never reused.
    def next_token(self, user_id: str) -> int:
        token = next(self._token_counter)
        self._tokens[user_id] = token
        return token

    def release_token(self, user_id: str, token: int) -> None:
        """Forget the user's token once nothing is waiting on it."""
        if self._tokens.get(user_id) == token:
            del self._tokens[user_id]

    def is_token_active(self, user_id: str, token: int) -> bool:
        return self._tokens.get(user_id) == token

    def get_pending(self, user_id: str) -> Optional[PendingReply]:
        return self._pending.get(user_id)

    def get_or_create_pending(self, user_id: str) -> PendingReply:
        pending = self._pending.get(user_id)
        if pending is None:
            pending = PendingReply()
            self._pending[user_id] = pending
        return pending

    def drop_pending(self, user_id: str) -> Optional[PendingReply]:
        return self._pending.pop(user_id, None)

    def is_paused(self, user_id: str) -> bool:
        return self.flags.is_set(PAUSED, user_id)

    def pause(self, user_id: str) -> None:
        self.flags.set(PAUSED, user_id)

    def unpause(self, user_id: str) -> None:
        self.flags.clear(PAUSED, user_id)

    def is_blocked(self, user_id: str) -> bool:
        return self.flags.is_set(BLOCKED, user_id)

    def block(self, user_id: str) -> None:
        self.flags.set(BLOCKED, user_id)

    def unblock(self, user_id: str) -> None:
        self.flags.clear(BLOCKED, user_id)

    def reset(self) -> None:
        self._pending.clear()
        self._tokens.clear()


def build_orchestrator_state(backend: str, redis_url: str) -> OrchestratorState:
    if backend == "redis":
        logger.info("Using Redis flag store", extra={"context": {"redis_url": redis_url}})
        return OrchestratorState(flags=RedisFlagStore.from_url(redis_url))
    return OrchestratorState()
