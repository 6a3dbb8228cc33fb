from contextlib import nullcontext
from unittest.mock import AsyncMock, MagicMock, Mock

import pytest

from app.config import TelegramRouting
from app.services.orchestrator_state import OrchestratorState


@pytest.fixture
def db_session():
    """Mock database session. Savepoints are no-op, conditional updates hit one row."""
    db = MagicMock()
    db.begin_nested.side_effect = lambda: nullcontext()
    db.execute.return_value.rowcount = 1
    return db


@pytest.fixture
def routing():
    return TelegramRouting(
        management_group_id="-100500",
        storage_group_id="-100600",
        confirm_payments_group_id="-100500",
        confirm_payments_topic_id=11,
        photos_topic_id=12,
        videos_topic_id=13,
        hidden_photos_topic_id=14,
        archive_topic_id=15,
        anketas_topic_id=16,
        audit_topic_id=17,
        problems_topic_id=18,
        public_channel_id="-100700",
        private_channel_id="-100800",
        vip_channel_id="-100800",
    )


@pytest.fixture
def state():
    return OrchestratorState()


@pytest.fixture
def telegram():
    """Telegram transport where every call succeeds."""
    service = Mock()
    ok = {"ok": True, "result": {"message_id": 501}}
    for method in (
        "send_message",
        "send_photo",
        "send_video",
        "send_chat_action",
        "forward_message",
        "ban_chat_member",
        "unban_chat_member",
        "delete_message",
        "answer_callback_query",
        "edit_message_text",
    ):
        getattr(service, method).return_value = dict(ok)
    service.get_file_bytes.return_value = b"raw-image"
    service.create_chat_invite_link.return_value = "https://t.me/+vipInvite"
    return service


@pytest.fixture
def responder():
    return AsyncMock()


class ManualScheduler:
    """Holds debounce timers until the test fires them."""

    def __init__(self):
        self.pending = {}
        self._next_handle = 0

    def schedule(self, delay, callback):
        self._next_handle += 1
        self.pending[self._next_handle] = (delay, callback)
        return self._next_handle

    def cancel(self, handle):
        self.pending.pop(handle, None)

    async def run_all(self):
        callbacks = [callback for _, callback in self.pending.values()]
        self.pending.clear()
        for callback in callbacks:
            await callback()


@pytest.fixture
def scheduler():
    return ManualScheduler()
