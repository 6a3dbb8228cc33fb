import asyncio
from unittest.mock import AsyncMock, Mock

from app.config import settings
from app.services.reply_debouncer import (
    ReplyDebouncer,
    compute_typing_delay,
    deliver_fragments,
    is_numeric_only_line,
    split_response,
)


class TestSplitResponse:
    def test_short_lines_merged(self):
        assert split_response("Ha.\nMayli.\nKeyin yozaman.", min_chars=12, max_chars=200) == [
            "Ha. Mayli.",
            "Keyin yozaman.",
        ]

    def test_card_number_line_kept_alone(self):
        text = "Narxi 90 ming.\nKarta raqami:\n8600 1234 5678 9012\nChekni yuborasiz."

        assert split_response(text, min_chars=12, max_chars=200) == [
            "Narxi 90 ming.",
            "Karta raqami:",
            "8600 1234 5678 9012",
            "Chekni yuborasiz.",
        ]

    def test_long_line_split_on_sentences(self):
        text = "Birinchi gap juda uzun. Ikkinchi gap ham uzun. Uchinchi."

        assert split_response(text, min_chars=12, max_chars=30) == [
            "Birinchi gap juda uzun.",
            "Ikkinchi gap ham uzun.",
            "Uchinchi.",
        ]

    def test_empty(self):
        assert split_response("  \n ") == []

    def test_numeric_only_line(self):
        assert is_numeric_only_line("8600 1234 5678 9012") is True
        assert is_numeric_only_line("1234567") is False
        assert is_numeric_only_line("Karta 86001234") is False


class TestComputeTypingDelay:
    def test_short_text_uses_minimum(self):
        assert compute_typing_delay("Ha", rng=lambda: 0.5) == settings.typing_min_seconds

    def test_long_text_capped(self):
        assert compute_typing_delay("x" * 500, rng=lambda: 0.5) == settings.typing_max_seconds

    def test_within_bounds(self):
        delay = compute_typing_delay("Salom, qalaysiz? Yordam kerakmi?", rng=lambda: 0.0)
        assert settings.typing_min_seconds <= delay <= settings.typing_max_seconds


class TestReplyDebouncer:
    def test_rapid_messages_coalesced_into_one_dispatch(self, state, scheduler):
        dispatcher = AsyncMock()
        debouncer = ReplyDebouncer(state, scheduler, dispatcher, delay_seconds=40)

        debouncer.enqueue("42", "Salom", session_id=1, message_id=10)
        token = debouncer.enqueue("42", "yordam kerak", session_id=1, message_id=11)

        assert len(scheduler.pending) == 1
        asyncio.run(scheduler.run_all())

        dispatcher.assert_awaited_once_with("42", 1, "Salom\nyordam kerak", token, [10, 11])
        assert state.get_pending("42") is None

    def test_stale_fire_does_nothing(self, state, scheduler):
        dispatcher = AsyncMock()
        debouncer = ReplyDebouncer(state, scheduler, dispatcher)
        first = debouncer.enqueue("42", "Salom")
        debouncer.enqueue("42", "yana")

        asyncio.run(debouncer.fire("42", first))

        dispatcher.assert_not_awaited()
        assert state.get_pending("42").fragments == ["Salom", "yana"]

    def test_cancel_drops_buffer_and_timer(self, state, scheduler):
        dispatcher = AsyncMock()
        debouncer = ReplyDebouncer(state, scheduler, dispatcher)
        token = debouncer.enqueue("42", "Salom")

        debouncer.cancel("42")

        assert scheduler.pending == {}
        assert state.get_pending("42") is None
        assert "42" not in state._tokens
        asyncio.run(debouncer.fire("42", token))
        dispatcher.assert_not_awaited()

    def test_interrupt_keeps_fragments_and_stops_timer(self, state, scheduler):
        dispatcher = AsyncMock()
        debouncer = ReplyDebouncer(state, scheduler, dispatcher)
        token = debouncer.enqueue("42", "Salom")

        new_token = debouncer.interrupt("42")

        assert new_token > token
        assert scheduler.pending == {}
        assert state.get_pending("42").fragments == ["Salom"]
        asyncio.run(debouncer.fire("42", token))
        dispatcher.assert_not_awaited()

    def test_resume_rearms_kept_fragments(self, state, scheduler):
        dispatcher = AsyncMock()
        debouncer = ReplyDebouncer(state, scheduler, dispatcher)
        debouncer.enqueue("42", "Salom", session_id=1, message_id=10)
        token = debouncer.interrupt("42")

        debouncer.resume("42", token)
        asyncio.run(scheduler.run_all())

        args = dispatcher.await_args.args
        assert args[:3] == ("42", 1, "Salom")
        assert args[4] == [10]

    def test_resume_without_fragments_forgets_user(self, state, scheduler):
        debouncer = ReplyDebouncer(state, scheduler, AsyncMock())
        token = debouncer.interrupt("42")

        debouncer.resume("42", token)

        assert scheduler.pending == {}
        assert state.get_pending("42") is None
        assert "42" not in state._tokens

    def test_resume_after_newer_message_leaves_its_timer(self, state, scheduler):
        debouncer = ReplyDebouncer(state, scheduler, AsyncMock())
        token = debouncer.interrupt("42")
        debouncer.enqueue("42", "yana")

        debouncer.resume("42", token)

        assert len(scheduler.pending) == 1
        assert state.get_pending("42").fragments == ["yana"]

    def test_completed_dispatch_forgets_user(self, state, scheduler):
        debouncer = ReplyDebouncer(state, scheduler, AsyncMock())
        debouncer.enqueue("42", "Salom")

        asyncio.run(scheduler.run_all())

        assert state.get_pending("42") is None
        assert "42" not in state._tokens

    def test_superseded_dispatch_keeps_fragments(self, state, scheduler):
        debouncer = None

        async def dispatcher(user_id, session_id, combined, token, message_ids):
            debouncer.enqueue(user_id, "uchinchi xabar")

        debouncer = ReplyDebouncer(state, scheduler, dispatcher)
        debouncer.enqueue("42", "Salom")
        debouncer.enqueue("42", "ikkinchi")

        asyncio.run(scheduler.run_all())

        pending = state.get_pending("42")
        assert pending is not None
        assert pending.fragments == ["Salom", "ikkinchi", "uchinchi xabar"]
        assert len(scheduler.pending) == 1

    def test_surviving_timer_answers_all_fragments(self, state, scheduler):
        debouncer = None
        received = []

        async def dispatcher(user_id, session_id, combined, token, message_ids):
            received.append((combined, message_ids))
            if len(received) == 1:
                debouncer.enqueue(user_id, "uchinchi xabar", message_id=12)

        debouncer = ReplyDebouncer(state, scheduler, dispatcher)
        debouncer.enqueue("42", "Salom", message_id=10)
        debouncer.enqueue("42", "ikkinchi", message_id=11)

        asyncio.run(scheduler.run_all())
        asyncio.run(scheduler.run_all())

        assert received[-1] == ("Salom\nikkinchi\nuchinchi xabar", [10, 11, 12])
        assert len(received) == 2
        assert state.get_pending("42") is None

    def test_dispatch_error_clears_buffer(self, state, scheduler):
        dispatcher = AsyncMock(side_effect=RuntimeError("model down"))
        debouncer = ReplyDebouncer(state, scheduler, dispatcher)
        debouncer.enqueue("42", "Salom")

        asyncio.run(scheduler.run_all())

        dispatcher.assert_awaited_once()
        assert state.get_pending("42") is None

    def test_blank_buffer_not_dispatched(self, state, scheduler):
        dispatcher = AsyncMock()
        debouncer = ReplyDebouncer(state, scheduler, dispatcher)
        debouncer.enqueue("42", "   ")

        asyncio.run(scheduler.run_all())

        dispatcher.assert_not_awaited()
        assert state.get_pending("42") is None


class TestDeliverFragments:
    def test_sends_and_persists_each_fragment(self, state, telegram):
        token = state.next_token("42")
        persist = Mock()
        sleep = AsyncMock()

        sent = asyncio.run(
            deliver_fragments(
                telegram, state, "42", "Narxi 90 ming.\nChekni yuborasiz.", token, persist, sleep_func=sleep
            )
        )

        assert sent == 2
        assert telegram.send_chat_action.call_count == 2
        assert sleep.await_count == 2
        persist.assert_any_call("Narxi 90 ming.", 501)
        persist.assert_any_call("Chekni yuborasiz.", 501)

    def test_stops_when_superseded_while_typing(self, state, telegram):
        token = state.next_token("42")
        persist = Mock()
        sleep = AsyncMock(side_effect=lambda _: state.next_token("42"))

        sent = asyncio.run(
            deliver_fragments(telegram, state, "42", "Salom, qalaysiz?", token, persist, sleep_func=sleep)
        )

        assert sent == 0
        telegram.send_message.assert_not_called()
        persist.assert_not_called()

    def test_stops_on_send_failure(self, state, telegram):
        token = state.next_token("42")
        telegram.send_message.return_value = {"ok": False, "description": "Forbidden: bot was blocked"}
        persist = Mock()

        sent = asyncio.run(
            deliver_fragments(
                telegram, state, "42", "Birinchi xabar.\nIkkinchi xabar.", token, persist, sleep_func=AsyncMock()
            )
        )

        assert sent == 0
        assert telegram.send_message.call_count == 1
        persist.assert_not_called()

    def test_typing_indicator_failure_ignored(self, state, telegram):
        token = state.next_token("42")
        telegram.send_chat_action.side_effect = RuntimeError("timeout")

        sent = asyncio.run(
            deliver_fragments(telegram, state, "42", "Salom, qalaysiz?", token, Mock(), sleep_func=AsyncMock())
        )

        assert sent == 1
