import asyncio
from datetime import datetime, timedelta, timezone
from types import SimpleNamespace
from unittest.mock import patch

from app.config import settings
from app.models import VipSubscription
from app.services.vip_service import (
    VIP_EXPIRED_TEXT,
    build_vip_reminder_text,
    remove_from_vip_channel,
    run_vip_sweep,
    upsert_vip_subscription,
)

NOW = datetime(2026, 10, 18, 12, 0, tzinfo=timezone.utc)


def subscription(user_id="42", expires_in_days=10, reminder_sent_at=None):
    return SimpleNamespace(
        user_id=user_id,
        status="active",
        expires_at=NOW + timedelta(days=expires_in_days),
        reminder_sent_at=reminder_sent_at,
        updated_at=None,
    )


class TestUpsertVipSubscription:
    @patch("app.services.vip_service.get_active_subscription", return_value=None)
    def test_new_subscription(self, mock_active, db_session):
        result = upsert_vip_subscription(db_session, "42", now=NOW)

        assert isinstance(result, VipSubscription)
        assert result.starts_at == NOW
        assert result.expires_at == NOW + timedelta(days=30)
        db_session.add.assert_called_once_with(result)

    @patch("app.services.vip_service.get_active_subscription")
    def test_extends_from_current_expiry(self, mock_active, db_session):
        current = subscription(expires_in_days=5, reminder_sent_at=NOW)
        mock_active.return_value = current

        result = upsert_vip_subscription(db_session, "42", now=NOW)

        assert result is current
        assert current.expires_at == NOW + timedelta(days=35)
        assert current.reminder_sent_at is None
        db_session.add.assert_not_called()

    @patch("app.services.vip_service.get_active_subscription")
    def test_lapsed_subscription_replaced(self, mock_active, db_session):
        current = subscription(expires_in_days=-1)
        current.expires_at = current.expires_at.replace(tzinfo=None)
        mock_active.return_value = current

        result = upsert_vip_subscription(db_session, "42", now=NOW)

        assert current.status == "expired"
        assert result is not current
        assert result.expires_at == NOW + timedelta(days=30)


class TestRemoveFromVipChannel:
    def test_kick_is_ban_then_unban(self, telegram, routing):
        assert remove_from_vip_channel(telegram, routing, "42") is True

        telegram.ban_chat_member.assert_called_once_with("-100800", "42")
        telegram.unban_chat_member.assert_called_once_with("-100800", "42")

    def test_refused_ban_skips_unban(self, telegram, routing):
        telegram.ban_chat_member.return_value = {"ok": False, "description": "not enough rights"}

        assert remove_from_vip_channel(telegram, routing, "42") is False
        telegram.unban_chat_member.assert_not_called()

    def test_no_vip_channel(self, telegram, routing):
        routing.vip_channel_id = None

        assert remove_from_vip_channel(telegram, routing, "42") is False
        telegram.ban_chat_member.assert_not_called()


class TestVipSweep:
    def run_sweep(self, db, telegram, routing, responder, subscriptions):
        db.query.return_value.filter.return_value.all.return_value = subscriptions
        return asyncio.run(run_vip_sweep(db, telegram, routing, responder, now=NOW))

    def test_expired_removed_and_notified(self, db_session, telegram, routing, responder):
        lapsed = subscription(expires_in_days=-2)

        stats = self.run_sweep(db_session, telegram, routing, responder, [lapsed])

        assert stats == {"expired": 1, "reminded": 0}
        assert lapsed.status == "expired"
        telegram.ban_chat_member.assert_called_once_with("-100800", "42")
        responder.assert_awaited_once_with(db_session, "42", VIP_EXPIRED_TEXT)
        db_session.commit.assert_called_once()

    def test_reminder_sent_once(self, db_session, telegram, routing, responder):
        due = subscription("7", expires_in_days=2)
        reminded = subscription("8", expires_in_days=1, reminder_sent_at=NOW - timedelta(days=1))
        far = subscription("9", expires_in_days=20)

        stats = self.run_sweep(db_session, telegram, routing, responder, [due, reminded, far])

        assert stats == {"expired": 0, "reminded": 1}
        assert due.reminder_sent_at == NOW
        responder.assert_awaited_once_with(db_session, "7", "VIP obuna tugashiga 3 kun qoldi. Uzaytiramizmi?")
        telegram.ban_chat_member.assert_not_called()

    def test_reminder_window_and_text_follow_setting(self, db_session, telegram, routing, responder):
        due = subscription("7", expires_in_days=6)

        with patch.object(settings, "vip_reminder_days", 7):
            stats = self.run_sweep(db_session, telegram, routing, responder, [due])

        assert stats["reminded"] == 1
        responder.assert_awaited_once_with(db_session, "7", build_vip_reminder_text(7))
        assert "7 kun" in build_vip_reminder_text(7)
