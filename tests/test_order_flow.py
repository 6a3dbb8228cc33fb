import asyncio
from types import SimpleNamespace
from unittest.mock import AsyncMock, Mock, patch

import pytest

from app.config import settings
from app.services.media_router import ASK_GENDER_TEXT
from app.services.order_flow_service import (
    AD_IN_PROGRESS_TEXT,
    CANCELLED_TEXT,
    FINISH_PAYMENT_TEXT,
    FREE_AD_TEXT,
    build_ad_price_message,
    build_contact_offer,
    build_payment_message,
    build_vip_offer,
    handle_order_flow,
)
from app.services.order_ledger import OrderStatus, OrderType

MODULE = "app.services.order_flow_service"


@pytest.fixture
def fulfillment():
    service = Mock()
    service.reset_media = AsyncMock()
    service.handle_ad_payment_approved = AsyncMock(return_value=True)
    return service


def run_flow(db, text, responder, fulfillment):
    return asyncio.run(handle_order_flow(db, "42", 1, text, responder, fulfillment))


def make_order(order_type="ad", status="awaiting_payment", amount=90_000):
    return SimpleNamespace(id=5, order_type=order_type, status=status, amount=amount)


class TestMessages:
    def test_ad_price_for_repeat_female(self):
        assert build_ad_price_message("female", 1, 90_000) == "Birinchi e'lon bepul edi. Narxi 90 ming. Karta tashlaymi?"

    def test_ad_price_for_male(self):
        assert build_ad_price_message("male", 0, 90_000) == "Narxi 90 ming. Karta tashlaymi?"

    def test_payment_message_with_card(self):
        with patch.object(settings, "payment_card_number", "8600 1234 5678 9012"), patch.object(
            settings, "payment_card_owner", "Ali Valiyev"
        ):
            message = build_payment_message(90_000)

        assert message == "Narxi 90 ming.\nKarta raqami:\n8600 1234 5678 9012\nKarta egasi: Ali Valiyev\nChekni yuborasiz."

    def test_payment_message_without_card(self):
        with patch.object(settings, "payment_card_number", None), patch.object(settings, "payment_card_owner", None):
            assert build_payment_message(99_000) == "Narxi 99 ming.\nChekni yuborasiz."

    def test_offers(self):
        assert build_contact_offer().startswith("Narxi 99 ming.")
        assert build_vip_offer() == "Oyiga 490 ming. Olasizmi?"


class TestPassThrough:
    def test_empty_text(self, db_session, responder, fulfillment):
        assert run_flow(db_session, "   ", responder, fulfillment) is False

    @patch(f"{MODULE}.get_latest_open_order", return_value=None)
    def test_small_talk_left_to_ai(self, mock_latest, db_session, responder, fulfillment):
        assert run_flow(db_session, "Salom, qalaysiz?", responder, fulfillment) is False
        responder.assert_not_awaited()


class TestMediaReset:
    @patch(f"{MODULE}.get_open_ad_order")
    def test_reset_open_ad_media(self, mock_ad, db_session, responder, fulfillment):
        mock_ad.return_value = make_order(status="awaiting_content")

        assert run_flow(db_session, "media reset", responder, fulfillment) is True
        fulfillment.reset_media.assert_awaited_once_with(db_session, "42", 5)

    @patch(f"{MODULE}.get_open_ad_order", return_value=None)
    def test_reset_without_ad_order(self, mock_ad, db_session, responder, fulfillment):
        assert run_flow(db_session, "media reset", responder, fulfillment) is False
        fulfillment.reset_media.assert_not_awaited()


class TestProductIntents:
    @patch(f"{MODULE}.create_order")
    @patch(f"{MODULE}.get_latest_open_order", return_value=None)
    def test_contact_order_opened(self, mock_latest, mock_create, db_session, responder, fulfillment):
        mock_create.return_value = SimpleNamespace(id=8)

        assert run_flow(db_session, "#31 anketa kontakt kerak", responder, fulfillment) is True

        mock_create.assert_called_once_with(db_session, OrderType.CONTACT, "42", 99_000, session_id=1, ad_id=31)
        responder.assert_awaited_once_with(db_session, "42", build_contact_offer())

    @patch(f"{MODULE}.create_order")
    @patch(f"{MODULE}.get_latest_open_order", return_value=None)
    def test_vip_order_opened(self, mock_latest, mock_create, db_session, responder, fulfillment):
        assert run_flow(db_session, "VIP kanalga obuna bo'lmoqchiman", responder, fulfillment) is True

        mock_create.assert_called_once_with(db_session, OrderType.VIP, "42", 490_000, session_id=1)
        responder.assert_awaited_once_with(db_session, "42", build_vip_offer())

    @patch(f"{MODULE}.start_ad_order")
    @patch(f"{MODULE}.get_or_create_profile")
    @patch(f"{MODULE}.get_latest_open_order", return_value=None)
    def test_ad_without_gender_asks(self, mock_latest, mock_profile, mock_start, db_session, responder, fulfillment):
        mock_profile.return_value = SimpleNamespace(gender=None, ad_count=0)
        mock_start.return_value = (make_order(status="awaiting_gender", amount=0), True)

        assert run_flow(db_session, "E'lon bermoqchiman", responder, fulfillment) is True
        responder.assert_awaited_once_with(db_session, "42", ASK_GENDER_TEXT)

    @patch(f"{MODULE}.start_ad_order")
    @patch(f"{MODULE}.get_or_create_profile")
    @patch(f"{MODULE}.get_latest_open_order", return_value=None)
    def test_ad_priced_for_known_gender(self, mock_latest, mock_profile, mock_start, db_session, responder, fulfillment):
        mock_profile.return_value = SimpleNamespace(gender="male", ad_count=0)
        mock_start.return_value = (make_order(), True)

        run_flow(db_session, "E'lon bermoqchiman", responder, fulfillment)

        responder.assert_awaited_once_with(db_session, "42", "Narxi 90 ming. Karta tashlaymi?")

    @patch(f"{MODULE}.start_ad_order")
    @patch(f"{MODULE}.get_or_create_profile")
    @patch(f"{MODULE}.get_latest_open_order")
    def test_second_ad_request_while_one_open(
        self, mock_latest, mock_profile, mock_start, db_session, responder, fulfillment
    ):
        mock_latest.return_value = make_order("contact", "awaiting_check", 99_000)
        mock_start.return_value = (make_order(status="awaiting_content", amount=0), False)

        run_flow(db_session, "Reklama bermoqchiman", responder, fulfillment)

        responder.assert_awaited_once_with(db_session, "42", AD_IN_PROGRESS_TEXT)


class TestOpenAdOrder:
    @patch(f"{MODULE}.get_latest_open_order")
    def test_ad_intent_while_payment_pending(self, mock_latest, db_session, responder, fulfillment):
        mock_latest.return_value = make_order()

        assert run_flow(db_session, "E'lon joylamoqchiman", responder, fulfillment) is True
        responder.assert_awaited_once_with(db_session, "42", FINISH_PAYMENT_TEXT)

    @patch(f"{MODULE}.price_ad_order")
    @patch(f"{MODULE}.set_gender")
    @patch(f"{MODULE}.get_or_create_profile")
    @patch(f"{MODULE}.get_latest_open_order")
    def test_gender_answer_makes_first_ad_free(
        self, mock_latest, mock_profile, mock_gender, mock_price, db_session, responder, fulfillment
    ):
        order = make_order(status="awaiting_gender", amount=0)
        mock_latest.return_value = order
        mock_gender.return_value = SimpleNamespace(gender="female", ad_count=0)
        mock_profile.return_value = SimpleNamespace(gender="female", ad_count=0)
        mock_price.side_effect = lambda db, o, gender, count: setattr(o, "status", "awaiting_content")

        assert run_flow(db_session, "Ayolman", responder, fulfillment) is True

        mock_gender.assert_called_once_with(db_session, "42", "female")
        mock_price.assert_called_once_with(db_session, order, "female", 0)
        responder.assert_awaited_once_with(db_session, "42", FREE_AD_TEXT)
        fulfillment.handle_ad_payment_approved.assert_awaited_once_with(db_session, 5)

    @patch(f"{MODULE}.get_latest_open_order")
    def test_unclear_gender_asks_again(self, mock_latest, db_session, responder, fulfillment):
        mock_latest.return_value = make_order(status="awaiting_gender", amount=0)

        run_flow(db_session, "bilmadim", responder, fulfillment)

        responder.assert_awaited_once_with(db_session, "42", ASK_GENDER_TEXT)

    @patch(f"{MODULE}.set_order_status")
    @patch(f"{MODULE}.get_latest_open_order")
    def test_gender_question_declined(self, mock_latest, mock_status, db_session, responder, fulfillment):
        order = make_order(status="awaiting_gender", amount=0)
        mock_latest.return_value = order

        run_flow(db_session, "yo'q", responder, fulfillment)

        mock_status.assert_called_once_with(db_session, order, OrderStatus.CANCELLED)
        responder.assert_awaited_once_with(db_session, "42", CANCELLED_TEXT)


class TestPaymentAnswers:
    @patch(f"{MODULE}.get_or_create_profile")
    @patch(f"{MODULE}.set_order_status")
    @patch(f"{MODULE}.get_latest_open_order")
    def test_yes_sends_payment_details(self, mock_latest, mock_status, mock_profile, db_session, responder, fulfillment):
        order = make_order("contact", amount=99_000)
        mock_latest.return_value = order

        with patch.object(settings, "payment_card_number", None), patch.object(settings, "payment_card_owner", None):
            assert run_flow(db_session, "Ha", responder, fulfillment) is True

        mock_status.assert_called_once_with(db_session, order, OrderStatus.AWAITING_CHECK)
        responder.assert_awaited_once_with(db_session, "42", "Narxi 99 ming.\nChekni yuborasiz.")
        mock_profile.assert_not_called()

    @patch(f"{MODULE}.get_or_create_profile")
    @patch(f"{MODULE}.set_order_status")
    @patch(f"{MODULE}.get_latest_open_order")
    def test_repeat_female_ad_gets_price_note(
        self, mock_latest, mock_status, mock_profile, db_session, responder, fulfillment
    ):
        mock_latest.return_value = make_order()
        mock_profile.return_value = SimpleNamespace(gender="female", ad_count=2)

        run_flow(db_session, "mayli", responder, fulfillment)

        texts = [c.args[2] for c in responder.await_args_list]
        assert texts[-1] == "Bu keyingi e'lon, narxi 90 ming."

    @patch(f"{MODULE}.set_order_status")
    @patch(f"{MODULE}.get_latest_open_order")
    def test_no_cancels(self, mock_latest, mock_status, db_session, responder, fulfillment):
        order = make_order("vip", amount=490_000)
        mock_latest.return_value = order

        run_flow(db_session, "Yo'q, kerak emas", responder, fulfillment)

        mock_status.assert_called_once_with(db_session, order, OrderStatus.CANCELLED)
        responder.assert_awaited_once_with(db_session, "42", CANCELLED_TEXT)
