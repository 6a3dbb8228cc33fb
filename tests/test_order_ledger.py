from types import SimpleNamespace
from unittest.mock import patch

import pytest

from app.config import settings
from app.models import Order
from app.services.errors import InvalidOrderTransitionError
from app.services.order_ledger import (
    OrderStatus,
    OrderType,
    can_transition,
    compute_ad_price,
    format_amount,
    price_ad_order,
    set_order_status,
    start_ad_order,
)


def make_order(order_type="ad", status="awaiting_gender", amount=0):
    return SimpleNamespace(id=7, order_type=order_type, status=status, amount=amount, user_id="42", updated_at=None)


class TestComputeAdPrice:
    def test_first_ad_free_for_female(self):
        assert compute_ad_price("female", 0) == 0

    def test_second_ad_paid_for_female(self):
        assert compute_ad_price("female", 1) == settings.ad_price

    def test_male_always_pays(self):
        assert compute_ad_price("male", 0) == settings.ad_price

    def test_unknown_gender_pays(self):
        assert compute_ad_price(None, 0) == settings.ad_price


class TestFormatAmount:
    def test_thousands(self):
        assert format_amount(90_000) == "90 ming"

    def test_other_amounts(self):
        assert format_amount(1_500) == "1500"


class TestCanTransition:
    def test_allowed(self):
        assert can_transition("ad", "awaiting_gender", "awaiting_content") is True
        assert can_transition("contact", "payment_submitted", "completed") is True

    def test_not_allowed(self):
        assert can_transition("contact", "awaiting_payment", "completed") is False
        assert can_transition("ad", "completed", "awaiting_content") is False

    def test_unknown_type_or_status(self):
        assert can_transition("lottery", "awaiting_payment", "completed") is False
        assert can_transition("ad", "sleeping", "completed") is False


class TestSetOrderStatus:
    @patch("app.services.order_ledger.sync_step_from_order")
    def test_valid_transition_resyncs_step(self, mock_sync, db_session):
        order = make_order(status="awaiting_payment")

        set_order_status(db_session, order, OrderStatus.AWAITING_CHECK)

        assert order.status == "awaiting_check"
        assert order.updated_at is not None
        mock_sync.assert_called_once_with(db_session, order)

    @patch("app.services.order_ledger.sync_step_from_order")
    def test_invalid_transition_raises_and_leaves_order(self, mock_sync, db_session):
        order = make_order(order_type="contact", status="awaiting_payment")

        with pytest.raises(InvalidOrderTransitionError):
            set_order_status(db_session, order, OrderStatus.COMPLETED)

        assert order.status == "awaiting_payment"
        mock_sync.assert_not_called()

    @patch("app.services.order_ledger.sync_step_from_order")
    def test_same_status_is_noop(self, mock_sync, db_session):
        order = make_order(status="awaiting_check")

        set_order_status(db_session, order, OrderStatus.AWAITING_CHECK)

        db_session.flush.assert_not_called()
        mock_sync.assert_not_called()


class TestStartAdOrder:
    @patch("app.services.order_ledger.sync_step_from_order")
    @patch("app.services.order_ledger.get_open_ad_order")
    def test_existing_open_order_is_reused(self, mock_open, mock_sync, db_session):
        existing = make_order(status="awaiting_content")
        mock_open.return_value = existing
        profile = SimpleNamespace(user_id="42", gender="female", ad_count=0)

        order, created = start_ad_order(db_session, profile)

        assert order is existing
        assert created is False
        db_session.add.assert_not_called()

    @patch("app.services.order_ledger.sync_step_from_order")
    @patch("app.services.order_ledger.get_open_ad_order", return_value=None)
    def test_unknown_gender_waits_for_gender(self, mock_open, mock_sync, db_session):
        profile = SimpleNamespace(user_id="42", gender=None, ad_count=0)

        order, created = start_ad_order(db_session, profile, session_id=3)

        assert created is True
        assert isinstance(order, Order)
        assert order.status == "awaiting_gender"
        assert order.amount == 0
        assert order.session_id == 3

    @patch("app.services.order_ledger.sync_step_from_order")
    @patch("app.services.order_ledger.get_open_ad_order", return_value=None)
    def test_free_first_ad_skips_payment(self, mock_open, mock_sync, db_session):
        profile = SimpleNamespace(user_id="42", gender="female", ad_count=0)

        order, _ = start_ad_order(db_session, profile)

        assert order.status == "awaiting_content"
        assert order.amount == 0

    @patch("app.services.order_ledger.sync_step_from_order")
    @patch("app.services.order_ledger.get_open_ad_order", return_value=None)
    def test_paid_ad_awaits_payment(self, mock_open, mock_sync, db_session):
        profile = SimpleNamespace(user_id="42", gender="male", ad_count=0)

        order, _ = start_ad_order(db_session, profile)

        assert order.order_type == OrderType.AD.value
        assert order.status == "awaiting_payment"
        assert order.amount == settings.ad_price

    @pytest.mark.parametrize("ad_count", [1, 2, 5])
    @patch("app.services.order_ledger.sync_step_from_order")
    @patch("app.services.order_ledger.get_open_ad_order", return_value=None)
    def test_repeat_female_ad_awaits_payment(self, mock_open, mock_sync, db_session, ad_count):
        profile = SimpleNamespace(user_id="42", gender="female", ad_count=ad_count)

        order, created = start_ad_order(db_session, profile)

        assert created is True
        assert order.status == "awaiting_payment"
        assert order.amount == 90_000
        assert format_amount(order.amount) == "90 ming"


class TestPriceAdOrder:
    @patch("app.services.order_ledger.sync_step_from_order")
    def test_free_for_first_female_ad(self, mock_sync, db_session):
        order = make_order()

        price_ad_order(db_session, order, "female", 0)

        assert order.amount == 0
        assert order.status == "awaiting_content"

    @patch("app.services.order_ledger.sync_step_from_order")
    def test_paid_otherwise(self, mock_sync, db_session):
        order = make_order()

        price_ad_order(db_session, order, "male", 0)

        assert order.amount == settings.ad_price
        assert order.status == "awaiting_payment"
