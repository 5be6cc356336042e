"""
Unit tests for payment service layer.

Tests focus on business logic:
- Event validation (currency, reference, period)
- Kill switch
- Outcome mapping (recorded / duplicate / converted)
"""
import pytest
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from unittest.mock import patch, AsyncMock

from crm.core.exceptions import ConsistencyViolationError, UnknownUserError
from crm.core.feature_flags import reset_feature_flags
from crm.services.payments.service import (
    normalize_currency,
    record_payment,
    validate_external_reference,
)
from crm.services.payments.exceptions import (
    InvalidPaymentError,
    PaymentsDisabledError,
)


def _db_result(**overrides):
    result = {
        "payment_id": "pay-1",
        "duplicate": False,
        "converted": False,
        "partner_id": None,
        "commission_percent": None,
        "commission_amount": None,
    }
    result.update(overrides)
    return result


class TestValidation:
    """Tests for input normalization"""

    def test_currency_defaults_and_lowercases(self):
        assert normalize_currency(None) == "usd"
        assert normalize_currency(" INR ") == "inr"

    @pytest.mark.parametrize("currency", ["dollars", "us", "12a"])
    def test_invalid_currency(self, currency):
        with pytest.raises(InvalidPaymentError):
            normalize_currency(currency)

    def test_reference_required(self):
        with pytest.raises(InvalidPaymentError):
            validate_external_reference("   ")

    def test_reference_too_long(self):
        with pytest.raises(InvalidPaymentError):
            validate_external_reference("x" * 256)

    def test_reference_stripped(self):
        assert validate_external_reference(" pi_123 ") == "pi_123"


class TestRecordPayment:
    """Tests for record_payment"""

    @pytest.mark.asyncio
    async def test_payments_disabled(self, monkeypatch, user_id, now):
        """Kill switch rejects before touching the ledger"""
        monkeypatch.setenv("FEATURE_PAYMENTS_ENABLED", "false")
        reset_feature_flags()
        with patch('crm.services.payments.service.database') as mock_db:
            mock_db.record_payment = AsyncMock()
            with pytest.raises(PaymentsDisabledError):
                await record_payment(user_id, Decimal("10.00"), "pi_1", now)
            mock_db.record_payment.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_recorded_and_converted(self, user_id, partner_id, now):
        with patch('crm.services.payments.service.database') as mock_db:
            mock_db.record_payment = AsyncMock(return_value=_db_result(
                converted=True,
                partner_id=partner_id,
                commission_percent=Decimal("10"),
                commission_amount=Decimal("1.000000"),
            ))

            outcome = await record_payment(user_id, Decimal("10.00"), "pi_1", now, currency="USD")

            assert outcome.status == "recorded"
            assert outcome.converted is True
            assert outcome.partner_id == partner_id
            assert outcome.commission_amount == Decimal("1.000000")
            kwargs = mock_db.record_payment.await_args.kwargs
            assert kwargs["currency"] == "usd"
            assert kwargs["external_payment_id"] == "pi_1"
            assert kwargs["paid_at"] == now

    @pytest.mark.asyncio
    async def test_duplicate_is_an_outcome(self, user_id, now):
        with patch('crm.services.payments.service.database') as mock_db:
            mock_db.record_payment = AsyncMock(return_value=_db_result(payment_id=None, duplicate=True))

            outcome = await record_payment(user_id, Decimal("10.00"), "pi_1", now)

            assert outcome.duplicate is True
            assert outcome.status == "duplicate"
            assert outcome.converted is False

    @pytest.mark.asyncio
    async def test_naive_paid_at_taken_as_utc(self, user_id):
        with patch('crm.services.payments.service.database') as mock_db:
            mock_db.record_payment = AsyncMock(return_value=_db_result())
            await record_payment(user_id, "5.00", "pi_2", datetime(2024, 3, 1, 9, 30))
            paid_at = mock_db.record_payment.await_args.kwargs["paid_at"]
            assert paid_at == datetime(2024, 3, 1, 9, 30, tzinfo=timezone.utc)

    @pytest.mark.asyncio
    async def test_period_must_end_after_payment(self, user_id, now):
        with patch('crm.services.payments.service.database') as mock_db:
            mock_db.record_payment = AsyncMock()
            with pytest.raises(InvalidPaymentError, match="period_ends_at"):
                await record_payment(user_id, "5.00", "pi_3", now, period_ends_at=now - timedelta(days=1))
            mock_db.record_payment.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_missing_paid_at(self, user_id):
        with pytest.raises(InvalidPaymentError, match="paid_at"):
            await record_payment(user_id, "5.00", "pi_4", None)

    @pytest.mark.asyncio
    async def test_ledger_value_error_becomes_invalid_payment(self, user_id, now):
        with patch('crm.services.payments.service.database') as mock_db:
            mock_db.record_payment = AsyncMock(
                side_effect=ValueError("Payment amount has more than 2 decimal places: 1.005")
            )
            with pytest.raises(InvalidPaymentError, match="2 decimal places"):
                await record_payment(user_id, "1.005", "pi_5", now)

    @pytest.mark.asyncio
    async def test_unknown_user_propagates(self, user_id, now):
        with patch('crm.services.payments.service.database') as mock_db:
            mock_db.record_payment = AsyncMock(side_effect=UnknownUserError("no row"))
            with pytest.raises(UnknownUserError):
                await record_payment(user_id, "5.00", "pi_6", now)

    @pytest.mark.asyncio
    async def test_consistency_violation_propagates(self, user_id, now):
        with patch('crm.services.payments.service.database') as mock_db:
            mock_db.record_payment = AsyncMock(side_effect=ConsistencyViolationError("partner vanished"))
            with pytest.raises(ConsistencyViolationError):
                await record_payment(user_id, "5.00", "pi_7", now)
