"""
Payment Service Layer

Validates confirmed charge events from the payment processor and hands them
to the ledger unit of work (database.record_payment), which inserts the
payment and applies conversion and commission accounting in one transaction.

Outcomes, not errors:
- duplicate external reference -> PaymentOutcome(duplicate=True)
- lost conversion race / renewal -> PaymentOutcome(converted=False)

Errors:
- InvalidPaymentError: malformed event (NOT retried)
- PaymentsDisabledError: kill switch on (processor should retry later)
- UnknownUserError, ConsistencyViolationError: from the ledger, unchanged
"""

import logging
import re
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Optional, Union
from uuid import UUID

import config
import database
from crm.core.feature_flags import get_feature_flags
from crm.core.structured_logger import log_event
from crm.utils.date_utils import ensure_utc
from crm.services.payments.exceptions import (
    InvalidPaymentError,
    PaymentsDisabledError,
)

logger = logging.getLogger(__name__)

_CURRENCY_RE = re.compile(r"^[a-z]{3}$")
MAX_REFERENCE_LENGTH = 255


# ====================================================================================
# Result Types
# ====================================================================================

@dataclass
class PaymentOutcome:
    """Result of recording one payment event"""
    duplicate: bool
    converted: bool = False
    payment_id: Optional[UUID] = None
    partner_id: Optional[UUID] = None
    commission_percent: Optional[Decimal] = None
    commission_amount: Optional[Decimal] = None

    @property
    def status(self) -> str:
        return "duplicate" if self.duplicate else "recorded"


# ====================================================================================
# Validation
# ====================================================================================

def normalize_currency(currency: Optional[str]) -> str:
    """
    Raises:
        InvalidPaymentError: not a 3-letter code
    """
    value = (currency or config.DEFAULT_CURRENCY).strip().lower()
    if not _CURRENCY_RE.match(value):
        raise InvalidPaymentError(f"Invalid currency code: {currency!r}")
    return value


def validate_external_reference(external_payment_id: Optional[str]) -> str:
    value = (external_payment_id or "").strip()
    if not value:
        raise InvalidPaymentError("external_payment_id is required")
    if len(value) > MAX_REFERENCE_LENGTH:
        raise InvalidPaymentError(f"external_payment_id exceeds {MAX_REFERENCE_LENGTH} characters")
    return value


# ====================================================================================
# Recording
# ====================================================================================

async def record_payment(
    user_id: Union[str, UUID],
    amount: Union[Decimal, int, str],
    external_payment_id: str,
    paid_at: datetime,
    currency: Optional[str] = None,
    external_customer_id: Optional[str] = None,
    period_ends_at: Optional[datetime] = None,
) -> PaymentOutcome:
    """
    Record a confirmed charge (idempotent on external_payment_id).

    Raises:
        PaymentsDisabledError: FEATURE_PAYMENTS_ENABLED is off
        InvalidPaymentError: malformed event
        UnknownUserError: no subscription row for user_id
        ConsistencyViolationError: referring partner vanished; safe to retry
    """
    if not get_feature_flags().payments_enabled:
        logger.warning(f"[FEATURE_FLAG] Payments disabled, rejecting payment {external_payment_id}")
        raise PaymentsDisabledError("Payment recording is disabled")

    reference = validate_external_reference(external_payment_id)
    currency_code = normalize_currency(currency)
    if paid_at is None:
        raise InvalidPaymentError("paid_at is required")
    paid_at = ensure_utc(paid_at)
    period_ends_at = ensure_utc(period_ends_at)
    if period_ends_at is not None and period_ends_at <= paid_at:
        raise InvalidPaymentError("period_ends_at must be after paid_at")

    try:
        result = await database.record_payment(
            user_id=user_id,
            amount=amount,
            currency=currency_code,
            external_payment_id=reference,
            paid_at=paid_at,
            external_customer_id=external_customer_id,
            period_ends_at=period_ends_at,
        )
    except ValueError as e:
        raise InvalidPaymentError(str(e)) from e

    outcome = PaymentOutcome(
        duplicate=result["duplicate"],
        converted=result.get("converted", False),
        payment_id=result.get("payment_id"),
        partner_id=result.get("partner_id"),
        commission_percent=result.get("commission_percent"),
        commission_amount=result.get("commission_amount"),
    )
    log_event(
        logger,
        component="payments",
        operation="record_payment",
        outcome="converted" if outcome.converted else outcome.status,
        external_payment_id=reference,
        partner_id=outcome.partner_id,
    )
    return outcome
