"""
Payment Service Layer

Recording of confirmed charges and the conversion accounting they trigger.
"""

from crm.services.payments.service import (
    record_payment,
    normalize_currency,
    validate_external_reference,
    PaymentOutcome,
)

from crm.services.payments.exceptions import (
    PaymentServiceError,
    InvalidPaymentError,
    PaymentsDisabledError,
)

__all__ = [
    "record_payment",
    "normalize_currency",
    "validate_external_reference",
    "PaymentOutcome",
    "PaymentServiceError",
    "InvalidPaymentError",
    "PaymentsDisabledError",
]
