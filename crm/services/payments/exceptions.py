"""
Payment Service Domain Exceptions

All exceptions raised by the payment service layer. Ledger failures
(UnknownUserError, ConsistencyViolationError) come from crm.core.exceptions
and pass through unchanged.
"""


class PaymentServiceError(Exception):
    """Base exception for payment service errors"""
    pass


class InvalidPaymentError(PaymentServiceError):
    """Payment event is malformed (amount, currency, reference, timestamps)"""
    pass


class PaymentsDisabledError(PaymentServiceError):
    """Payment recording switched off by FEATURE_PAYMENTS_ENABLED"""
    pass
