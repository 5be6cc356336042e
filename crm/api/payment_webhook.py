"""
Payment Webhook API

POST /webhooks/payment: confirmed charge events from the payment processor relay.

Responsibilities:
1. Verify X-Webhook-Secret.
2. Validate the event body (pydantic).
3. Record the payment through the payments service; conversion and commission
   accounting happen in the same database transaction.

Response contract (the processor retries on 5xx):
- 200 {"status": "recorded"|"duplicate", ...}: duplicates are idempotent successes
- 400 malformed event, never retried usefully
- 404 unknown user_id
- 503 consistency violation or payments disabled: safe to retry
"""
import logging

from fastapi import APIRouter, Depends

from crm.api.deps import require_webhook_secret
from crm.api.schemas import PaymentEvent, error_response, json_response
from crm.core.exceptions import ConsistencyViolationError, UnknownUserError
from crm.services.payments import (
    record_payment,
    InvalidPaymentError,
    PaymentsDisabledError,
)

logger = logging.getLogger(__name__)

router = APIRouter(dependencies=[Depends(require_webhook_secret)])


@router.post("/webhooks/payment")
async def payment_webhook(event: PaymentEvent):
    try:
        outcome = await record_payment(
            user_id=event.user_id,
            amount=event.amount,
            external_payment_id=event.external_payment_id,
            paid_at=event.paid_at,
            currency=event.currency,
            external_customer_id=event.external_customer_id,
            period_ends_at=event.period_ends_at,
        )
    except InvalidPaymentError as e:
        logger.warning(f"WEBHOOK_PAYMENT_INVALID [external_payment_id={event.external_payment_id}, reason={e}]")
        return error_response(400, "INVALID_PAYMENT", str(e))
    except UnknownUserError as e:
        logger.warning(f"WEBHOOK_PAYMENT_UNKNOWN_USER [user={event.user_id}, external_payment_id={event.external_payment_id}]")
        return error_response(404, "UNKNOWN_USER", str(e))
    except PaymentsDisabledError as e:
        return error_response(503, "PAYMENTS_DISABLED", str(e))
    except ConsistencyViolationError as e:
        logger.error(f"WEBHOOK_PAYMENT_CONSISTENCY [external_payment_id={event.external_payment_id}, reason={e}]")
        return error_response(503, "CONSISTENCY_VIOLATION", str(e))

    return json_response({
        "status": outcome.status,
        "payment_id": outcome.payment_id,
        "converted": outcome.converted,
        "partner_id": outcome.partner_id,
        "commission_percent": outcome.commission_percent,
        "commission_amount": outcome.commission_amount,
    })
