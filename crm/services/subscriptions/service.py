"""
Subscription Service Layer

Status reads for client apps, guarded status updates for admins/partners,
and the expiry sweep. The state machine itself lives in
crm.core.subscription_state; this layer only validates input and logs.
"""

import logging
import time
from datetime import datetime
from typing import Any, Dict, Optional, Union
from uuid import UUID

import database
from crm.core.structured_logger import log_event
from crm.core.subscription_state import SubscriptionStatus, parse_status
from crm.services.subscriptions.exceptions import InvalidSubscriptionUpdateError
from crm.utils.date_utils import utcnow

logger = logging.getLogger(__name__)


async def get_subscription_status(user_id: Union[str, UUID], now: Optional[datetime] = None) -> str:
    """
    'active' or 'expired' for the client app.

    Unknown or malformed user ids read as expired, like a missing row.
    """
    try:
        return await database.get_effective_status(user_id, now or utcnow())
    except ValueError:
        return SubscriptionStatus.EXPIRED.value


async def update_subscription_status(
    user_id: Union[str, UUID],
    subscription_status: Optional[str] = None,
    subscription_ends_at: Optional[datetime] = None,
) -> Dict[str, Any]:
    """
    Guarded update of subscription_status and/or subscription_ends_at.

    Raises:
        InvalidSubscriptionUpdateError: nothing to update, bad status or id
        UnknownUserError: no such user
        IllegalStatusTransitionError: active->added or expired->added
    """
    if subscription_status is None and subscription_ends_at is None:
        raise InvalidSubscriptionUpdateError("Nothing to update")
    try:
        status = parse_status(subscription_status) if subscription_status is not None else None
        return await database.update_subscription(
            user_id,
            subscription_status=status,
            subscription_ends_at=subscription_ends_at,
        )
    except ValueError as e:
        raise InvalidSubscriptionUpdateError(str(e)) from e


async def run_expiry_sweep(now: Optional[datetime] = None) -> int:
    """Expire every active subscription past its end date. Returns rows expired."""
    start = time.monotonic()
    expired = await database.expire_due_subscriptions(now or utcnow())
    log_event(
        logger,
        component="sweeper",
        operation="expire_due_subscriptions",
        outcome="success",
        duration_ms=(time.monotonic() - start) * 1000,
        expired=expired,
    )
    return expired
