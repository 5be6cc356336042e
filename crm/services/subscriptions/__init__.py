"""
Subscription Service Package
"""

from crm.services.subscriptions.service import (
    get_subscription_status,
    update_subscription_status,
    run_expiry_sweep,
)

from crm.services.subscriptions.exceptions import (
    SubscriptionServiceError,
    InvalidSubscriptionUpdateError,
)

__all__ = [
    "get_subscription_status",
    "update_subscription_status",
    "run_expiry_sweep",
    "SubscriptionServiceError",
    "InvalidSubscriptionUpdateError",
]
