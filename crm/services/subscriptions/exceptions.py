"""
Subscription service domain exceptions.
"""


class SubscriptionServiceError(Exception):
    """Base exception for subscription service errors"""
    pass


class InvalidSubscriptionUpdateError(SubscriptionServiceError):
    """Empty update or unparseable status / date"""
    pass
