"""
User Service Package
"""

from crm.services.users.service import (
    provision_users,
    get_user,
    update_user,
    normalize_email,
    validate_region,
    validate_trial_days,
    ProvisionResult,
    ProvisionSummary,
)

from crm.services.users.exceptions import (
    UserServiceError,
    InvalidUserDataError,
    PartnerInactiveError,
)

__all__ = [
    "provision_users",
    "get_user",
    "update_user",
    "normalize_email",
    "validate_region",
    "validate_trial_days",
    "ProvisionResult",
    "ProvisionSummary",
    "UserServiceError",
    "InvalidUserDataError",
    "PartnerInactiveError",
]
