"""
Partner Service Package
"""

from crm.services.partners.service import (
    create_partner,
    get_partner,
    update_partner,
    validate_commission_percent,
)

from crm.services.partners.exceptions import (
    PartnerServiceError,
    InvalidPartnerDataError,
    PartnerAlreadyExistsError,
)

__all__ = [
    "create_partner",
    "get_partner",
    "update_partner",
    "validate_commission_percent",
    "PartnerServiceError",
    "InvalidPartnerDataError",
    "PartnerAlreadyExistsError",
]
