"""
Stats Service Package
"""

from crm.services.stats.service import (
    get_partner_stats,
    get_admin_stats,
    conversion_rate,
)

from crm.services.stats.exceptions import StatsServiceError

__all__ = [
    "get_partner_stats",
    "get_admin_stats",
    "conversion_rate",
    "StatsServiceError",
]
