"""
Stats Service Layer

Read-only reporting over partner aggregates, subscription status counts,
payments and the commission ledger. Never writes; partner totals are reported
exactly as the accumulators left them.
"""

import logging
from datetime import datetime
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Dict, Optional, Union
from uuid import UUID

import config
import database
from crm.core.exceptions import PartnerNotFoundError
from crm.core.subscription_state import SubscriptionStatus
from crm.utils.date_utils import utcnow

logger = logging.getLogger(__name__)

_CENTS = Decimal("0.01")


def _money(value: Any) -> Decimal:
    return Decimal(value or 0).quantize(_CENTS, rounding=ROUND_HALF_UP)


def conversion_rate(converted: int, added: int) -> Decimal:
    """Percent of enrolled users that converted, 2 decimals; 0 when nobody enrolled."""
    if not added:
        return Decimal("0.00")
    return (Decimal(converted) * 100 / Decimal(added)).quantize(_CENTS, rounding=ROUND_HALF_UP)


def _status_breakdown(status_counts: Dict[str, int]) -> Dict[str, int]:
    return {status.value: int(status_counts.get(status.value, 0)) for status in SubscriptionStatus}


def _region_breakdown(region_counts: Dict[str, int]) -> Dict[str, int]:
    breakdown = {region: 0 for region in config.REGIONS}
    breakdown["null"] = 0
    for region, count in region_counts.items():
        breakdown[region] = int(count)
    return breakdown


async def get_partner_stats(partner_id: Union[str, UUID], now: Optional[datetime] = None) -> Dict[str, Any]:
    """
    Raises:
        PartnerNotFoundError: unknown or malformed partner id
    """
    now = now or utcnow()
    try:
        raw = await database.get_partner_stats(partner_id, now, config.STATS_WINDOW_DAYS)
    except ValueError as e:
        raise PartnerNotFoundError(str(e)) from e
    if raw is None:
        raise PartnerNotFoundError(f"Partner {partner_id} not found")

    partner = raw["partner"]
    statuses = _status_breakdown(raw["status_counts"])
    return {
        "partner": {
            "id": partner["id"],
            "email": partner["email"],
            "full_name": partner["full_name"],
            "commission_percent": partner["commission_percent"],
            "commission_slabs": partner["commission_slabs"],
            "is_active": partner["is_active"],
            "joined_at": partner["created_at"],
            "total_revenue": partner["total_revenue"],
            "total_added": partner["total_added"],
            "total_converted": partner["total_converted"],
        },
        "users": {
            "total_users": sum(statuses.values()),
            "by_status": statuses,
            "by_region": _region_breakdown(raw["region_counts"]),
            "recent_users": raw["recent_users"],
            "recent_conversions": raw["recent_conversions"],
            "conversion_rate": conversion_rate(partner["total_converted"], partner["total_added"]),
        },
        "revenue": {
            "referred_payments_total": _money(raw["payments_total"]),
            "referred_payments_last_window": _money(raw["payments_last_window"]),
            "total_payments": raw["payments_count"],
            "commission_earned": partner["total_revenue"],
            "commission_last_window": raw["commission_last_window"],
            "currency": config.DEFAULT_CURRENCY,
        },
        "window_days": config.STATS_WINDOW_DAYS,
        "generated_at": now,
    }


async def get_admin_stats(now: Optional[datetime] = None) -> Dict[str, Any]:
    now = now or utcnow()
    raw = await database.get_admin_stats(now, config.STATS_WINDOW_DAYS)

    payments_count = raw["payments_count"]
    average = _money(Decimal(raw["payments_total"]) / payments_count) if payments_count else Decimal("0.00")
    statuses = _status_breakdown(raw["status_counts"])
    return {
        "revenue": {
            "total": _money(raw["payments_total"]),
            "last_window": _money(raw["payments_last_window"]),
            "total_payments": payments_count,
            "average_payment_amount": average,
            "currency": config.DEFAULT_CURRENCY,
        },
        "users": {
            "total_users": raw["users_total"],
            "by_status": statuses,
            "by_region": _region_breakdown(raw["region_counts"]),
            "recent_users": raw["recent_users"],
            "converted_users": raw["converted_users"],
        },
        "partners": {
            "total_partners": raw["partners_total"],
            "active_partners": raw["partners_active"],
            "total_commission_paid": raw["commission_total"],
            "commission_last_window": raw["commission_last_window"],
        },
        "window_days": config.STATS_WINDOW_DAYS,
        "generated_at": now,
    }
