"""
Partner Service Layer

Admin management of referral partners: profile, flat commission rate, tiered
schedule and active flag. The running aggregates (total_revenue,
total_added, total_converted) are written only by the ledger accumulators and
are never accepted here.
"""

import logging
from typing import Any, Dict, Optional, Union
from uuid import UUID

import asyncpg

import config
import database
from crm.core.commission import validate_commission_slabs
from crm.core.exceptions import PartnerNotFoundError
from crm.services.partners.exceptions import (
    InvalidPartnerDataError,
    PartnerAlreadyExistsError,
)
from crm.services.users.service import normalize_email
from crm.services.users.exceptions import InvalidUserDataError

logger = logging.getLogger(__name__)

UPDATABLE_FIELDS = frozenset({"email", "full_name", "commission_percent", "commission_slabs", "is_active"})
AGGREGATE_FIELDS = frozenset({"total_revenue", "total_added", "total_converted"})


def validate_commission_percent(percent: Any) -> int:
    """
    Raises:
        InvalidPartnerDataError: not an integer in 0..MAX_COMMISSION_PERCENT
    """
    if isinstance(percent, bool) or not isinstance(percent, int):
        raise InvalidPartnerDataError("commission_percent must be an integer")
    if percent < 0 or percent > config.MAX_COMMISSION_PERCENT:
        raise InvalidPartnerDataError(
            f"commission_percent must be between 0 and {config.MAX_COMMISSION_PERCENT}"
        )
    return percent


def _validate_email(email: str) -> str:
    try:
        return normalize_email(email)
    except InvalidUserDataError as e:
        raise InvalidPartnerDataError(str(e)) from e


def _validate_slabs(commission_slabs: Any) -> Optional[Dict[str, Any]]:
    if commission_slabs is None:
        return None
    try:
        return validate_commission_slabs(commission_slabs)
    except ValueError as e:
        raise InvalidPartnerDataError(f"Invalid commission_slabs: {e}") from e


async def create_partner(
    email: str,
    full_name: Optional[str] = None,
    commission_percent: Optional[int] = None,
    commission_slabs: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    """
    Register a partner with zeroed aggregates.

    Raises:
        InvalidPartnerDataError: validation failed
        PartnerAlreadyExistsError: email already registered
    """
    email = _validate_email(email)
    percent = validate_commission_percent(
        config.DEFAULT_COMMISSION_PERCENT if commission_percent is None else commission_percent
    )
    slabs = _validate_slabs(commission_slabs)
    if full_name is not None:
        full_name = full_name.strip() or None

    try:
        return await database.create_partner(
            email=email,
            full_name=full_name,
            commission_percent=percent,
            commission_slabs=slabs,
        )
    except asyncpg.UniqueViolationError as e:
        raise PartnerAlreadyExistsError("A partner with this email already exists") from e


async def get_partner(partner_id: Union[str, UUID]) -> Dict[str, Any]:
    """
    Raises:
        PartnerNotFoundError: unknown or malformed id
    """
    try:
        partner = await database.get_partner(partner_id)
    except ValueError as e:
        raise PartnerNotFoundError(str(e)) from e
    if partner is None:
        raise PartnerNotFoundError(f"Partner {partner_id} not found")
    return partner


async def update_partner(partner_id: Union[str, UUID], **fields: Any) -> Dict[str, Any]:
    """
    Update profile fields. Pass only the fields to change; commission_slabs=None
    clears the schedule.

    Raises:
        InvalidPartnerDataError: aggregate/unknown field or bad value
        PartnerNotFoundError: no such partner
        PartnerAlreadyExistsError: email taken
    """
    aggregates = AGGREGATE_FIELDS & set(fields)
    if aggregates:
        raise InvalidPartnerDataError(
            f"Partner aggregates are maintained by the ledger and cannot be set: {sorted(aggregates)}"
        )
    unknown = set(fields) - UPDATABLE_FIELDS
    if unknown:
        raise InvalidPartnerDataError(f"Unknown partner fields: {sorted(unknown)}")

    changes: Dict[str, Any] = {}
    if "email" in fields:
        changes["email"] = _validate_email(fields["email"])
    if "full_name" in fields:
        full_name = fields["full_name"]
        changes["full_name"] = full_name.strip() if isinstance(full_name, str) else None
    if "commission_percent" in fields:
        changes["commission_percent"] = validate_commission_percent(fields["commission_percent"])
    if "commission_slabs" in fields:
        changes["commission_slabs"] = _validate_slabs(fields["commission_slabs"])
    if "is_active" in fields:
        if not isinstance(fields["is_active"], bool):
            raise InvalidPartnerDataError("is_active must be a boolean")
        changes["is_active"] = fields["is_active"]

    try:
        return await database.update_partner(partner_id, changes)
    except asyncpg.UniqueViolationError as e:
        raise PartnerAlreadyExistsError("A partner with this email already exists") from e
    except ValueError as e:
        raise PartnerNotFoundError(str(e)) from e
