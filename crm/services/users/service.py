"""
User Service Layer

Provisioning of end users (bulk, by admin or partner) and profile updates.
Every created row goes through database.create_user_subscription, so the
referring partner's total_added is incremented in the same transaction.
"""

import logging
import re
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence, Union

import asyncpg

import config
import database
from crm.core.exceptions import (
    PartnerNotFoundError,
    UserAlreadyExistsError,
)
from crm.core.structured_logger import log_event, mask_email
from crm.services.users.exceptions import (
    InvalidUserDataError,
    PartnerInactiveError,
)
from crm.utils.date_utils import trial_end, utcnow

logger = logging.getLogger(__name__)

EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
MAX_BATCH_SIZE = 500

REASON_EXISTS = "User already exists"
REASON_INVALID_EMAIL = "Invalid email format"


# ====================================================================================
# Result Types
# ====================================================================================

@dataclass
class ProvisionResult:
    """Outcome for one email of a provisioning batch"""
    email: str
    status: str  # "created" | "existing" | "failed"
    user_id: Optional[uuid.UUID] = None
    reason: Optional[str] = None


@dataclass
class ProvisionSummary:
    """Outcome of a provisioning batch"""
    region: Optional[str]
    trial_days: int
    subscription_ends_at: datetime
    results: List[ProvisionResult] = field(default_factory=list)

    def _with_status(self, status: str) -> List[ProvisionResult]:
        return [r for r in self.results if r.status == status]

    @property
    def created(self) -> List[ProvisionResult]:
        return self._with_status("created")

    @property
    def existing(self) -> List[ProvisionResult]:
        return self._with_status("existing")

    @property
    def failed(self) -> List[ProvisionResult]:
        return self._with_status("failed")

    @property
    def http_status(self) -> int:
        """201 if anything was created, 200 if only duplicates, else 400."""
        if self.created:
            return 201
        if self.existing:
            return 200
        return 400


# ====================================================================================
# Validation
# ====================================================================================

def normalize_email(email: str) -> str:
    """
    Raises:
        InvalidUserDataError: not an email address
    """
    normalized = (email or "").strip().lower()
    if not EMAIL_RE.match(normalized):
        raise InvalidUserDataError(REASON_INVALID_EMAIL)
    return normalized


def validate_region(region: Optional[str]) -> Optional[str]:
    if region is None:
        return None
    if region not in config.REGIONS:
        raise InvalidUserDataError(f"Region must be one of {', '.join(config.REGIONS)}")
    return region


def validate_trial_days(trial_days: Optional[int]) -> int:
    if trial_days is None:
        return config.DEFAULT_TRIAL_DAYS
    if isinstance(trial_days, bool) or not isinstance(trial_days, int) or trial_days < 1:
        raise InvalidUserDataError("trial_days must be a positive integer")
    return trial_days


# ====================================================================================
# Provisioning
# ====================================================================================

async def provision_users(
    emails: Sequence[str],
    region: Optional[str] = None,
    partner_id: Optional[Union[str, uuid.UUID]] = None,
    trial_days: Optional[int] = None,
    now: Optional[datetime] = None,
) -> ProvisionSummary:
    """
    Create one subscription row per email, status 'added', trial ending
    trial_days from now.

    Per-email failures do not abort the batch; they are reported in the
    summary. Problems with the batch itself raise.

    Raises:
        InvalidUserDataError: empty/oversized batch, bad region or trial_days
        PartnerNotFoundError: partner_id unknown
        PartnerInactiveError: partner deactivated
    """
    if not emails:
        raise InvalidUserDataError("At least one email is required")
    if len(emails) > MAX_BATCH_SIZE:
        raise InvalidUserDataError(f"At most {MAX_BATCH_SIZE} users per request")
    region = validate_region(region)
    trial_days = validate_trial_days(trial_days)

    if partner_id is not None:
        try:
            partner = await database.get_partner(partner_id)
        except ValueError as e:
            raise InvalidUserDataError(str(e)) from e
        if partner is None:
            raise PartnerNotFoundError(f"Partner {partner_id} not found")
        if not partner["is_active"]:
            raise PartnerInactiveError(f"Partner {partner_id} is inactive")

    ends_at = trial_end(now or utcnow(), trial_days)
    summary = ProvisionSummary(region=region, trial_days=trial_days, subscription_ends_at=ends_at)

    for raw_email in emails:
        summary.results.append(
            await _provision_one(raw_email, region, partner_id, ends_at)
        )

    log_event(
        logger,
        component="users",
        operation="provision_users",
        outcome="success" if summary.http_status != 400 else "failed",
        partner_id=partner_id,
        created_count=len(summary.created),
        existing_count=len(summary.existing),
        failed_count=len(summary.failed),
    )
    return summary


async def _provision_one(
    raw_email: str,
    region: Optional[str],
    partner_id: Optional[Union[str, uuid.UUID]],
    ends_at: datetime,
) -> ProvisionResult:
    try:
        email = normalize_email(raw_email)
    except InvalidUserDataError as e:
        return ProvisionResult(email=raw_email, status="failed", reason=str(e))

    user_id = uuid.uuid4()
    try:
        await database.create_user_subscription(
            user_id=user_id,
            email=email,
            region=region,
            partner_id=partner_id,
            subscription_ends_at=ends_at,
        )
    except UserAlreadyExistsError:
        return ProvisionResult(email=email, status="existing", reason=REASON_EXISTS)
    except PartnerNotFoundError as e:
        logger.error(f"PROVISION_PARTNER_VANISHED [email={mask_email(email)}, partner={partner_id}]")
        return ProvisionResult(email=email, status="failed", reason=str(e))
    except asyncpg.PostgresError as e:
        logger.error(
            f"PROVISION_FAILED [email={mask_email(email)}, error={type(e).__name__}: {str(e)[:100]}]"
        )
        return ProvisionResult(email=email, status="failed", reason="Database error")

    return ProvisionResult(email=email, status="created", user_id=user_id)


# ====================================================================================
# Reads / updates
# ====================================================================================

async def get_user(user_id: Union[str, uuid.UUID]) -> Optional[Dict[str, Any]]:
    return await database.get_user_subscription(user_id)


async def update_user(
    user_id: Union[str, uuid.UUID],
    email: Optional[str] = None,
    region: Optional[str] = None,
    subscription_status: Optional[str] = None,
    subscription_ends_at: Optional[datetime] = None,
) -> Dict[str, Any]:
    """
    Update profile and subscription fields of one user.

    Raises:
        InvalidUserDataError: bad email, region or status value
        UnknownUserError: no such user
        IllegalStatusTransitionError: regression to 'added'
        UserAlreadyExistsError: email taken
    """
    if email is not None:
        email = normalize_email(email)
    region = validate_region(region)
    try:
        return await database.update_user(
            user_id,
            email=email,
            region=region,
            subscription_status=subscription_status,
            subscription_ends_at=subscription_ends_at,
        )
    except ValueError as e:
        raise InvalidUserDataError(str(e)) from e
