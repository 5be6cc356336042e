"""
User endpoints: bulk provisioning, profile/subscription updates and the
subscription status lookup used by client apps.
"""
import logging

from fastapi import APIRouter, Depends

from crm.api.deps import require_api_token
from crm.api.schemas import (
    ProvisionUsersRequest,
    SubscriptionUpdateRequest,
    UserUpdateRequest,
    error_response,
    json_response,
)
from crm.core.exceptions import (
    IllegalStatusTransitionError,
    PartnerNotFoundError,
    UnknownUserError,
    UserAlreadyExistsError,
)
from crm.services.subscriptions import (
    get_subscription_status,
    update_subscription_status,
    InvalidSubscriptionUpdateError,
)
from crm.services.users import (
    provision_users,
    update_user,
    InvalidUserDataError,
    PartnerInactiveError,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/users", dependencies=[Depends(require_api_token)])


@router.post("")
async def create_users(body: ProvisionUsersRequest):
    try:
        summary = await provision_users(
            body.emails,
            region=body.region,
            partner_id=body.partner_id,
            trial_days=body.trial_days,
        )
    except InvalidUserDataError as e:
        return error_response(400, "INVALID_USER_DATA", str(e))
    except PartnerNotFoundError as e:
        return error_response(404, "PARTNER_NOT_FOUND", str(e))
    except PartnerInactiveError as e:
        return error_response(403, "PARTNER_INACTIVE", str(e))

    def _entries(results):
        return [{"email": r.email, "user_id": r.user_id, "reason": r.reason} for r in results]

    return json_response(
        {
            "region": summary.region,
            "trial_days": summary.trial_days,
            "subscription_ends_at": summary.subscription_ends_at,
            "created": _entries(summary.created),
            "existing": _entries(summary.existing),
            "failed": _entries(summary.failed),
        },
        status_code=summary.http_status,
    )


@router.patch("/{user_id}")
async def patch_user(user_id: str, body: UserUpdateRequest):
    try:
        user = await update_user(user_id, **body.model_dump(exclude_unset=True))
    except IllegalStatusTransitionError as e:
        logger.warning(f"USER_STATUS_REGRESSION_REJECTED [user={user_id}, {e.old_status} -> {e.new_status}]")
        return error_response(
            422, "ILLEGAL_STATUS_TRANSITION", str(e),
            old_status=e.old_status, new_status=e.new_status,
        )
    except InvalidUserDataError as e:
        return error_response(400, "INVALID_USER_DATA", str(e))
    except UnknownUserError as e:
        return error_response(404, "UNKNOWN_USER", str(e))
    except UserAlreadyExistsError as e:
        return error_response(409, "USER_ALREADY_EXISTS", str(e))
    return json_response(user)


@router.get("/{user_id}/subscription-status")
async def subscription_status(user_id: str):
    status = await get_subscription_status(user_id)
    return json_response({"user_id": user_id, "subscription_status": status})


@router.patch("/{user_id}/subscription")
async def patch_subscription(user_id: str, body: SubscriptionUpdateRequest):
    """Status / end-date change only; profile fields go through PATCH /users/{user_id}."""
    try:
        user = await update_subscription_status(user_id, **body.model_dump(exclude_unset=True))
    except IllegalStatusTransitionError as e:
        logger.warning(f"USER_STATUS_REGRESSION_REJECTED [user={user_id}, {e.old_status} -> {e.new_status}]")
        return error_response(
            422, "ILLEGAL_STATUS_TRANSITION", str(e),
            old_status=e.old_status, new_status=e.new_status,
        )
    except InvalidSubscriptionUpdateError as e:
        return error_response(400, "INVALID_SUBSCRIPTION_UPDATE", str(e))
    except UnknownUserError as e:
        return error_response(404, "UNKNOWN_USER", str(e))
    return json_response(user)
