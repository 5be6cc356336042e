"""
Partner management endpoints (admin).
"""
import logging

from fastapi import APIRouter, Depends

from crm.api.deps import require_api_token
from crm.api.schemas import (
    PartnerCreateRequest,
    PartnerUpdateRequest,
    error_response,
    json_response,
)
from crm.core.exceptions import PartnerNotFoundError
from crm.services.partners import (
    create_partner,
    get_partner,
    update_partner,
    InvalidPartnerDataError,
    PartnerAlreadyExistsError,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/partners", dependencies=[Depends(require_api_token)])


@router.post("")
async def post_partner(body: PartnerCreateRequest):
    try:
        partner = await create_partner(
            body.email,
            full_name=body.full_name,
            commission_percent=body.commission_percent,
            commission_slabs=body.commission_slabs,
        )
    except InvalidPartnerDataError as e:
        return error_response(400, "INVALID_PARTNER_DATA", str(e))
    except PartnerAlreadyExistsError as e:
        return error_response(409, "PARTNER_ALREADY_EXISTS", str(e))
    logger.info(f"PARTNER_CREATED [partner={partner['id']}]")
    return json_response(partner, status_code=201)


@router.get("/{partner_id}")
async def read_partner(partner_id: str):
    try:
        partner = await get_partner(partner_id)
    except PartnerNotFoundError as e:
        return error_response(404, "PARTNER_NOT_FOUND", str(e))
    return json_response(partner)


@router.patch("/{partner_id}")
async def patch_partner(partner_id: str, body: PartnerUpdateRequest):
    fields = body.model_dump(exclude_unset=True)
    if not fields:
        return error_response(400, "INVALID_PARTNER_DATA", "No fields to update")
    try:
        partner = await update_partner(partner_id, **fields)
    except InvalidPartnerDataError as e:
        return error_response(400, "INVALID_PARTNER_DATA", str(e))
    except PartnerNotFoundError as e:
        return error_response(404, "PARTNER_NOT_FOUND", str(e))
    except PartnerAlreadyExistsError as e:
        return error_response(409, "PARTNER_ALREADY_EXISTS", str(e))
    return json_response(partner)
