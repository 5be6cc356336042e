"""
Reporting endpoints and the manual sweeper trigger.
"""
from fastapi import APIRouter, Depends

import expiry_sweeper
from crm.api.deps import require_api_token
from crm.api.schemas import error_response, json_response
from crm.core.exceptions import PartnerNotFoundError
from crm.services.stats import get_admin_stats, get_partner_stats

router = APIRouter(dependencies=[Depends(require_api_token)])


@router.get("/partners/{partner_id}/stats")
async def partner_stats(partner_id: str):
    try:
        stats = await get_partner_stats(partner_id)
    except PartnerNotFoundError as e:
        return error_response(404, "PARTNER_NOT_FOUND", str(e))
    return json_response(stats)


@router.get("/admin/stats")
async def admin_stats():
    return json_response(await get_admin_stats())


@router.post("/admin/sweep")
async def admin_sweep():
    """Run one expiry sweep now. skipped=true when another sweep holds the lock."""
    expired = await expiry_sweeper.run_sweep_once()
    return json_response({"expired": expired or 0, "skipped": expired is None})
