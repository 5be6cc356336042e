"""
Request bodies and JSON encoding for the HTTP layer (pydantic v2).
"""
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional
from uuid import UUID

from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field


class PaymentEvent(BaseModel):
    """Confirmed charge relayed from the payment processor"""
    model_config = ConfigDict(extra="ignore")

    user_id: UUID
    amount: Decimal = Field(ge=0)
    currency: Optional[str] = None
    external_payment_id: str = Field(min_length=1, max_length=255)
    external_customer_id: Optional[str] = None
    paid_at: datetime
    # end of the paid period; a converting payment must move the trial end forward
    period_ends_at: datetime


class ProvisionUsersRequest(BaseModel):
    emails: List[str] = Field(min_length=1)
    region: Optional[str] = None
    partner_id: Optional[UUID] = None
    trial_days: Optional[int] = None


class UserUpdateRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    email: Optional[str] = None
    region: Optional[str] = None
    subscription_status: Optional[str] = None
    subscription_ends_at: Optional[datetime] = None


class SubscriptionUpdateRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    subscription_status: Optional[str] = None
    subscription_ends_at: Optional[datetime] = None


class PartnerCreateRequest(BaseModel):
    email: str
    full_name: Optional[str] = None
    commission_percent: Optional[int] = None
    commission_slabs: Optional[Dict[str, Any]] = None


class PartnerUpdateRequest(BaseModel):
    # total_revenue, total_added, total_converted are ledger-maintained
    model_config = ConfigDict(extra="forbid")

    email: Optional[str] = None
    full_name: Optional[str] = None
    commission_percent: Optional[int] = None
    commission_slabs: Optional[Dict[str, Any]] = None
    is_active: Optional[bool] = None


# Decimal money is encoded as strings
_ENCODERS = {Decimal: str}


def encode(payload: Any) -> Any:
    return jsonable_encoder(payload, custom_encoder=_ENCODERS)


def json_response(payload: Any, status_code: int = 200) -> JSONResponse:
    return JSONResponse(encode(payload), status_code=status_code)


def error_response(status_code: int, code: str, detail: str, **fields: Any) -> JSONResponse:
    body = {"code": code, "detail": detail}
    body.update(fields)
    return JSONResponse(encode(body), status_code=status_code)
