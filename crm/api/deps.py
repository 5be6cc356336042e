"""
Request authentication dependencies.

Internal callers send X-Api-Token, the payment processor relay sends
X-Webhook-Secret. An unconfigured secret disables the endpoint (503) instead
of accepting anything.
"""
import hmac
import logging
from typing import Optional

from fastapi import Header, HTTPException, Request

import config

logger = logging.getLogger(__name__)


def _client_host(request: Request) -> str:
    return request.client.host if request.client else "unknown"


def _check_secret(expected: Optional[str], provided: Optional[str], name: str, request: Request) -> None:
    if not expected:
        logger.error(f"{name}_NOT_CONFIGURED path={request.url.path}")
        raise HTTPException(status_code=503, detail="Endpoint not configured")
    if not provided or not hmac.compare_digest(provided.encode(), expected.encode()):
        logger.warning(f"{name}_MISMATCH ip={_client_host(request)} path={request.url.path}")
        raise HTTPException(status_code=403, detail="Forbidden")


async def require_api_token(
    request: Request,
    x_api_token: Optional[str] = Header(default=None),
) -> None:
    _check_secret(config.API_TOKEN, x_api_token, "API_TOKEN", request)


async def require_webhook_secret(
    request: Request,
    x_webhook_secret: Optional[str] = Header(default=None),
) -> None:
    _check_secret(config.WEBHOOK_SECRET, x_webhook_secret, "WEBHOOK_SECRET", request)
