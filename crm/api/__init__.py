"""
API module: HTTP endpoints for the ledger, webhooks and health.
"""
import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

import database
from crm.api import partners, payment_webhook, stats, users
from crm.utils.logging_helpers import generate_correlation_id, set_correlation_id

logger = logging.getLogger(__name__)

app = FastAPI(title="Partner CRM ledger")
app.include_router(payment_webhook.router)
app.include_router(users.router)
app.include_router(partners.router)
app.include_router(stats.router)


@app.middleware("http")
async def bind_correlation_id(request: Request, call_next):
    correlation_id = request.headers.get("x-request-id") or generate_correlation_id()
    set_correlation_id(correlation_id)
    response = await call_next(request)
    response.headers["X-Request-Id"] = correlation_id
    return response


@app.exception_handler(Exception)
async def unhandled_exception(request: Request, exc: Exception):
    logger.exception(f"HTTP_UNHANDLED_ERROR path={request.url.path} error={type(exc).__name__}")
    return JSONResponse({"code": "INTERNAL_ERROR", "detail": "Internal server error"}, status_code=500)


@app.get("/health")
async def health():
    """
    Reads only the DB_READY flag; never touches the database.
    """
    db_ready = database.DB_READY
    return JSONResponse({"status": "ok" if db_ready else "degraded", "db_ready": db_ready})
