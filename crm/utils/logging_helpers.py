"""
Structured logging helpers for workers and request handlers.

Logging contract:
- correlation_id: per request / per worker iteration
- component: worker | api | service
- operation: e.g. expiry_sweeper_iteration
- outcome: success | degraded | failed | skipped

Failure taxonomy (classify_error):
- infra_error: DB, network, timeouts
- consistency_error: ledger row vanished mid-transaction (retriable)
- domain_error: validation and business rules
- unexpected_error: everything else
"""

import asyncio
import json
import logging
import uuid
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Optional

import asyncpg

from crm.core.exceptions import LedgerError, ConsistencyViolationError

_correlation_id: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)

logger = logging.getLogger(__name__)

_LEVEL_BY_OUTCOME = {
    "failed": logging.ERROR,
    "degraded": logging.WARNING,
}


def generate_correlation_id() -> str:
    return str(uuid.uuid4())


def set_correlation_id(correlation_id: str) -> None:
    _correlation_id.set(correlation_id)


def get_correlation_id() -> Optional[str]:
    return _correlation_id.get()


def _utc_timestamp() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def _emit(log_data: dict, level: int) -> None:
    log_data["level"] = logging.getLevelName(level)
    logger.log(level, json.dumps(log_data, default=str))


def log_worker_iteration_start(
    worker_name: str,
    iteration_number: Optional[int] = None,
    **kwargs
) -> str:
    """
    Log worker iteration start and bind a fresh correlation id.

    Returns:
        Correlation ID for this iteration
    """
    correlation_id = generate_correlation_id()
    set_correlation_id(correlation_id)

    log_data = {
        "event": "ITERATION_START",
        "worker": worker_name,
        "correlation_id": correlation_id,
        "component": "worker",
        "operation": f"{worker_name}_iteration",
        "timestamp": _utc_timestamp(),
    }
    if iteration_number is not None:
        log_data["iteration_number"] = iteration_number
    log_data.update(kwargs)

    _emit(log_data, logging.INFO)
    return correlation_id


def log_worker_iteration_end(
    worker_name: str,
    outcome: str,
    items_processed: Optional[int] = None,
    error_type: Optional[str] = None,
    duration_ms: Optional[float] = None,
    **kwargs
) -> None:
    """
    Log worker iteration end.

    Args:
        worker_name: Name of the worker
        outcome: "success" | "degraded" | "failed" | "skipped"
        items_processed: Rows touched in this iteration
        error_type: classify_error() result when the iteration failed
        duration_ms: Wall time of the iteration
    """
    log_data = {
        "event": "ITERATION_END",
        "worker": worker_name,
        "correlation_id": get_correlation_id(),
        "component": "worker",
        "operation": f"{worker_name}_iteration",
        "outcome": outcome,
        "timestamp": _utc_timestamp(),
    }
    if items_processed is not None:
        log_data["items_processed"] = items_processed
    if error_type:
        log_data["error_type"] = error_type
    if duration_ms is not None:
        log_data["duration_ms"] = round(duration_ms, 2)
    log_data.update(kwargs)

    _emit(log_data, _LEVEL_BY_OUTCOME.get(outcome, logging.INFO))


def classify_error(exception: BaseException) -> str:
    """Map an exception onto the failure taxonomy."""
    from crm.services.payments.exceptions import PaymentServiceError
    from crm.services.users.exceptions import UserServiceError
    from crm.services.subscriptions.exceptions import SubscriptionServiceError
    from crm.services.partners.exceptions import PartnerServiceError
    from crm.services.stats.exceptions import StatsServiceError

    if isinstance(exception, ConsistencyViolationError):
        return "consistency_error"

    if isinstance(exception, (
        LedgerError,
        PaymentServiceError,
        UserServiceError,
        SubscriptionServiceError,
        PartnerServiceError,
        StatsServiceError,
        ValueError,
    )):
        return "domain_error"

    if isinstance(exception, (
        asyncpg.PostgresError,
        asyncpg.InterfaceError,
        asyncio.TimeoutError,
        ConnectionError,
        OSError,
    )):
        return "infra_error"

    return "unexpected_error"
