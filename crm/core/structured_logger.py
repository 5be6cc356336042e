"""
Structured log events for ledger operations.

Contract for every critical ledger log line:
- component (payments, users, partners, sweeper, http)
- operation (record_payment, provision_users, ...)
- outcome (recorded, duplicate, converted, rejected, failed, ...)
- correlation_id, duration_ms, reason: optional, omitted when None

Never log secrets, tokens or full request bodies. Emails are masked.
"""
from logging import Logger
from typing import Any, Optional


def mask_email(email: Optional[str]) -> Optional[str]:
    """a***@example.com"""
    if not email or "@" not in email:
        return email
    local, _, domain = email.partition("@")
    return f"{local[:1]}***@{domain}"


def log_event(
    logger: Logger,
    *,
    component: str,
    operation: str,
    outcome: str,
    correlation_id: Optional[str] = None,
    duration_ms: Optional[float] = None,
    reason: Optional[str] = None,
    level: str = "info",
    message: Optional[str] = None,
    **fields: Any,
) -> None:
    """
    Emit one structured event.

    Extra keyword fields (user_id, partner_id, ...) are attached to the
    record and appended to the message as key=value pairs.
    """
    extra: dict = {
        "component": component,
        "operation": operation,
        "outcome": outcome,
    }
    if correlation_id is not None:
        extra["correlation_id"] = str(correlation_id)
    if duration_ms is not None:
        extra["duration_ms"] = round(duration_ms, 2)
    if reason is not None:
        extra["reason"] = reason
    for key, value in fields.items():
        if value is not None:
            extra[key] = str(value)

    msg = message or f"{component} {operation} outcome={outcome}"
    details = " ".join(f"{k}={v}" for k, v in extra.items() if k not in ("component", "operation", "outcome"))
    if details:
        msg = f"{msg} [{details}]"
    log_method = getattr(logger, level.lower(), logger.info)
    log_method(msg, extra=extra)
