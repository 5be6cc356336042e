"""Date helpers. Everything in the ledger is aware UTC."""
from datetime import datetime, timedelta, timezone
from typing import Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(dt: Optional[datetime]) -> Optional[datetime]:
    """Naive datetimes are taken as UTC; aware ones are converted to UTC."""
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def trial_end(now: datetime, trial_days: int) -> datetime:
    """End of a trial that starts at now."""
    return ensure_utc(now) + timedelta(days=trial_days)
