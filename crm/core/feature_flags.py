"""
Global operational flags (kill switches).

Immutable, read once from the environment at first use. Disabled means
log + skip, never an exception.

- FEATURE_PAYMENTS_ENABLED (default: true): payment webhook records payments;
  when off the webhook answers 503 so the processor retries later.
- FEATURE_BACKGROUND_WORKERS_ENABLED (default: true): expiry sweeper loop.
- FEATURE_TIERED_COMMISSION_ENABLED (default: false): resolve the commission
  rate from the partner's slab schedule instead of the flat percent.
"""

import os
import logging
from dataclasses import dataclass
from typing import Optional

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class FeatureFlags:
    payments_enabled: bool
    background_workers_enabled: bool
    tiered_commission_enabled: bool

    def __post_init__(self):
        for field_name, field_value in self.__dict__.items():
            if not isinstance(field_value, bool):
                raise ValueError(f"Feature flag {field_name} must be boolean, got {type(field_value)}")


_feature_flags: Optional[FeatureFlags] = None


def _parse_bool_env(key: str, default: bool = True) -> bool:
    value = os.getenv(key, "").lower().strip()
    if value in ("true", "1", "yes", "on"):
        return True
    elif value in ("false", "0", "no", "off"):
        return False
    else:
        return default


def get_feature_flags() -> FeatureFlags:
    """Get global feature flags (singleton)."""
    global _feature_flags

    if _feature_flags is None:
        _feature_flags = FeatureFlags(
            payments_enabled=_parse_bool_env("FEATURE_PAYMENTS_ENABLED", default=True),
            background_workers_enabled=_parse_bool_env("FEATURE_BACKGROUND_WORKERS_ENABLED", default=True),
            tiered_commission_enabled=_parse_bool_env("FEATURE_TIERED_COMMISSION_ENABLED", default=False),
        )
        logger.info(
            f"[FEATURE_FLAGS] Initialized: "
            f"payments={_feature_flags.payments_enabled}, "
            f"background_workers={_feature_flags.background_workers_enabled}, "
            f"tiered_commission={_feature_flags.tiered_commission_enabled}"
        )

    return _feature_flags


def reset_feature_flags() -> None:
    """Drop the cached flags so the next call re-reads the environment (tests)."""
    global _feature_flags
    _feature_flags = None
