import os
import sys

# ====================================================================================
# ENVIRONMENT CONFIGURATION: PROD / STAGE / LOCAL isolation through prefixes
# ====================================================================================
# Every environment variable is read with the environment prefix:
#   - PROD: PROD_DATABASE_URL, PROD_API_TOKEN, PROD_WEBHOOK_SECRET
#   - STAGE: STAGE_DATABASE_URL, STAGE_API_TOKEN, STAGE_WEBHOOK_SECRET
#   - LOCAL: LOCAL_DATABASE_URL, LOCAL_API_TOKEN, LOCAL_WEBHOOK_SECRET
#
# A STAGE process can never pick up PROD_DATABASE_URL even if it is set.
# ====================================================================================

APP_ENV = os.getenv("APP_ENV", "prod").lower()
if APP_ENV not in ("prod", "stage", "local"):
    print(f"ERROR: Invalid APP_ENV={APP_ENV}. Must be one of: prod, stage, local", file=sys.stderr)
    sys.exit(1)

IS_LOCAL = APP_ENV == "local"
IS_STAGE = APP_ENV == "stage"
IS_PROD = APP_ENV == "prod"


def env(key: str, default: str = "") -> str:
    """
    Read an environment variable with the environment prefix.

    Args:
        key: Variable name without prefix (e.g. "DATABASE_URL")
        default: Value returned when the variable is not set

    Example:
        env("DATABASE_URL") -> value of STAGE_DATABASE_URL when APP_ENV=stage
    """
    env_key = f"{APP_ENV.upper()}_{key}"
    return os.getenv(env_key, default)


# Unprefixed secrets are refused so PROD and STAGE settings cannot be mixed up
_direct_usage_vars = ["DATABASE_URL", "API_TOKEN", "WEBHOOK_SECRET"]
for var in _direct_usage_vars:
    if os.getenv(var):
        print(f"ERROR: Direct usage of {var} is FORBIDDEN!", file=sys.stderr)
        print(f"ERROR: Use {APP_ENV.upper()}_{var} instead (via env('{var}'))", file=sys.stderr)
        sys.exit(1)

print(f"INFO: Config loaded for environment: {APP_ENV.upper()}", flush=True)


def _require(key: str) -> str:
    value = env(key)
    if not value:
        if IS_PROD:
            print(f"ERROR: {APP_ENV.upper()}_{key} is REQUIRED in PROD!", file=sys.stderr)
            sys.exit(1)
        print(f"WARNING: {APP_ENV.upper()}_{key} is not set", file=sys.stderr)
    return value


# ====================================================================================
# SECRETS
# ====================================================================================
# Validated at startup and never logged.
# ====================================================================================

DATABASE_URL = _require("DATABASE_URL")

# Shared token for internal callers (admin panel, partner portal backend)
API_TOKEN = _require("API_TOKEN")

# Shared secret the payment processor relay sends in X-Webhook-Secret
WEBHOOK_SECRET = _require("WEBHOOK_SECRET")

# Optional: Redis is only used to keep a single sweeper instance per interval
REDIS_URL = env("REDIS_URL", default="")

# ====================================================================================
# HTTP SERVER
# ====================================================================================

HTTP_HOST = env("HTTP_HOST", default="0.0.0.0")
HTTP_PORT = int(os.getenv("PORT") or env("HTTP_PORT") or "8080")

# ====================================================================================
# BUSINESS SETTINGS
# ====================================================================================

# Trial length for newly provisioned users (days)
try:
    DEFAULT_TRIAL_DAYS = int(env("DEFAULT_TRIAL_DAYS", default="15"))
except ValueError:
    DEFAULT_TRIAL_DAYS = 15
if DEFAULT_TRIAL_DAYS < 1:
    DEFAULT_TRIAL_DAYS = 15

DEFAULT_COMMISSION_PERCENT = 10
MAX_COMMISSION_PERCENT = 50

REGIONS = ("India", "International")

DEFAULT_CURRENCY = "usd"

# Expiry sweeper cadence, clamped to 1 minute .. 1 day
SWEEP_INTERVAL_SECONDS = int(env("SWEEP_INTERVAL_SECONDS", default="3600"))
SWEEP_INTERVAL_SECONDS = max(60, min(86400, SWEEP_INTERVAL_SECONDS))

# Reporting window for "last month" figures
STATS_WINDOW_DAYS = 30
