import asyncpg
import json
import os
import sys
import uuid as uuid_lib
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Optional, Dict, Any, Union
import logging
import config
from crm.utils.retry import retry_async
from crm.utils.date_utils import ensure_utc, utcnow
from crm.core.commission import (
    compute_commission,
    resolve_commission_percent,
    to_decimal,
)
from crm.core.exceptions import (
    ConsistencyViolationError,
    IllegalStatusTransitionError,
    UnknownUserError,
    PartnerNotFoundError,
    UserAlreadyExistsError,
)
from crm.core.feature_flags import get_feature_flags
from crm.core.subscription_state import (
    SubscriptionStatus,
    STATUS_TRANSITION_CONSTRAINT,
    ensure_transition_allowed,
)

logger = logging.getLogger(__name__)

# ====================================================================================
# SAFE STARTUP GUARD: DB readiness flag
# ====================================================================================
# False until init_db() has connected, migrated and recreated the pool.
# The HTTP layer reports degraded health while it is False.
# ====================================================================================
DB_READY: bool = False

MONEY_QUANT = Decimal("0.01")

UserId = Union[str, uuid_lib.UUID]


def _as_uuid(value: UserId, field: str = "id") -> uuid_lib.UUID:
    """
    Raises:
        ValueError: value is not a UUID
    """
    if isinstance(value, uuid_lib.UUID):
        return value
    try:
        return uuid_lib.UUID(str(value))
    except (ValueError, AttributeError, TypeError):
        raise ValueError(f"Invalid {field}: {value!r}") from None


def _as_money(value: Union[Decimal, int, float, str]) -> Decimal:
    """
    Payment amounts are stored as numeric(14,2). Reject anything that would be
    rounded by the column, so the amount credited equals the amount stored.
    """
    amount = to_decimal(value)
    if amount < 0:
        raise ValueError(f"Payment amount must be non-negative, got {amount}")
    quantized = amount.quantize(MONEY_QUANT)
    if quantized != amount:
        raise ValueError(f"Payment amount has more than 2 decimal places: {amount}")
    return quantized


def _row_to_dict(row: Optional[asyncpg.Record]) -> Optional[Dict[str, Any]]:
    if row is None:
        return None
    return dict(row)


# ====================================================================================
# POOL
# ====================================================================================

DATABASE_URL = config.DATABASE_URL


def _get_pool_config() -> dict:
    """asyncpg.create_pool kwargs; single source of truth for every pool."""
    return {
        "min_size": int(os.getenv("DB_POOL_MIN_SIZE", "2")),
        "max_size": int(os.getenv("DB_POOL_MAX_SIZE", "10")),
        "max_inactive_connection_lifetime": 300,
        "timeout": int(os.getenv("DB_POOL_ACQUIRE_TIMEOUT", "10")),
        "command_timeout": int(os.getenv("DB_POOL_COMMAND_TIMEOUT", "30")),
        "init": _init_connection,
    }


async def _init_connection(conn: asyncpg.Connection) -> None:
    # commission_slabs is jsonb; hand it to callers as Python objects
    await conn.set_type_codec(
        "jsonb",
        encoder=json.dumps,
        decoder=json.loads,
        schema="pg_catalog",
    )


if not DATABASE_URL:
    if config.IS_PROD:
        print(f"ERROR: {config.APP_ENV.upper()}_DATABASE_URL is REQUIRED in PROD!", file=sys.stderr)
        sys.exit(1)
    logger.warning(f"{config.APP_ENV.upper()}_DATABASE_URL is not set - running in degraded mode")

_pool: Optional[asyncpg.Pool] = None


async def _create_pool() -> asyncpg.Pool:
    pool_config = _get_pool_config()
    # Only connection-level failures are retried; bad credentials fail fast
    pool = await retry_async(
        lambda: asyncpg.create_pool(DATABASE_URL, **pool_config),
        retries=2,
        base_delay=0.5,
        max_delay=5.0,
    )
    logger.info(
        "DB_POOL_CONFIG min=%s max=%s acquire_timeout=%s command_timeout=%s",
        pool_config["min_size"], pool_config["max_size"],
        pool_config["timeout"], pool_config["command_timeout"],
    )
    return pool


async def get_pool() -> asyncpg.Pool:
    """
    Получить пул соединений, создав его при необходимости

    Raises:
        RuntimeError: DATABASE_URL is not configured
        asyncpg errors: pool creation failed after retries
    """
    global _pool
    if not DATABASE_URL:
        raise RuntimeError(f"{config.APP_ENV.upper()}_DATABASE_URL is not configured")
    if _pool is None:
        _pool = await _create_pool()
    return _pool


async def close_pool():
    """Закрыть пул соединений"""
    global _pool, DB_READY
    if _pool:
        await _pool.close()
        _pool = None
        DB_READY = False
        logger.info("Database connection pool closed")


async def init_db() -> bool:
    """
    Connect, apply migrations, and mark the database ready.

    Idempotent: returns True immediately when already initialized.

    Returns:
        True on success, False when the database is unreachable or a
        migration failed (the service then runs degraded)
    """
    global DB_READY, _pool

    if DB_READY:
        logger.info("Database already initialized (DB_READY=True), skipping init")
        return True

    if not DATABASE_URL:
        logger.error("DATABASE_URL not configured")
        return False

    try:
        _pool = await _create_pool()
    except Exception as e:
        logger.error(f"DB_INIT_FAILED stage=pool error={type(e).__name__}: {e}")
        return False

    import migrations
    if not await migrations.run_migrations_safe(_pool):
        logger.error("DB_INIT_FAILED stage=migrations")
        return False

    # Schema changes invalidate cached prepared statements; start from a clean pool
    try:
        await _pool.close()
        _pool = await _create_pool()
    except Exception as e:
        logger.error(f"DB_INIT_FAILED stage=pool_recreate error={type(e).__name__}: {e}")
        return False

    DB_READY = True
    logger.info("DB_READY database initialized and migrated")
    return True


# ====================================================================================
# CONVERSION TRIGGER + COMMISSION ACCUMULATOR
# ====================================================================================
# One payment event = one transaction:
#   1. insert payment (idempotent on external_payment_id)
#   2. conditional conversion UPDATE ... WHERE converted_at IS NULL RETURNING partner_id
#   3. commission credit (only for the single winning execution)
#   4. optional paid-through extension
# Anything raised inside rolls back all of it.
# ====================================================================================

async def record_payment(
    user_id: UserId,
    amount: Union[Decimal, int, str],
    currency: str,
    external_payment_id: str,
    paid_at: datetime,
    external_customer_id: Optional[str] = None,
    period_ends_at: Optional[datetime] = None,
) -> Dict[str, Any]:
    """
    Record one confirmed charge and apply conversion accounting.

    Args:
        user_id: Paying user (user_subscriptions.user_id)
        amount: Charged amount, at most 2 decimal places
        currency: ISO currency code, stored lower-case
        external_payment_id: Processor's idempotency reference
        paid_at: Charge time; becomes converted_at for the converting payment
        external_customer_id: Processor customer reference (optional)
        period_ends_at: Paid-through date reported by the processor (optional)

    Returns:
        {
            "payment_id": UUID | None,
            "duplicate": bool,            # reference already recorded, nothing done
            "converted": bool,            # this payment performed the conversion
            "partner_id": UUID | None,    # credited partner, if any
            "commission_percent": Decimal | None,
            "commission_amount": Decimal | None,
        }

    Raises:
        ValueError: invalid amount / ids
        UnknownUserError: no subscription row for user_id
        ConsistencyViolationError: referring partner vanished mid-transaction
        asyncpg errors: propagated after rollback
    """
    user_uuid = _as_uuid(user_id, "user_id")
    amount_dec = _as_money(amount)
    if not external_payment_id:
        raise ValueError("external_payment_id is required")
    paid_at = ensure_utc(paid_at)
    period_ends_at = ensure_utc(period_ends_at)
    currency = (currency or config.DEFAULT_CURRENCY).strip().lower()

    result: Dict[str, Any] = {
        "payment_id": None,
        "duplicate": False,
        "converted": False,
        "partner_id": None,
        "commission_percent": None,
        "commission_amount": None,
    }

    pool = await get_pool()
    async with pool.acquire() as conn:
        try:
            async with conn.transaction():
                try:
                    payment_id = await conn.fetchval(
                        """INSERT INTO payments
                           (id, user_id, amount, currency, external_payment_id, external_customer_id, paid_at)
                           VALUES ($1, $2, $3, $4, $5, $6, $7)
                           ON CONFLICT (external_payment_id) DO NOTHING
                           RETURNING id""",
                        uuid_lib.uuid4(), user_uuid, amount_dec, currency,
                        external_payment_id, external_customer_id, paid_at,
                    )
                except asyncpg.ForeignKeyViolationError as e:
                    raise UnknownUserError(f"User {user_uuid} has no subscription record") from e

                if payment_id is None:
                    result["duplicate"] = True
                    logger.info(
                        f"PAYMENT_DUPLICATE [user={user_uuid}, external_payment_id={external_payment_id}] "
                        f"- already recorded, no-op"
                    )
                    return result

                result["payment_id"] = payment_id
                conversion = await _apply_conversion(conn, user_uuid, payment_id, amount_dec, paid_at)
                result.update(conversion)

                if period_ends_at is not None:
                    await _extend_paid_period(conn, user_uuid, period_ends_at)

        except (asyncpg.UniqueViolationError, asyncpg.ForeignKeyViolationError,
                asyncpg.NotNullViolationError, asyncpg.CheckViolationError) as e:
            # Ledger constraint fired: the whole payment event rolled back
            logger.error(
                f"PAYMENT_ROLLED_BACK [user={user_uuid}, external_payment_id={external_payment_id}, "
                f"error={type(e).__name__}: {e}]"
            )
            raise

    logger.info(
        f"PAYMENT_RECORDED [user={user_uuid}, payment_id={result['payment_id']}, "
        f"amount={amount_dec} {currency}, converted={result['converted']}, "
        f"partner={result['partner_id']}, commission={result['commission_amount']}]"
    )
    return result


async def _apply_conversion(
    conn: asyncpg.Connection,
    user_id: uuid_lib.UUID,
    payment_id: uuid_lib.UUID,
    amount: Decimal,
    paid_at: datetime,
) -> Dict[str, Any]:
    """
    Flip the user to converted exactly once. Must run inside the payment's transaction.

    The WHERE converted_at IS NULL predicate makes exactly one concurrent
    payment match the row; every other one gets no row back and does nothing.
    """
    row = await conn.fetchrow(
        """UPDATE user_subscriptions
           SET converted_at = $2, subscription_status = 'active'
           WHERE user_id = $1 AND converted_at IS NULL
           RETURNING partner_id""",
        user_id, paid_at,
    )
    if row is None:
        # Renewal, or a concurrent payment won the conversion
        logger.info(f"CONVERSION_SKIPPED [user={user_id}, payment_id={payment_id}] - already converted")
        return {"converted": False}

    partner_id = row["partner_id"]
    logger.info(f"CONVERSION_APPLIED [user={user_id}, payment_id={payment_id}, partner={partner_id}]")
    if partner_id is None:
        return {"converted": True}

    credit = await _credit_partner_commission(conn, partner_id, user_id, payment_id, amount)
    return {
        "converted": True,
        "partner_id": partner_id,
        "commission_percent": credit["commission_percent"],
        "commission_amount": credit["commission_amount"],
    }


async def _credit_partner_commission(
    conn: asyncpg.Connection,
    partner_id: uuid_lib.UUID,
    user_id: uuid_lib.UUID,
    payment_id: uuid_lib.UUID,
    amount: Decimal,
) -> Dict[str, Any]:
    """
    Add amount * rate / 100 to the partner's total_revenue and bump total_converted.

    The partner row is locked FOR UPDATE first so the rate (and, for tiered
    schedules, the revenue bracket) cannot change under us. The aggregate
    update itself is a single arithmetic UPDATE, never read-modify-write.

    Raises:
        ConsistencyViolationError: partner row missing, or its slab schedule is invalid
    """
    partner = await conn.fetchrow(
        """SELECT id, commission_percent, commission_slabs, total_revenue
           FROM partners WHERE id = $1 FOR UPDATE""",
        partner_id,
    )
    if partner is None:
        logger.error(f"COMMISSION_PARTNER_MISSING [partner={partner_id}, user={user_id}, payment_id={payment_id}]")
        raise ConsistencyViolationError(f"Referring partner {partner_id} not found for user {user_id}")

    flags = get_feature_flags()
    try:
        percent = resolve_commission_percent(
            partner["commission_percent"],
            partner["commission_slabs"],
            partner["total_revenue"],
            flags.tiered_commission_enabled,
        )
    except ValueError as e:
        logger.error(f"COMMISSION_SCHEDULE_INVALID [partner={partner_id}, error={e}]")
        raise ConsistencyViolationError(f"Partner {partner_id} has an invalid commission schedule: {e}") from e

    commission = compute_commission(amount, percent)

    updated = await conn.fetchrow(
        """UPDATE partners
           SET total_revenue = total_revenue + $2,
               total_converted = total_converted + 1
           WHERE id = $1
           RETURNING total_revenue, total_converted""",
        partner_id, commission,
    )
    if updated is None:
        logger.error(f"COMMISSION_UPDATE_NO_ROW [partner={partner_id}, user={user_id}]")
        raise ConsistencyViolationError(f"Partner {partner_id} vanished during commission update")

    await conn.execute(
        """INSERT INTO commission_entries
           (partner_id, user_id, payment_id, base_amount, commission_percent, commission_amount)
           VALUES ($1, $2, $3, $4, $5, $6)""",
        partner_id, user_id, payment_id, amount, percent, commission,
    )

    logger.info(
        f"COMMISSION_CREDITED [partner={partner_id}, user={user_id}, payment_id={payment_id}, "
        f"base={amount}, percent={percent}, commission={commission}, "
        f"total_revenue={updated['total_revenue']}, total_converted={updated['total_converted']}]"
    )
    return {
        "commission_percent": percent,
        "commission_amount": commission,
        "total_revenue": updated["total_revenue"],
        "total_converted": updated["total_converted"],
    }


async def _extend_paid_period(conn: asyncpg.Connection, user_id: uuid_lib.UUID, period_ends_at: datetime) -> None:
    """Push subscription_ends_at forward to the paid-through date; never shortens it."""
    await conn.execute(
        """UPDATE user_subscriptions
           SET subscription_ends_at = GREATEST(COALESCE(subscription_ends_at, $2), $2),
               subscription_status = 'active'
           WHERE user_id = $1""",
        user_id, period_ends_at,
    )
    logger.info(f"SUBSCRIPTION_PERIOD_EXTENDED [user={user_id}, ends_at={period_ends_at.isoformat()}]")


# ====================================================================================
# ENROLLMENT COUNTER
# ====================================================================================

async def create_user_subscription(
    user_id: UserId,
    email: str,
    region: Optional[str] = None,
    partner_id: Optional[UserId] = None,
    subscription_ends_at: Optional[datetime] = None,
) -> Dict[str, Any]:
    """
    Insert a user-subscription row (status 'added') and count it for its partner.

    Both writes share one transaction: a missing partner rolls back the user row.

    Returns:
        The inserted row as a dict

    Raises:
        UserAlreadyExistsError: user_id or email already present
        PartnerNotFoundError: partner_id does not resolve to a partner
    """
    user_uuid = _as_uuid(user_id, "user_id")
    partner_uuid = _as_uuid(partner_id, "partner_id") if partner_id is not None else None
    subscription_ends_at = ensure_utc(subscription_ends_at)

    pool = await get_pool()
    async with pool.acquire() as conn:
        async with conn.transaction():
            try:
                row = await conn.fetchrow(
                    """INSERT INTO user_subscriptions
                       (user_id, email, partner_id, region, subscription_status, subscription_ends_at)
                       VALUES ($1, $2, $3, $4, 'added', $5)
                       ON CONFLICT DO NOTHING
                       RETURNING *""",
                    user_uuid, email, partner_uuid, region, subscription_ends_at,
                )
            except asyncpg.ForeignKeyViolationError as e:
                raise PartnerNotFoundError(f"Partner {partner_uuid} not found") from e

            if row is None:
                raise UserAlreadyExistsError(f"User {user_uuid} or email already exists")

            if partner_uuid is not None:
                await _increment_partner_added(conn, partner_uuid)

    logger.info(f"USER_ENROLLED [user={user_uuid}, partner={partner_uuid}, region={region}]")
    return dict(row)


async def _increment_partner_added(conn: asyncpg.Connection, partner_id: uuid_lib.UUID) -> int:
    new_total = await conn.fetchval(
        "UPDATE partners SET total_added = total_added + 1 WHERE id = $1 RETURNING total_added",
        partner_id,
    )
    if new_total is None:
        raise PartnerNotFoundError(f"Partner {partner_id} not found")
    return new_total


# ====================================================================================
# STATUS GUARD: guarded updates of user-subscription rows
# ====================================================================================


async def update_user(
    user_id: UserId,
    email: Optional[str] = None,
    region: Optional[str] = None,
    subscription_status: Optional[Union[str, SubscriptionStatus]] = None,
    subscription_ends_at: Optional[datetime] = None,
) -> Dict[str, Any]:
    """
    Update profile and/or subscription fields of one user. None = unchanged.

    The row is locked FOR UPDATE, the status change is validated against the
    state machine, and a single UPDATE is issued. The storage trigger is the
    backstop; its check_violation is mapped to IllegalStatusTransitionError.
    converted_at and partner_id are never writable here.

    Returns:
        The resulting row as a dict

    Raises:
        UnknownUserError: no such user
        IllegalStatusTransitionError: regression to 'added'
        UserAlreadyExistsError: email taken by another user
    """
    user_uuid = _as_uuid(user_id, "user_id")
    requested = {
        "email": email,
        "region": region,
        "subscription_status": subscription_status,
        "subscription_ends_at": ensure_utc(subscription_ends_at),
    }

    pool = await get_pool()
    async with pool.acquire() as conn:
        async with conn.transaction():
            current = await conn.fetchrow(
                "SELECT * FROM user_subscriptions WHERE user_id = $1 FOR UPDATE",
                user_uuid,
            )
            if current is None:
                raise UnknownUserError(f"User {user_uuid} not found")

            changes: Dict[str, Any] = {}
            if subscription_status is not None:
                new_status = ensure_transition_allowed(current["subscription_status"], subscription_status)
                if new_status.value != current["subscription_status"]:
                    changes["subscription_status"] = new_status.value
            for column in ("email", "region", "subscription_ends_at"):
                value = requested[column]
                if value is not None and value != current[column]:
                    changes[column] = value

            if not changes:
                return dict(current)

            set_clause = ", ".join(f"{column} = ${index}" for index, column in enumerate(changes, start=2))
            try:
                row = await conn.fetchrow(
                    f"UPDATE user_subscriptions SET {set_clause} WHERE user_id = $1 RETURNING *",
                    user_uuid, *changes.values(),
                )
            except asyncpg.CheckViolationError as e:
                if getattr(e, "constraint_name", None) == STATUS_TRANSITION_CONSTRAINT:
                    raise IllegalStatusTransitionError(
                        current["subscription_status"], str(changes.get("subscription_status"))
                    ) from e
                raise
            except asyncpg.UniqueViolationError as e:
                raise UserAlreadyExistsError("Email already used by another user") from e

    logger.info(
        f"USER_UPDATED [user={user_uuid}, fields={sorted(changes)}, "
        f"status={current['subscription_status']}->{row['subscription_status']}]"
    )
    return dict(row)


async def update_subscription(
    user_id: UserId,
    subscription_status: Optional[Union[str, SubscriptionStatus]] = None,
    subscription_ends_at: Optional[datetime] = None,
) -> Dict[str, Any]:
    """Guarded status / end-date update (admin and partner status handler)."""
    return await update_user(
        user_id,
        subscription_status=subscription_status,
        subscription_ends_at=subscription_ends_at,
    )


async def get_user_subscription(user_id: UserId) -> Optional[Dict[str, Any]]:
    user_uuid = _as_uuid(user_id, "user_id")
    pool = await get_pool()
    async with pool.acquire() as conn:
        row = await conn.fetchrow("SELECT * FROM user_subscriptions WHERE user_id = $1", user_uuid)
        return _row_to_dict(row)


# ====================================================================================
# EXPIRY SWEEPER + lazy expiry on read
# ====================================================================================

async def expire_due_subscriptions(now: Optional[datetime] = None) -> int:
    """
    Flip every active subscription whose end date has passed to 'expired'.

    Set-based and idempotent: a row already expired by a concurrent run no
    longer matches the WHERE clause.

    Returns:
        Number of rows expired by this call
    """
    now = ensure_utc(now) or utcnow()
    pool = await get_pool()
    async with pool.acquire() as conn:
        rows = await conn.fetch(
            """UPDATE user_subscriptions
               SET subscription_status = 'expired'
               WHERE subscription_status = 'active'
                 AND subscription_ends_at < $1
               RETURNING user_id""",
            now,
        )
    return len(rows)


async def get_effective_status(user_id: UserId, now: Optional[datetime] = None) -> str:
    """
    Subscription status as seen by the client app: 'active' or 'expired'.

    A missing row counts as expired. A row whose end date has passed is
    expired on the spot (covers unpaid trials: added -> expired), so the
    answer never depends on when the sweeper last ran.
    """
    user_uuid = _as_uuid(user_id, "user_id")
    now = ensure_utc(now) or utcnow()
    pool = await get_pool()
    async with pool.acquire() as conn:
        row = await conn.fetchrow(
            "SELECT subscription_status, subscription_ends_at FROM user_subscriptions WHERE user_id = $1",
            user_uuid,
        )
        if row is None:
            return SubscriptionStatus.EXPIRED.value
        if row["subscription_status"] == SubscriptionStatus.EXPIRED.value:
            return SubscriptionStatus.EXPIRED.value

        ends_at = row["subscription_ends_at"]
        if ends_at is not None and ends_at < now:
            result = await conn.execute(
                """UPDATE user_subscriptions
                   SET subscription_status = 'expired'
                   WHERE user_id = $1
                     AND subscription_status <> 'expired'
                     AND subscription_ends_at < $2""",
                user_uuid, now,
            )
            if result == "UPDATE 1":
                logger.info(f"SUBSCRIPTION_EXPIRED_ON_READ [user={user_uuid}, ends_at={ends_at.isoformat()}]")
            return SubscriptionStatus.EXPIRED.value

    return SubscriptionStatus.ACTIVE.value


# ====================================================================================
# PARTNERS (admin management; aggregates are never writable here)
# ====================================================================================

_PARTNER_UPDATABLE_COLUMNS = ("email", "full_name", "commission_percent", "commission_slabs", "is_active")


async def create_partner(
    email: str,
    full_name: Optional[str],
    commission_percent: int,
    commission_slabs: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    """
    Raises:
        asyncpg.UniqueViolationError: email already registered
    """
    pool = await get_pool()
    async with pool.acquire() as conn:
        row = await conn.fetchrow(
            """INSERT INTO partners (id, email, full_name, commission_percent, commission_slabs)
               VALUES ($1, $2, $3, $4, $5)
               RETURNING *""",
            uuid_lib.uuid4(), email, full_name, commission_percent, commission_slabs,
        )
    logger.info(f"PARTNER_CREATED [partner={row['id']}, commission_percent={commission_percent}]")
    return dict(row)


async def get_partner(partner_id: UserId) -> Optional[Dict[str, Any]]:
    partner_uuid = _as_uuid(partner_id, "partner_id")
    pool = await get_pool()
    async with pool.acquire() as conn:
        row = await conn.fetchrow("SELECT * FROM partners WHERE id = $1", partner_uuid)
        return _row_to_dict(row)


async def update_partner(partner_id: UserId, changes: Dict[str, Any]) -> Dict[str, Any]:
    """
    Update partner profile fields.

    Args:
        changes: column -> value; only email, full_name, commission_percent,
            commission_slabs and is_active are accepted

    Raises:
        ValueError: an aggregate or unknown column was requested
        PartnerNotFoundError: no such partner
        asyncpg.UniqueViolationError: email already registered
    """
    partner_uuid = _as_uuid(partner_id, "partner_id")
    illegal = set(changes) - set(_PARTNER_UPDATABLE_COLUMNS)
    if illegal:
        raise ValueError(f"Partner columns not updatable: {sorted(illegal)}")

    pool = await get_pool()
    async with pool.acquire() as conn:
        if not changes:
            row = await conn.fetchrow("SELECT * FROM partners WHERE id = $1", partner_uuid)
        else:
            set_clause = ", ".join(f"{column} = ${index}" for index, column in enumerate(changes, start=2))
            row = await conn.fetchrow(
                f"UPDATE partners SET {set_clause} WHERE id = $1 RETURNING *",
                partner_uuid, *changes.values(),
            )
    if row is None:
        raise PartnerNotFoundError(f"Partner {partner_uuid} not found")
    if changes:
        logger.info(f"PARTNER_UPDATED [partner={partner_uuid}, fields={sorted(changes)}]")
    return dict(row)


# ====================================================================================
# REPORTING (read-only)
# ====================================================================================

async def get_partner_stats(partner_id: UserId, now: Optional[datetime] = None, window_days: int = 30) -> Optional[Dict[str, Any]]:
    """
    Aggregates for one partner. None when the partner does not exist.

    total_revenue / total_converted / total_added come from the partner row
    as written by the accumulators; nothing here recomputes them.
    """
    partner_uuid = _as_uuid(partner_id, "partner_id")
    now = ensure_utc(now) or utcnow()
    since = now - timedelta(days=window_days)

    pool = await get_pool()
    async with pool.acquire() as conn:
        partner = await conn.fetchrow("SELECT * FROM partners WHERE id = $1", partner_uuid)
        if partner is None:
            return None

        status_rows = await conn.fetch(
            """SELECT subscription_status, COUNT(*) AS cnt
               FROM user_subscriptions WHERE partner_id = $1
               GROUP BY subscription_status""",
            partner_uuid,
        )
        region_rows = await conn.fetch(
            """SELECT COALESCE(region, 'null') AS region, COUNT(*) AS cnt
               FROM user_subscriptions WHERE partner_id = $1
               GROUP BY 1""",
            partner_uuid,
        )
        users = await conn.fetchrow(
            """SELECT COUNT(*) FILTER (WHERE created_at >= $2) AS recent_users,
                      COUNT(*) FILTER (WHERE converted_at >= $2) AS recent_conversions
               FROM user_subscriptions WHERE partner_id = $1""",
            partner_uuid, since,
        )
        payments = await conn.fetchrow(
            """SELECT COALESCE(SUM(p.amount), 0) AS total,
                      COALESCE(SUM(p.amount) FILTER (WHERE p.paid_at >= $2), 0) AS last_window,
                      COUNT(*) AS total_payments
               FROM payments p
               JOIN user_subscriptions u ON u.user_id = p.user_id
               WHERE u.partner_id = $1 AND p.currency = $3""",
            partner_uuid, since, config.DEFAULT_CURRENCY,
        )
        commission = await conn.fetchrow(
            """SELECT COALESCE(SUM(commission_amount), 0) AS total,
                      COALESCE(SUM(commission_amount) FILTER (WHERE created_at >= $2), 0) AS last_window
               FROM commission_entries WHERE partner_id = $1""",
            partner_uuid, since,
        )

    return {
        "partner": dict(partner),
        "status_counts": {r["subscription_status"]: r["cnt"] for r in status_rows},
        "region_counts": {r["region"]: r["cnt"] for r in region_rows},
        "recent_users": users["recent_users"],
        "recent_conversions": users["recent_conversions"],
        "payments_total": payments["total"],
        "payments_last_window": payments["last_window"],
        "payments_count": payments["total_payments"],
        "commission_total": commission["total"],
        "commission_last_window": commission["last_window"],
        "window_start": since,
    }


async def get_admin_stats(now: Optional[datetime] = None, window_days: int = 30) -> Dict[str, Any]:
    """System-wide aggregates for the admin dashboard."""
    now = ensure_utc(now) or utcnow()
    since = now - timedelta(days=window_days)

    pool = await get_pool()
    async with pool.acquire() as conn:
        payments = await conn.fetchrow(
            """SELECT COALESCE(SUM(amount), 0) AS total,
                      COALESCE(SUM(amount) FILTER (WHERE paid_at >= $1), 0) AS last_window,
                      COUNT(*) AS total_payments
               FROM payments WHERE currency = $2""",
            since, config.DEFAULT_CURRENCY,
        )
        status_rows = await conn.fetch(
            "SELECT subscription_status, COUNT(*) AS cnt FROM user_subscriptions GROUP BY subscription_status"
        )
        region_rows = await conn.fetch(
            "SELECT COALESCE(region, 'null') AS region, COUNT(*) AS cnt FROM user_subscriptions GROUP BY 1"
        )
        users = await conn.fetchrow(
            """SELECT COUNT(*) AS total,
                      COUNT(*) FILTER (WHERE created_at >= $1) AS recent_users,
                      COUNT(*) FILTER (WHERE converted_at IS NOT NULL) AS converted
               FROM user_subscriptions""",
            since,
        )
        partners = await conn.fetchrow(
            "SELECT COUNT(*) AS total, COUNT(*) FILTER (WHERE is_active) AS active FROM partners"
        )
        commission = await conn.fetchrow(
            """SELECT COALESCE(SUM(commission_amount), 0) AS total,
                      COALESCE(SUM(commission_amount) FILTER (WHERE created_at >= $1), 0) AS last_window
               FROM commission_entries""",
            since,
        )

    return {
        "payments_total": payments["total"],
        "payments_last_window": payments["last_window"],
        "payments_count": payments["total_payments"],
        "status_counts": {r["subscription_status"]: r["cnt"] for r in status_rows},
        "region_counts": {r["region"]: r["cnt"] for r in region_rows},
        "users_total": users["total"],
        "recent_users": users["recent_users"],
        "converted_users": users["converted"],
        "partners_total": partners["total"],
        "partners_active": partners["active"],
        "commission_total": commission["total"],
        "commission_last_window": commission["last_window"],
        "window_start": since,
    }
