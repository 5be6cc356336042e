"""
Expiry Sweeper - периодический перевод истёкших подписок в статус 'expired'

Фоновая задача: каждые SWEEP_INTERVAL_SECONDS выполняет один set-based UPDATE
(active -> expired для subscription_ends_at < now).

Требования:
- UTC время для сравнения дат
- Идемпотентна (повторный запуск ничего не меняет)
- Устойчива к ошибкам БД (повтор в следующем цикле)
- Один sweep на интервал: asyncio.Lock внутри процесса, Redis-лок между
  инстансами (если REDIS_URL задан). Корректность от локов не зависит.
"""
import asyncio
import logging
import time
from datetime import datetime
from typing import Optional

import asyncpg

import config
import redis_client
from crm.core.feature_flags import get_feature_flags
from crm.core.redis_lock import RedisDistributedLock
from crm.services.subscriptions import run_expiry_sweep
from crm.utils.logging_helpers import (
    classify_error,
    get_correlation_id,
    log_worker_iteration_end,
    log_worker_iteration_start,
)

logger = logging.getLogger(__name__)

WORKER_NAME = "expiry_sweeper"
MAX_ITERATION_SECONDS = 120
# Lock outlives a slow sweep but expires well before the next interval
LOCK_TTL_SECONDS = 300
LOCK_KEY = f"lock:{config.APP_ENV}:expiry_sweeper"

# Minimum safe sleep on failure to prevent tight retry storms
MINIMUM_SAFE_SLEEP_ON_FAILURE = 10  # seconds

_worker_lock = asyncio.Lock()


async def _get_lock_client():
    try:
        return await redis_client.get_redis_client()
    except RuntimeError as e:
        logger.warning(f"expiry_sweeper: Redis unavailable, sweeping without distributed lock: {e}")
        return None


async def run_sweep_once(now: Optional[datetime] = None) -> Optional[int]:
    """
    Run one sweep.

    Returns:
        Number of subscriptions expired, or None when skipped because another
        sweep (this process or another instance) is already running
    """
    if _worker_lock.locked():
        logger.info("expiry_sweeper: SWEEP_SKIPPED [reason=in_process_sweep_running]")
        return None

    async with _worker_lock:
        client = await _get_lock_client()
        if client is None:
            return await run_expiry_sweep(now)

        lock = RedisDistributedLock(client, LOCK_KEY, ttl_seconds=LOCK_TTL_SECONDS, wait_timeout=0)
        correlation_id = get_correlation_id()
        if not await lock.acquire(correlation_id):
            logger.info("expiry_sweeper: SWEEP_SKIPPED [reason=distributed_lock_held]")
            return None
        try:
            return await run_expiry_sweep(now)
        finally:
            await lock.release(correlation_id)


async def expiry_sweeper_task():
    """
    Expiry Sweeper Task

    Бесконечный цикл: sleep -> проверка feature flag -> run_sweep_once().
    Ошибки БД логируются как degraded и не останавливают задачу.
    """
    logger.info(f"Expiry sweeper task started (interval={config.SWEEP_INTERVAL_SECONDS}s)")
    iteration_number = 0

    while True:
        iteration_number += 1
        await asyncio.sleep(config.SWEEP_INTERVAL_SECONDS)
        iteration_start_time = time.time()

        log_worker_iteration_start(worker_name=WORKER_NAME, iteration_number=iteration_number)
        outcome = "success"
        items_processed = 0
        iteration_error_type = None

        try:
            if not get_feature_flags().background_workers_enabled:
                logger.warning(
                    f"[FEATURE_FLAG] Background workers disabled, skipping iteration in expiry_sweeper "
                    f"(iteration={iteration_number})"
                )
                outcome = "skipped"
                continue

            expired = await asyncio.wait_for(run_sweep_once(), timeout=MAX_ITERATION_SECONDS)
            if expired is None:
                outcome = "skipped"
            else:
                items_processed = expired

        except asyncio.CancelledError:
            logger.info("Expiry sweeper task cancelled")
            raise
        except (asyncpg.PostgresError, asyncio.TimeoutError) as e:
            logger.warning(f"expiry_sweeper: Database temporarily unavailable: {type(e).__name__}: {str(e)[:100]}")
            outcome = "degraded"
            iteration_error_type = "infra_error"
            await asyncio.sleep(MINIMUM_SAFE_SLEEP_ON_FAILURE)
        except Exception as e:
            logger.error(f"expiry_sweeper: Unexpected error: {type(e).__name__}: {str(e)[:100]}")
            logger.debug("expiry_sweeper: Full traceback", exc_info=True)
            outcome = "failed"
            iteration_error_type = classify_error(e)
            await asyncio.sleep(MINIMUM_SAFE_SLEEP_ON_FAILURE)
        finally:
            log_worker_iteration_end(
                worker_name=WORKER_NAME,
                outcome=outcome,
                items_processed=items_processed,
                error_type=iteration_error_type,
                duration_ms=(time.time() - iteration_start_time) * 1000,
            )
