import asyncio
import logging
import os
import sys

# Configure logging FIRST (before any other imports that may log)
# Routes INFO/WARNING → stdout, ERROR/CRITICAL → stderr for correct container classification
from crm.core.logging_config import setup_logging, stop_logging
setup_logging()

import uvicorn

import config
import database
import expiry_sweeper
import redis_client
from crm.api import app
from crm.core.feature_flags import get_feature_flags
from crm.core.structured_logger import log_event

# ====================================================================================
# LOGGING CONTRACT
# ====================================================================================
# Standard log fields:
# - component        (api / worker / service / infra)
# - operation        (what is happening)
# - correlation_id   (request id / iteration id)
# - outcome          (success | degraded | failed | skipped)
# - duration_ms      (when applicable)
# - reason           (short, non-PII explanation)
#
# Failure taxonomy (crm.utils.logging_helpers.classify_error):
# - infra_error, consistency_error, domain_error, unexpected_error
#
# SECURITY: never log secrets, full emails or raw webhook payloads
# ====================================================================================

logger = logging.getLogger(__name__)

DB_RETRY_INTERVAL_SECONDS = 30


async def retry_db_init(background_tasks: list):
    """
    Повторная инициализация БД каждые 30 секунд, пока init_db() не вернёт True.
    После восстановления запускает sweeper, если он был пропущен при старте.
    """
    logger.info(f"Starting DB initialization retry task (every {DB_RETRY_INTERVAL_SECONDS}s)")
    while not database.DB_READY:
        await asyncio.sleep(DB_RETRY_INTERVAL_SECONDS)
        try:
            if await database.init_db():
                logger.info("DATABASE_RECOVERY_SUCCESSFUL")
                background_tasks.append(_start_sweeper())
                return
        except Exception as e:
            logger.error(f"DB_RETRY_FAILED error={type(e).__name__}: {str(e)[:200]}")


def _start_sweeper() -> asyncio.Task:
    task = asyncio.create_task(expiry_sweeper.expiry_sweeper_task(), name="expiry_sweeper")
    logger.info("Expiry sweeper task started")
    return task


async def main():
    logger.info(f"Starting partner CRM ledger in {config.APP_ENV.upper()} environment (pid={os.getpid()})")
    logger.info(f"Using DATABASE_URL from {config.APP_ENV.upper()}_DATABASE_URL")

    flags = get_feature_flags()
    logger.info(
        f"FEATURE_FLAGS payments={flags.payments_enabled} "
        f"background_workers={flags.background_workers_enabled} "
        f"tiered_commission={flags.tiered_commission_enabled}"
    )

    background_tasks = []

    # SAFE STARTUP: a failed init keeps the HTTP server up in degraded mode
    if await database.init_db():
        background_tasks.append(_start_sweeper())
    else:
        logger.warning("DB_NOT_READY starting in degraded mode; sweeper deferred")
        background_tasks.append(asyncio.create_task(retry_db_init(background_tasks), name="db_retry"))

    if config.REDIS_URL:
        await redis_client.check_redis_connection()

    server = uvicorn.Server(uvicorn.Config(
        app,
        host=config.HTTP_HOST,
        port=config.HTTP_PORT,
        log_config=None,
        access_log=False,
    ))
    logger.info(f"HTTP server starting on http://{config.HTTP_HOST}:{config.HTTP_PORT}")

    try:
        await server.serve()
    finally:
        log_event(logger, component="shutdown", operation="shutdown_start", outcome="success")

        for task in background_tasks:
            if not task.done():
                task.cancel()
        for task in background_tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
            except Exception as e:
                logger.error(f"Error during shutdown of task {task.get_name()}: {e}")

        log_event(
            logger,
            component="shutdown",
            operation="shutdown_tasks_cancelled",
            outcome="success",
            reason=f"count={len(background_tasks)}",
        )

        try:
            await database.close_pool()
        except Exception as e:
            logger.error(f"Error closing database pool: {e}")
        await redis_client.close_redis_client()

        log_event(logger, component="shutdown", operation="shutdown_completed", outcome="success")
        stop_logging()


if __name__ == "__main__":
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        logger.info("Сервис остановлен")
        sys.exit(0)
