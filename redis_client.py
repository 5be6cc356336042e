"""
Redis client (redis.asyncio, process-wide singleton).

Redis is optional: without REDIS_URL every accessor returns None and the
expiry sweeper runs without a distributed lock.
"""
import logging
from typing import Optional

import redis.asyncio as redis

import config

logger = logging.getLogger(__name__)

_redis_client: Optional[redis.Redis] = None
REDIS_READY: bool = False


def _health_extra(outcome: str, reason: Optional[str] = None) -> dict:
    extra = {"component": "infra", "operation": "redis_health_check", "outcome": outcome}
    if reason:
        extra["reason"] = reason
    return extra


async def get_redis_client() -> Optional[redis.Redis]:
    """
    Returns:
        The shared client, or None when REDIS_URL is not configured

    Raises:
        RuntimeError: client could not be created from REDIS_URL
    """
    global _redis_client, REDIS_READY

    if not config.REDIS_URL:
        return None
    if _redis_client is not None:
        return _redis_client

    try:
        _redis_client = redis.from_url(
            config.REDIS_URL,
            decode_responses=True,
            socket_timeout=5,
            socket_connect_timeout=5,
            retry_on_timeout=True,
            health_check_interval=30,
            max_connections=10,
        )
    except Exception as e:
        _redis_client = None
        REDIS_READY = False
        logger.error(f"REDIS_CLIENT_CREATE_FAILED error={type(e).__name__}: {str(e)[:100]}")
        raise RuntimeError(f"Redis client creation failed: {e}") from e

    logger.info("Redis client created")
    return _redis_client


async def check_redis_connection() -> bool:
    """PING Redis and update REDIS_READY. Never raises."""
    global REDIS_READY

    try:
        client = await get_redis_client()
        if client is None:
            REDIS_READY = False
            return False
        REDIS_READY = bool(await client.ping())
    except Exception as e:
        REDIS_READY = False
        logger.warning("REDIS_CONNECTION_FAILED", extra=_health_extra("failed", str(e)[:100]))
        return False

    if REDIS_READY:
        logger.info("REDIS_CONNECTED", extra=_health_extra("success"))
    else:
        logger.warning("REDIS_CONNECTION_FAILED", extra=_health_extra("failed", "ping_returned_false"))
    return REDIS_READY


async def close_redis_client() -> None:
    """Idempotent."""
    global _redis_client, REDIS_READY

    if _redis_client is None:
        return
    try:
        await _redis_client.aclose()
        logger.info("Redis client closed")
    except Exception as e:
        logger.error(f"Error closing Redis client: {e}")
    finally:
        _redis_client = None
        REDIS_READY = False
