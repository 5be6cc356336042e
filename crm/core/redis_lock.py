"""
Redis distributed lock (SET NX PX + compare-and-delete release).

Used to keep a single expiry sweeper running per interval when several
instances are deployed. Ledger correctness never depends on this lock; it
only avoids redundant work.
"""
import asyncio
import logging
import os
import uuid
from typing import Optional

import redis.asyncio as redis

logger = logging.getLogger(__name__)

# Only the owner (matching token) may delete the key
RELEASE_SCRIPT = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("del", KEYS[1])
else
    return 0
end
"""

RETRY_DELAY_SECONDS = 0.1
ERROR_RETRY_DELAY_SECONDS = 0.2


class RedisDistributedLock:
    """
    Token-based Redis lock with TTL auto-release.

    Example:
        lock = RedisDistributedLock(client, key="lock:prod:expiry_sweeper", ttl_seconds=300)
        if await lock.acquire():
            try:
                ...
            finally:
                await lock.release()

    wait_timeout=0 makes acquire() a single non-blocking attempt.
    """

    def __init__(
        self,
        redis_client: redis.Redis,
        key: str,
        ttl_seconds: int = 60,
        wait_timeout: float = 5,
    ):
        self.redis_client = redis_client
        self.key = key
        self.ttl_seconds = ttl_seconds
        self.wait_timeout = wait_timeout
        self.token: Optional[str] = None
        self.acquired = False
        self.instance_id = os.getenv("INSTANCE_ID", f"pid-{os.getpid()}")
        self._release_script = None

    def _log_extra(self, operation: str, outcome: str, correlation_id: Optional[str], **fields) -> dict:
        extra = {
            "component": "infra",
            "operation": operation,
            "outcome": outcome,
            "key": self.key,
            "instance_id": self.instance_id,
        }
        if correlation_id is not None:
            extra["correlation_id"] = correlation_id
        extra.update(fields)
        return extra

    async def acquire(self, correlation_id: Optional[str] = None) -> bool:
        """
        Try to take the lock, polling until wait_timeout.

        Returns:
            True if acquired, False on timeout (or when already held by self)
        """
        if self.acquired:
            logger.warning(
                "REDIS_LOCK_ERROR",
                extra=self._log_extra("lock_acquire", "failed", correlation_id, reason="lock_already_acquired"),
            )
            return False

        self.token = str(uuid.uuid4())
        loop = asyncio.get_running_loop()
        start_time = loop.time()
        attempt = 0

        while True:
            attempt += 1
            try:
                result = await self.redis_client.set(
                    self.key,
                    self.token,
                    nx=True,
                    px=int(self.ttl_seconds * 1000),
                )
                if result:
                    self.acquired = True
                    logger.info(
                        "REDIS_LOCK_ACQUIRED",
                        extra=self._log_extra(
                            "lock_acquire", "success", correlation_id,
                            attempts=attempt, ttl_seconds=self.ttl_seconds,
                        ),
                    )
                    return True
                delay = RETRY_DELAY_SECONDS
            except Exception as e:
                logger.error(
                    "REDIS_LOCK_ERROR",
                    extra=self._log_extra(
                        "lock_acquire", "error", correlation_id,
                        reason=str(e)[:100], attempt=attempt,
                    ),
                )
                delay = ERROR_RETRY_DELAY_SECONDS

            elapsed = loop.time() - start_time
            if elapsed + delay > self.wait_timeout:
                logger.info(
                    "REDIS_LOCK_BUSY",
                    extra=self._log_extra(
                        "lock_acquire", "timeout", correlation_id,
                        attempts=attempt, elapsed_seconds=round(elapsed, 2),
                    ),
                )
                self.token = None
                return False
            await asyncio.sleep(delay)

    async def release(self, correlation_id: Optional[str] = None) -> None:
        """Release if held. Idempotent; Redis errors are logged, not raised."""
        if not self.acquired:
            return

        try:
            if self._release_script is None:
                self._release_script = self.redis_client.register_script(RELEASE_SCRIPT)
            result = await self._release_script(keys=[self.key], args=[self.token])
            if result:
                logger.info("REDIS_LOCK_RELEASED", extra=self._log_extra("lock_release", "success", correlation_id))
            else:
                # TTL expired before release or someone else owns the key now
                logger.warning(
                    "REDIS_LOCK_ERROR",
                    extra=self._log_extra(
                        "lock_release", "failed", correlation_id,
                        reason="token_mismatch_or_expired",
                    ),
                )
        except Exception as e:
            logger.error(
                "REDIS_LOCK_ERROR",
                extra=self._log_extra("lock_release", "error", correlation_id, reason=str(e)[:100]),
            )
        finally:
            self.acquired = False
            self.token = None
