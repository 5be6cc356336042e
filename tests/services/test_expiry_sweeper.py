"""
Unit tests for the expiry sweeper worker (run_sweep_once).
"""
import pytest
from unittest.mock import patch, AsyncMock, MagicMock

import expiry_sweeper


@pytest.fixture
def redis_mock():
    client = MagicMock()
    client.set = AsyncMock(return_value=True)
    client.register_script = MagicMock(return_value=AsyncMock(return_value=1))
    return client


class TestRunSweepOnce:
    """Tests for run_sweep_once"""

    @pytest.mark.asyncio
    async def test_without_redis(self, now):
        with patch('expiry_sweeper.redis_client.get_redis_client', new=AsyncMock(return_value=None)), \
                patch('expiry_sweeper.run_expiry_sweep', new=AsyncMock(return_value=4)) as mock_sweep:
            assert await expiry_sweeper.run_sweep_once(now) == 4
            mock_sweep.assert_awaited_once_with(now)

    @pytest.mark.asyncio
    async def test_with_distributed_lock(self, now, redis_mock):
        with patch('expiry_sweeper.redis_client.get_redis_client', new=AsyncMock(return_value=redis_mock)), \
                patch('expiry_sweeper.run_expiry_sweep', new=AsyncMock(return_value=2)):
            assert await expiry_sweeper.run_sweep_once(now) == 2

        key = redis_mock.set.await_args.args[0]
        assert key == expiry_sweeper.LOCK_KEY
        assert redis_mock.set.await_args.kwargs["nx"] is True
        redis_mock.register_script.return_value.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_skipped_when_lock_held_elsewhere(self, now, redis_mock):
        redis_mock.set = AsyncMock(return_value=None)
        with patch('expiry_sweeper.redis_client.get_redis_client', new=AsyncMock(return_value=redis_mock)), \
                patch('expiry_sweeper.run_expiry_sweep', new=AsyncMock()) as mock_sweep:
            assert await expiry_sweeper.run_sweep_once(now) is None
            mock_sweep.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_lock_released_when_sweep_fails(self, now, redis_mock):
        with patch('expiry_sweeper.redis_client.get_redis_client', new=AsyncMock(return_value=redis_mock)), \
                patch('expiry_sweeper.run_expiry_sweep', new=AsyncMock(side_effect=ConnectionError("db down"))):
            with pytest.raises(ConnectionError):
                await expiry_sweeper.run_sweep_once(now)
        redis_mock.register_script.return_value.assert_awaited_once()
        assert not expiry_sweeper._worker_lock.locked()

    @pytest.mark.asyncio
    async def test_redis_unavailable_sweeps_anyway(self, now):
        with patch('expiry_sweeper.redis_client.get_redis_client',
                   new=AsyncMock(side_effect=RuntimeError("bad url"))), \
                patch('expiry_sweeper.run_expiry_sweep', new=AsyncMock(return_value=1)):
            assert await expiry_sweeper.run_sweep_once(now) == 1

    @pytest.mark.asyncio
    async def test_skipped_when_already_running_in_process(self, now):
        with patch('expiry_sweeper.run_expiry_sweep', new=AsyncMock()) as mock_sweep:
            async with expiry_sweeper._worker_lock:
                assert await expiry_sweeper.run_sweep_once(now) is None
            mock_sweep.assert_not_awaited()
