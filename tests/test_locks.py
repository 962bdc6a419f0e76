"""
Distributed lock manager tests
Covers both backends, mutual exclusion, token ownership and keepalive
"""

import asyncio
from datetime import timedelta
from unittest.mock import AsyncMock

import pytest
from sqlalchemy import update

from boxoffice.core.exceptions import ExternalServiceError, LockUnavailableError
from boxoffice.core.locks import LockManager, RedisLockBackend, build_lock_manager
from boxoffice.models.base import utcnow
from boxoffice.models.lock import DistributedLock


@pytest.mark.asyncio
class TestDatabaseLockBackend:
    """Row-per-lock backend used when Redis is not configured"""

    async def test_acquire_is_exclusive(self, lock_manager):
        token = await lock_manager.acquire_lock("section:a:reservation")
        assert token is not None

        assert await lock_manager.acquire_lock("section:a:reservation") is None
        # Other keys are independent
        assert await lock_manager.acquire_lock("section:b:reservation") is not None

    async def test_release_requires_matching_token(self, lock_manager):
        token = await lock_manager.acquire_lock("booking:1:operation")

        assert await lock_manager.release_lock("booking:1:operation", "not-the-token") is False
        assert await lock_manager.acquire_lock("booking:1:operation") is None

        assert await lock_manager.release_lock("booking:1:operation", token) is True
        assert await lock_manager.acquire_lock("booking:1:operation") is not None

    async def test_release_twice_is_harmless(self, lock_manager):
        token = await lock_manager.acquire_lock("booking:2:operation")
        assert await lock_manager.release_lock("booking:2:operation", token) is True
        assert await lock_manager.release_lock("booking:2:operation", token) is False

    async def test_expired_lock_can_be_taken_over(self, lock_manager, db_manager):
        stale = await lock_manager.acquire_lock("booking:3:operation")

        async with db_manager.atomic_transaction() as session:
            await session.execute(
                update(DistributedLock)
                .where(DistributedLock.resource_key == "booking:3:operation")
                .values(expires_at=utcnow() - timedelta(seconds=1))
            )

        fresh = await lock_manager.acquire_lock("booking:3:operation")
        assert fresh is not None and fresh != stale

        # The previous holder can no longer extend or release
        assert await lock_manager.extend_lock("booking:3:operation", stale) is False
        assert await lock_manager.release_lock("booking:3:operation", stale) is False

    async def test_extend_only_for_holder(self, lock_manager):
        token = await lock_manager.acquire_lock("booking:4:operation", ttl=1)
        assert await lock_manager.extend_lock("booking:4:operation", token, ttl=10) is True
        assert await lock_manager.extend_lock("booking:4:operation", "someone-else", ttl=10) is False


@pytest.mark.asyncio
class TestRedisLockBackend:
    """Redis backend against a mocked client"""

    async def test_acquire_uses_set_nx_px(self):
        client = AsyncMock()
        client.set.return_value = True
        manager = LockManager(RedisLockBackend(client), default_ttl=30)

        token = await manager.acquire_lock("section:x:reservation")

        assert token is not None
        client.set.assert_awaited_once_with("lock:section:x:reservation", token, px=30000, nx=True)

    async def test_acquire_busy(self):
        client = AsyncMock()
        client.set.return_value = None
        manager = LockManager(RedisLockBackend(client))

        assert await manager.acquire_lock("section:x:reservation") is None

    async def test_redis_error_is_not_reported_as_busy(self):
        client = AsyncMock()
        client.set.side_effect = ConnectionError("redis down")
        manager = LockManager(RedisLockBackend(client))

        with pytest.raises(ExternalServiceError) as exc_info:
            await manager.acquire_lock("section:x:reservation")

        assert exc_info.value.details == {"service": "coordination_store"}
        assert exc_info.value.status_code == 503
        assert exc_info.value.retryable is True

    async def test_hold_surfaces_store_outage(self):
        client = AsyncMock()
        client.set.side_effect = ConnectionError("redis down")
        manager = LockManager(RedisLockBackend(client), retry_count=3, retry_delay=0)
        ran = []

        with pytest.raises(ExternalServiceError):
            async with manager.hold("booking:1:operation"):
                ran.append(True)

        assert ran == []
        # No point retrying an unreachable store
        assert client.set.await_count == 1

    async def test_store_errors_on_extend_and_release_return_false(self):
        client = AsyncMock()
        client.eval.side_effect = ConnectionError("redis down")
        manager = LockManager(RedisLockBackend(client))

        assert await manager.extend_lock("booking:1:operation", "tok") is False
        assert await manager.release_lock("booking:1:operation", "tok") is False

    async def test_release_and_extend_compare_tokens_in_script(self):
        client = AsyncMock()
        client.eval.side_effect = [1, 0]
        backend = RedisLockBackend(client)

        assert await backend.release("booking:9:operation", "tok") is True
        args = client.eval.await_args.args
        assert args[0] == RedisLockBackend.RELEASE_SCRIPT
        assert args[1:] == (1, "lock:booking:9:operation", "tok")

        assert await backend.extend("booking:9:operation", "tok", 5) is False
        args = client.eval.await_args.args
        assert args[0] == RedisLockBackend.EXTEND_SCRIPT
        assert args[-1] == 5000

    async def test_build_lock_manager_without_redis_uses_database(self, db_manager):
        manager = build_lock_manager(None, db_manager)
        assert not isinstance(manager.backend, RedisLockBackend)


@pytest.mark.asyncio
class TestWithLock:
    """Scoped execution helpers"""

    async def test_with_lock_returns_result_and_releases(self, lock_manager):
        async def work():
            return "done"

        assert await lock_manager.with_lock("booking:5:operation", work) == "done"
        assert await lock_manager.acquire_lock("booking:5:operation") is not None

    async def test_with_lock_returns_none_when_busy(self, lock_manager):
        await lock_manager.acquire_lock("booking:6:operation")
        ran = []

        async def work():
            ran.append(True)

        result = await lock_manager.with_lock("booking:6:operation", work, retry_count=2, retry_delay=0.01)

        assert result is None
        assert ran == []

    async def test_with_lock_releases_on_error(self, lock_manager):
        async def work():
            raise RuntimeError("boom")

        with pytest.raises(RuntimeError):
            await lock_manager.with_lock("booking:7:operation", work)

        assert await lock_manager.acquire_lock("booking:7:operation") is not None

    async def test_hold_raises_when_busy(self, lock_manager):
        await lock_manager.acquire_lock("booking:8:operation")

        with pytest.raises(LockUnavailableError) as exc_info:
            async with lock_manager.hold("booking:8:operation", retry_count=1):
                pass

        assert exc_info.value.code == "LOCK_BUSY"
        assert exc_info.value.retryable is True

    async def test_keepalive_extends_past_ttl(self, lock_manager):
        async with lock_manager.hold("booking:10:operation", ttl=0.6, keepalive=True) as handle:
            await asyncio.sleep(1.0)
            assert handle.lost is False
            # Still ours after outliving the original TTL
            assert await lock_manager.acquire_lock("booking:10:operation") is None

        assert await lock_manager.acquire_lock("booking:10:operation") is not None


@pytest.mark.concurrency
@pytest.mark.asyncio
class TestLockContention:
    """Mutual exclusion under concurrent holders"""

    async def test_only_one_holder_inside_critical_section(self, db_manager, lock_manager):
        contender = LockManager(
            lock_manager.backend,
            default_ttl=5,
            retry_count=200,
            retry_delay=0.01,
            retry_jitter=0.01,
        )
        inside = 0
        max_inside = 0

        async def critical():
            nonlocal inside, max_inside
            inside += 1
            max_inside = max(max_inside, inside)
            await asyncio.sleep(0.02)
            inside -= 1
            return True

        results = await asyncio.gather(*[
            contender.with_lock("section:shared:reservation", critical) for _ in range(5)
        ])

        assert all(results)
        assert max_inside == 1

    async def test_holder_crash_heals_after_ttl(self, lock_manager):
        # A holder that never releases
        await lock_manager.acquire_lock("booking:crashed:operation", ttl=0.3)
        assert await lock_manager.acquire_lock("booking:crashed:operation") is None

        await asyncio.sleep(0.5)

        assert await lock_manager.acquire_lock("booking:crashed:operation") is not None
