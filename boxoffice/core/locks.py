"""
Distributed locking over named resources

A lock is a token stored under a resource key with an expiry. Only the holder
of the token can extend or release it, and a holder that dies without
releasing is healed by the expiry. Two backends are provided: Redis (the
default) and a relational table for deployments without Redis.
"""

import asyncio
import logging
import random
import uuid
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager, suppress
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Optional, TypeVar

from sqlalchemy import delete, update
from sqlalchemy.exc import IntegrityError

from boxoffice.config import settings
from boxoffice.core.database import DatabaseManager
from boxoffice.core.exceptions import ExternalServiceError, LockUnavailableError
from boxoffice.core.metrics import LOCK_ACQUISITIONS
from boxoffice.models.lock import DistributedLock

logger = logging.getLogger(__name__)

T = TypeVar("T")


class LockBackend(ABC):
    """Atomic conditional writes a lock store must offer"""

    @abstractmethod
    async def acquire(self, resource_key: str, token: str, ttl: float) -> bool:
        """Set token under key only if absent, with expiry"""

    @abstractmethod
    async def extend(self, resource_key: str, token: str, ttl: float) -> bool:
        """Renew expiry only if the stored token matches"""

    @abstractmethod
    async def release(self, resource_key: str, token: str) -> bool:
        """Delete only if the stored token matches"""


class RedisLockBackend(LockBackend):
    """
    Lock backend using Redis SET NX PX and Lua compare-and-set scripts
    """

    EXTEND_SCRIPT = """
    if redis.call("GET", KEYS[1]) == ARGV[1] then
        return redis.call("PEXPIRE", KEYS[1], ARGV[2])
    else
        return 0
    end
    """

    RELEASE_SCRIPT = """
    if redis.call("GET", KEYS[1]) == ARGV[1] then
        return redis.call("DEL", KEYS[1])
    else
        return 0
    end
    """

    def __init__(self, client, prefix: str = "lock:"):
        self.client = client
        self.prefix = prefix

    def _key(self, resource_key: str) -> str:
        return f"{self.prefix}{resource_key}"

    async def acquire(self, resource_key: str, token: str, ttl: float) -> bool:
        result = await self.client.set(
            self._key(resource_key),
            token,
            px=int(ttl * 1000),
            nx=True
        )
        return bool(result)

    async def extend(self, resource_key: str, token: str, ttl: float) -> bool:
        result = await self.client.eval(
            self.EXTEND_SCRIPT,
            1,
            self._key(resource_key),
            token,
            int(ttl * 1000)
        )
        return result == 1

    async def release(self, resource_key: str, token: str) -> bool:
        result = await self.client.eval(
            self.RELEASE_SCRIPT,
            1,
            self._key(resource_key),
            token
        )
        return result == 1


class DatabaseLockBackend(LockBackend):
    """
    Lock backend using a row per held resource in ``distributed_locks``

    Set-if-absent is the primary key: an expired row is purged and an INSERT
    is attempted in the same transaction; a concurrent holder makes the
    INSERT fail with an integrity error.
    """

    def __init__(self, db_manager: DatabaseManager):
        self.db_manager = db_manager

    async def acquire(self, resource_key: str, token: str, ttl: float) -> bool:
        now = datetime.now(timezone.utc)
        try:
            async with self.db_manager.atomic_transaction() as session:
                await session.execute(
                    delete(DistributedLock).where(
                        DistributedLock.resource_key == resource_key,
                        DistributedLock.expires_at <= now
                    )
                )
                session.add(DistributedLock(
                    resource_key=resource_key,
                    token=token,
                    expires_at=now + timedelta(seconds=ttl)
                ))
                await session.flush()
            return True
        except IntegrityError:
            return False

    async def extend(self, resource_key: str, token: str, ttl: float) -> bool:
        now = datetime.now(timezone.utc)
        async with self.db_manager.atomic_transaction() as session:
            result = await session.execute(
                update(DistributedLock)
                .where(
                    DistributedLock.resource_key == resource_key,
                    DistributedLock.token == token,
                    DistributedLock.expires_at > now
                )
                .values(expires_at=now + timedelta(seconds=ttl))
                .execution_options(synchronize_session=False)
            )
            return result.rowcount == 1

    async def release(self, resource_key: str, token: str) -> bool:
        async with self.db_manager.atomic_transaction() as session:
            result = await session.execute(
                delete(DistributedLock)
                .where(
                    DistributedLock.resource_key == resource_key,
                    DistributedLock.token == token
                )
                .execution_options(synchronize_session=False)
            )
            return result.rowcount == 1


@dataclass
class LockHandle:
    """A held lock; ``lost`` flips when a keepalive renewal is refused"""
    manager: "LockManager"
    resource_key: str
    token: str
    ttl: float
    lost: bool = False
    _keepalive: Optional[asyncio.Task] = field(default=None, repr=False)

    async def extend(self, ttl: Optional[float] = None) -> bool:
        if ttl is not None:
            self.ttl = ttl
        extended = await self.manager.extend_lock(self.resource_key, self.token, self.ttl)
        if not extended:
            self.lost = True
        return extended


class LockManager:
    """
    Acquire, extend and release locks with retry and jittered backoff
    """

    def __init__(
        self,
        backend: LockBackend,
        default_ttl: float = settings.LOCK_TTL_SECONDS,
        retry_count: int = settings.LOCK_RETRY_COUNT,
        retry_delay: float = settings.LOCK_RETRY_DELAY_MS / 1000,
        retry_jitter: float = settings.LOCK_RETRY_JITTER_MS / 1000,
    ):
        self.backend = backend
        self.default_ttl = default_ttl
        self.retry_count = retry_count
        self.retry_delay = retry_delay
        self.retry_jitter = retry_jitter

    async def acquire_lock(self, resource_key: str, ttl: Optional[float] = None) -> Optional[str]:
        """
        Try once to take the lock

        Returns:
            The lock token, or None if the resource is already held

        Raises:
            ExternalServiceError: the lock store could not be reached
        """
        token = str(uuid.uuid4())
        try:
            acquired = await self.backend.acquire(resource_key, token, ttl or self.default_ttl)
        except Exception as e:
            logger.error(f"Error acquiring lock for {resource_key}: {e}", extra={"resource": resource_key})
            LOCK_ACQUISITIONS.labels(outcome="error").inc()
            raise ExternalServiceError("coordination_store", f"Lock store unavailable: {e}") from e

        if acquired:
            logger.debug(f"Lock acquired for {resource_key} with token {token}")
            LOCK_ACQUISITIONS.labels(outcome="acquired").inc()
            return token

        logger.debug(f"Failed to acquire lock for {resource_key} - already locked")
        LOCK_ACQUISITIONS.labels(outcome="busy").inc()
        return None

    async def extend_lock(self, resource_key: str, token: str, ttl: Optional[float] = None) -> bool:
        try:
            extended = await self.backend.extend(resource_key, token, ttl or self.default_ttl)
        except Exception as e:
            logger.error(f"Error extending lock for {resource_key}: {e}", extra={"resource": resource_key})
            return False

        if not extended:
            logger.warning(f"Failed to extend lock for {resource_key} - token mismatch or lock expired")
        return extended

    async def release_lock(self, resource_key: str, token: str) -> bool:
        try:
            released = await self.backend.release(resource_key, token)
        except Exception as e:
            logger.error(f"Error releasing lock for {resource_key}: {e}", extra={"resource": resource_key})
            return False

        if released:
            logger.debug(f"Lock released for {resource_key}")
        else:
            logger.warning(f"Failed to release lock for {resource_key} - token mismatch or lock expired")
        return released

    async def _acquire_with_retry(
        self,
        resource_key: str,
        ttl: float,
        retry_count: int,
        retry_delay: float,
        jitter: float,
    ) -> Optional[str]:
        attempts = max(retry_count, 1)
        for attempt in range(attempts):
            token = await self.acquire_lock(resource_key, ttl)
            if token:
                return token
            if attempt < attempts - 1:
                await asyncio.sleep(retry_delay + random.uniform(0, jitter))

        logger.warning(
            f"Failed to acquire lock for {resource_key} after {attempts} attempts",
            extra={"resource": resource_key}
        )
        return None

    async def with_lock(
        self,
        resource_key: str,
        fn: Callable[[], Awaitable[T]],
        *,
        ttl: Optional[float] = None,
        retry_count: Optional[int] = None,
        retry_delay: Optional[float] = None,
        jitter: Optional[float] = None,
    ) -> Optional[T]:
        """
        Run ``fn`` while holding the lock

        Returns None without running ``fn`` when the lock could not be taken
        within ``retry_count`` attempts. The lock is released on every exit
        path, including cancellation.
        """
        token = await self._acquire_with_retry(
            resource_key,
            ttl or self.default_ttl,
            self.retry_count if retry_count is None else retry_count,
            self.retry_delay if retry_delay is None else retry_delay,
            self.retry_jitter if jitter is None else jitter,
        )
        if token is None:
            return None

        try:
            return await fn()
        finally:
            await asyncio.shield(self.release_lock(resource_key, token))

    @asynccontextmanager
    async def hold(
        self,
        resource_key: str,
        *,
        ttl: Optional[float] = None,
        retry_count: Optional[int] = None,
        retry_delay: Optional[float] = None,
        jitter: Optional[float] = None,
        keepalive: bool = False,
    ):
        """
        Context manager form of ``with_lock``

        Raises LockUnavailableError when busy. With ``keepalive`` the lock is
        renewed every third of its TTL until the block exits.
        """
        ttl = ttl or self.default_ttl
        token = await self._acquire_with_retry(
            resource_key,
            ttl,
            self.retry_count if retry_count is None else retry_count,
            self.retry_delay if retry_delay is None else retry_delay,
            self.retry_jitter if jitter is None else jitter,
        )
        if token is None:
            raise LockUnavailableError(resource_key)

        handle = LockHandle(manager=self, resource_key=resource_key, token=token, ttl=ttl)
        if keepalive:
            handle._keepalive = asyncio.create_task(self._keep_alive(handle))

        try:
            yield handle
        finally:
            if handle._keepalive is not None:
                handle._keepalive.cancel()
                with suppress(asyncio.CancelledError):
                    await handle._keepalive
            await asyncio.shield(self.release_lock(resource_key, token))

    async def _keep_alive(self, handle: LockHandle) -> None:
        interval = handle.ttl / 3
        while True:
            await asyncio.sleep(interval)
            if not await handle.extend():
                logger.error(
                    f"Lost lock {handle.resource_key} while still held",
                    extra={"resource": handle.resource_key}
                )
                return


def build_lock_manager(redis_client: Any = None, db_manager: Optional[DatabaseManager] = None) -> LockManager:
    """
    Lock manager for the configured backend
    """
    if settings.LOCK_BACKEND == "database" or redis_client is None:
        return LockManager(DatabaseLockBackend(db_manager or DatabaseManager()))
    return LockManager(RedisLockBackend(redis_client))
