"""Per-key concurrency primitives and a small TTL cache.

``SingleFlight`` collapses concurrent calls for one key into a single
in-flight operation, ``KeyedLock`` serializes work per key, and ``TTLCache``
remembers short-lived facts such as recent container health checks.
"""

import asyncio
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Generic, TypeVar

T = TypeVar("T")


@dataclass
class CacheEntry(Generic[T]):
    """A cached value with expiration metadata."""

    value: T
    expires_at: float
    created_at: float = field(default_factory=time.monotonic)

    @property
    def is_expired(self) -> bool:
        """Check if the entry has expired."""
        return time.monotonic() > self.expires_at


class TTLCache(Generic[T]):
    """In-memory cache whose entries expire after a fixed TTL.

    Example:
        health = TTLCache[bool](ttl_seconds=60)
        health.set(container_id, True)
        if health.get(container_id): ...
    """

    def __init__(self, ttl_seconds: float = 60, max_size: int = 1000) -> None:
        """Initialize cache.

        Args:
            ttl_seconds: Time-to-live for cache entries
            max_size: Maximum number of entries before the oldest are evicted
        """
        self.ttl_seconds = ttl_seconds
        self.max_size = max_size
        self._cache: dict[str, CacheEntry[T]] = {}

    def get(self, key: str) -> T | None:
        """Get a value, or None if missing or expired."""
        entry = self._cache.get(key)
        if entry is None:
            return None
        if entry.is_expired:
            del self._cache[key]
            return None
        return entry.value

    def set(self, key: str, value: T, ttl: float | None = None) -> None:
        """Store a value with an optional TTL override."""
        if len(self._cache) >= self.max_size and key not in self._cache:
            self._evict_oldest()
        ttl_seconds = self.ttl_seconds if ttl is None else ttl
        self._cache[key] = CacheEntry(value=value, expires_at=time.monotonic() + ttl_seconds)

    def _evict_oldest(self) -> None:
        """Evict the oldest 10% of entries."""
        sorted_keys = sorted(self._cache, key=lambda k: self._cache[k].created_at)
        for key in sorted_keys[: max(1, len(sorted_keys) // 10)]:
            del self._cache[key]

    def delete(self, key: str) -> bool:
        """Delete a key. Returns True if it existed."""
        return self._cache.pop(key, None) is not None

    def clear(self) -> None:
        self._cache.clear()

    @property
    def size(self) -> int:
        return len(self._cache)


class SingleFlight:
    """Deduplicates concurrent calls to the same function with the same key.

    Only one call per key is in flight at a time; other callers wait for the
    result of the first call. The operation runs in its own task, so a caller
    that stops waiting (for example on a timeout) does not cancel it.

    Example:
        sf = SingleFlight()
        sandbox = await sf.do(tenant_id, lambda: create_sandbox(tenant_id))
    """

    def __init__(self) -> None:
        self._in_flight: dict[str, asyncio.Future[Any]] = {}
        self._tasks: set[asyncio.Task[None]] = set()

    def start(self, key: str, func: Callable[[], Awaitable[T]]) -> asyncio.Future[T]:
        """Start ``func`` for ``key`` unless a call is already in flight.

        Returns:
            Future resolving to the shared result
        """
        future = self._in_flight.get(key)
        if future is not None:
            return future

        future = asyncio.get_running_loop().create_future()
        self._in_flight[key] = future
        task = asyncio.create_task(self._execute(key, func, future))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return future

    async def do(self, key: str, func: Callable[[], Awaitable[T]]) -> T:
        """Execute function, deduplicating concurrent calls.

        Args:
            key: Unique key for this operation
            func: Async function to execute

        Returns:
            Result from func (may be from another caller)
        """
        return await asyncio.shield(self.start(key, func))

    def in_flight(self, key: str) -> bool:
        """Whether a call for ``key`` is currently running."""
        return key in self._in_flight

    async def _execute(
        self,
        key: str,
        func: Callable[[], Awaitable[T]],
        future: asyncio.Future[T],
    ) -> None:
        try:
            result = await func()
        except asyncio.CancelledError:
            future.cancel()
            raise
        except Exception as e:
            if not future.done():
                future.set_exception(e)
                # Mark retrieved so callers that gave up do not trigger warnings
                future.exception()
        else:
            if not future.done():
                future.set_result(result)
        finally:
            self._in_flight.pop(key, None)


class KeyedLock:
    """A mutex per key, created on demand and dropped when unused.

    Example:
        locks = KeyedLock()
        async with locks.hold(tenant_id):
            await stop_sandbox(tenant_id)
    """

    def __init__(self) -> None:
        self._locks: dict[str, asyncio.Lock] = {}
        self._waiters: dict[str, int] = {}

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        """Hold the lock for ``key`` for the duration of the block."""
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        self._waiters[key] = self._waiters.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._waiters[key] -= 1
            if self._waiters[key] == 0:
                del self._waiters[key]
                del self._locks[key]

    def locked(self, key: str) -> bool:
        """Whether the lock for ``key`` is currently held."""
        lock = self._locks.get(key)
        return lock is not None and lock.locked()

    def __len__(self) -> int:
        return len(self._locks)
