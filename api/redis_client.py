"""
Shared Redis connection for the job and result streams.

One connection pool per process. A failed connection is retried on demand,
but a circuit breaker stops callers from reconnecting on every message while
Redis is down.
"""

import asyncio
import logging
import time
from typing import Callable, Optional

from redis.asyncio import ConnectionPool, Redis
from redis.exceptions import ConnectionError as RedisConnectionError

from config import (
    REDIS_HEALTH_CHECK_INTERVAL,
    REDIS_POOL_SIZE,
    REDIS_SOCKET_CONNECT_TIMEOUT,
    REDIS_SOCKET_TIMEOUT,
    REDIS_URL,
)

logger = logging.getLogger(__name__)

CIRCUIT_FAILURE_THRESHOLD = 3
CIRCUIT_BASE_BACKOFF_SECONDS = 30.0
CIRCUIT_MAX_BACKOFF_SECONDS = 300.0


class CircuitBreaker:
    """
    Counts consecutive failures and refuses calls for a while once too many pile up.

    The refusal window starts at ``base_backoff`` and doubles with every further
    failure up to ``max_backoff``. When the window has passed a single call is
    let through (half-open); its outcome either resets or re-opens the circuit.
    """

    def __init__(
        self,
        threshold: int = CIRCUIT_FAILURE_THRESHOLD,
        base_backoff: float = CIRCUIT_BASE_BACKOFF_SECONDS,
        max_backoff: float = CIRCUIT_MAX_BACKOFF_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.threshold = threshold
        self.base_backoff = base_backoff
        self.max_backoff = max_backoff
        self.clock = clock
        self.failures = 0
        self.open_until: Optional[float] = None

    @property
    def is_open(self) -> bool:
        return self.open_until is not None and self.clock() < self.open_until

    def allow(self) -> bool:
        """Whether a call may be attempted now."""
        if self.open_until is None:
            return True
        if self.clock() < self.open_until:
            return False
        self.open_until = None
        logger.info("Redis circuit half-open, trying to reconnect")
        return True

    def record_failure(self) -> Optional[float]:
        """Count a failure; returns the backoff in seconds if the circuit opened."""
        self.failures += 1
        if self.failures < self.threshold:
            return None

        backoff = min(self.max_backoff, self.base_backoff * 2 ** (self.failures - self.threshold))
        self.open_until = self.clock() + backoff
        logger.warning(f"Redis circuit opened for {backoff:.0f}s after {self.failures} consecutive failures")
        return backoff

    def record_success(self) -> None:
        if self.failures:
            logger.info(f"Redis connection recovered after {self.failures} failures")
        self.failures = 0
        self.open_until = None


class RedisClient:
    """Process-wide Redis client. Use ``get_instance()`` rather than the constructor."""

    _instance: Optional["RedisClient"] = None
    _lock: Optional[asyncio.Lock] = None
    _lock_loop: Optional[asyncio.AbstractEventLoop] = None

    def __init__(self, url: str = REDIS_URL, breaker: Optional[CircuitBreaker] = None) -> None:
        self.url = url
        self.breaker = breaker or CircuitBreaker()
        self._pool: Optional[ConnectionPool] = None
        self._client: Optional[Redis] = None
        self._healthy = False
        self._last_ping: Optional[float] = None

    @classmethod
    def _current_lock(cls) -> asyncio.Lock:
        # A lock is tied to the loop it was first awaited on; tests run many loops
        loop = asyncio.get_running_loop()
        if cls._lock is None or cls._lock_loop is not loop:
            cls._lock = asyncio.Lock()
            cls._lock_loop = loop
        return cls._lock

    @classmethod
    async def get_instance(cls) -> "RedisClient":
        async with cls._current_lock():
            if cls._instance is None:
                instance = cls()
                await instance.connect()
                cls._instance = instance
            return cls._instance

    @classmethod
    async def reset_instance(cls) -> None:
        """Close and forget the shared client (shutdown and tests)."""
        async with cls._current_lock():
            if cls._instance is not None:
                await cls._instance.close()
                cls._instance = None

    @property
    def is_available(self) -> bool:
        return bool(self.url) and self._client is not None and self._healthy and not self.breaker.is_open

    async def connect(self) -> bool:
        """Create the pool if needed and ping; returns whether Redis answered."""
        if not self.url:
            logger.warning("VCMPRS_REDIS_URL is empty, job streams are unavailable")
            return False

        if self._client is None:
            self._pool = ConnectionPool.from_url(
                self.url,
                max_connections=REDIS_POOL_SIZE,
                socket_timeout=REDIS_SOCKET_TIMEOUT,
                socket_connect_timeout=REDIS_SOCKET_CONNECT_TIMEOUT,
                retry_on_error=[RedisConnectionError],
                decode_responses=True,
            )
            self._client = Redis(connection_pool=self._pool)

        return await self._ping()

    async def _ping(self) -> bool:
        try:
            await self._client.ping()
        except Exception as e:
            logger.warning(f"Redis ping failed: {e}")
            self._healthy = False
            self.breaker.record_failure()
            return False

        if not self._healthy:
            # Never log credentials
            logger.info(f"Redis connection established: {self.url.split('@')[-1]}")
        self._healthy = True
        self._last_ping = time.monotonic()
        self.breaker.record_success()
        return True

    async def get_client(self) -> Optional[Redis]:
        """The Redis client, or None while Redis is unreachable."""
        if self.is_available:
            return self._client
        if not self.url or not self.breaker.allow():
            return None
        if await self.connect():
            return self._client
        return None

    async def health_check(self) -> bool:
        """Ping Redis at most once per REDIS_HEALTH_CHECK_INTERVAL seconds."""
        if self._client is None:
            return False
        if self._healthy and self._last_ping is not None:
            if time.monotonic() - self._last_ping < REDIS_HEALTH_CHECK_INTERVAL:
                return True
        return await self._ping()

    async def close(self) -> None:
        if self._client is not None:
            try:
                await self._client.aclose()
            except Exception as e:
                logger.debug(f"Error closing Redis client: {e}")
        if self._pool is not None:
            try:
                await self._pool.disconnect()
            except Exception as e:
                logger.debug(f"Error disconnecting Redis pool: {e}")
        self._client = None
        self._pool = None
        self._healthy = False


async def get_redis() -> Optional[Redis]:
    """Shared Redis client, or None if Redis is unavailable."""
    client = await RedisClient.get_instance()
    return await client.get_client()
