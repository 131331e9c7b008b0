"""
Queue Connection Manager — process-wide, lazily established queue handle.

States:
  DISABLED      feature flag off or no URI (permanent)
  DISCONNECTED  not yet connected, or closed
  CONNECTING    readiness check in flight
  CONNECTED     handle usable
  ERRORED       last attempt or command failed; next get_connection() retries

Nothing here blocks a caller waiting for the backend: get_connection()
returns None until the handle is ready and callers proceed unqueued.
"""
from __future__ import annotations

import asyncio
import structlog
from enum import Enum
from typing import Optional, Union

import redis.asyncio as aioredis
from redis.asyncio.retry import Retry
from redis.backoff import AbstractBackoff
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import RedisError
from redis.exceptions import TimeoutError as RedisTimeoutError
from tenacity import (
    AsyncRetrying, RetryCallState, retry_if_exception_type, stop_after_attempt,
    wait_incrementing,
)

from cache.broker import InMemoryBroker
from config.settings import RateLimitConfig, get_settings

logger = structlog.get_logger()

MEMORY_URI = "memory://"

QueueHandle = Union[aioredis.Redis, InMemoryBroker]


class ConnectionState(str, Enum):
    DISABLED = "disabled"
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    ERRORED = "errored"


class LinearBackoff(AbstractBackoff):
    """attempt × step, capped."""

    def __init__(self, step: float = 0.1, cap: float = 3.0):
        self._step = step
        self._cap = cap

    def compute(self, failures: int) -> float:
        return min(failures * self._step, self._cap)


class QueueConnectionManager:
    """
    Owns the single backend handle shared by every dispatcher/worker pair.

    Usage:
        manager = QueueConnectionManager(conf)
        handle = manager.get_connection()   # None while connecting/disabled
        handle = await manager.connect()    # await readiness (startup)
        await manager.disconnect()
    """

    def __init__(
        self,
        config: RateLimitConfig = None,
        max_attempts: int = 10,
        retry_step_ms: int = 100,
        retry_ceiling_ms: int = 3000,
    ):
        self.conf = config or get_settings().rate_limit
        self.max_attempts = max_attempts
        self.retry_step_ms = retry_step_ms
        self.retry_ceiling_ms = retry_ceiling_ms
        self._client: Optional[QueueHandle] = None
        self._connect_task: Optional[asyncio.Task] = None
        self._state = ConnectionState.DISCONNECTED if self.is_enabled() else ConnectionState.DISABLED

    @property
    def state(self) -> ConnectionState:
        return self._state

    def is_enabled(self) -> bool:
        return bool(self.conf and self.conf.enabled and self.conf.redis_uri)

    def is_available(self) -> bool:
        return self._state is ConnectionState.CONNECTED and self._client is not None

    def get_connection(self) -> Optional[QueueHandle]:
        """Return a ready handle, or None and start connecting in the background."""
        if not self.is_enabled():
            return None

        if self.is_available():
            return self._client

        if self._state is ConnectionState.CONNECTING:
            return None

        if self.conf.redis_uri.startswith(MEMORY_URI):
            if not isinstance(self._client, InMemoryBroker) or self._client.closed:
                self._client = InMemoryBroker()
            self._state = ConnectionState.CONNECTED
            logger.info("queue_connection_ready", backend="memory")
            return self._client

        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.warning("queue_connection_deferred", reason="no running event loop")
            return None

        self._state = ConnectionState.CONNECTING
        self._connect_task = loop.create_task(self._establish())
        return None

    async def connect(self) -> Optional[QueueHandle]:
        """Start connecting if needed and wait for the outcome."""
        handle = self.get_connection()
        if handle is not None:
            return handle
        if self._connect_task is not None:
            await asyncio.shield(self._connect_task)
        return self._client if self.is_available() else None

    def _create_client(self) -> aioredis.Redis:
        backoff = LinearBackoff(self.retry_step_ms / 1000, self.retry_ceiling_ms / 1000)
        return aioredis.from_url(
            self.conf.redis_uri,
            decode_responses=True,
            retry=Retry(backoff, retries=self.max_attempts),
            retry_on_error=[RedisConnectionError, RedisTimeoutError],
            health_check_interval=30,
        )

    def _log_retry(self, retry_state: RetryCallState) -> None:
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        logger.warning("queue_connection_retry",
                       attempt=retry_state.attempt_number,
                       error=str(exc))

    async def _establish(self) -> None:
        previous, self._client = self._client, None
        if isinstance(previous, aioredis.Redis):
            try:
                await previous.aclose()
            except RedisError as e:
                logger.debug("queue_connection_stale_close_failed", error=str(e))

        client = self._create_client()
        logger.info("queue_connection_connecting")
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_incrementing(
                start=self.retry_step_ms / 1000,
                increment=self.retry_step_ms / 1000,
                max=self.retry_ceiling_ms / 1000,
            ),
            retry=retry_if_exception_type((RedisError, OSError)),
            before_sleep=self._log_retry,
            reraise=True,
        )
        try:
            async for attempt in retrying:
                with attempt:
                    await client.ping()
        except (RedisError, OSError) as e:
            logger.error("queue_connection_abandoned",
                         attempts=self.max_attempts,
                         error=str(e))
            self._state = ConnectionState.ERRORED
            try:
                await client.aclose()
            except RedisError as close_error:
                logger.debug("queue_connection_stale_close_failed", error=str(close_error))
            return

        self._client = client
        self._state = ConnectionState.CONNECTED
        logger.info("queue_connection_ready", backend="redis")

    def report_error(self, error: BaseException) -> None:
        """A command on the shared handle failed at the transport level."""
        logger.error("queue_connection_error", error=str(error))
        if self._state is not ConnectionState.DISABLED:
            self._state = ConnectionState.ERRORED

    async def disconnect(self) -> None:
        if self._connect_task is not None and not self._connect_task.done():
            self._connect_task.cancel()
            try:
                await self._connect_task
            except asyncio.CancelledError:
                pass
        self._connect_task = None

        client, self._client = self._client, None
        if client is not None:
            try:
                await client.aclose()
            except (RedisError, OSError) as e:
                logger.error("queue_connection_disconnect_error", error=str(e))
        if self._state is not ConnectionState.DISABLED:
            self._state = ConnectionState.DISCONNECTED
        logger.info("queue_connection_closed")


# ──────────────────────────────────────────────────────────────
#  Singleton
# ──────────────────────────────────────────────────────────────

_instance: Optional[QueueConnectionManager] = None


def get_queue_connection(config: RateLimitConfig = None) -> QueueConnectionManager:
    """Return the process-wide connection manager."""
    global _instance
    if _instance is None:
        _instance = QueueConnectionManager(config)
    return _instance


def reset_queue_connection() -> None:
    """Reset the singleton (for testing)."""
    global _instance
    _instance = None


def is_connection_error(error: BaseException) -> bool:
    return isinstance(error, (RedisConnectionError, RedisTimeoutError, ConnectionError))

