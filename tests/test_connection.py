"""Tests for the queue Connection Manager state machine."""
import pytest

from cache.broker import InMemoryBroker
from cache.connection import (
    ConnectionState, LinearBackoff, QueueConnectionManager, get_queue_connection,
    is_connection_error, reset_queue_connection,
)


class TestDisabled:
    def test_flag_off(self, make_config):
        manager = QueueConnectionManager(make_config(enabled=False))
        assert manager.state is ConnectionState.DISABLED
        assert manager.get_connection() is None
        assert not manager.is_available()

    def test_missing_uri(self, make_config):
        manager = QueueConnectionManager(make_config(redis_uri=""))
        assert not manager.is_enabled()
        assert manager.get_connection() is None

    @pytest.mark.asyncio
    async def test_report_error_keeps_disabled(self, make_config):
        manager = QueueConnectionManager(make_config(enabled=False))
        manager.report_error(ConnectionError("x"))
        assert manager.state is ConnectionState.DISABLED
        assert await manager.connect() is None


class TestMemoryBackend:
    def test_connects_synchronously(self, make_config):
        manager = QueueConnectionManager(make_config())
        assert manager.state is ConnectionState.DISCONNECTED
        handle = manager.get_connection()
        assert isinstance(handle, InMemoryBroker)
        assert manager.state is ConnectionState.CONNECTED
        assert manager.get_connection() is handle

    @pytest.mark.asyncio
    async def test_error_then_recover_keeps_broker(self, make_config):
        manager = QueueConnectionManager(make_config())
        handle = manager.get_connection()
        manager.report_error(ConnectionError("lost"))
        assert manager.state is ConnectionState.ERRORED
        assert not manager.is_available()
        assert manager.get_connection() is handle
        assert manager.is_available()
        await manager.disconnect()

    @pytest.mark.asyncio
    async def test_disconnect(self, make_config):
        manager = QueueConnectionManager(make_config())
        handle = await manager.connect()
        await manager.disconnect()
        assert handle.closed
        assert manager.state is ConnectionState.DISCONNECTED
        assert manager.get_connection() is not handle


class TestRedisBackend:
    def test_get_connection_without_loop_defers(self, make_config):
        manager = QueueConnectionManager(make_config(redis_uri="redis://127.0.0.1:1/0"))
        assert manager.get_connection() is None
        assert manager.state is ConnectionState.DISCONNECTED

    @pytest.mark.asyncio
    async def test_unreachable_server_is_abandoned(self, make_config):
        manager = QueueConnectionManager(
            make_config(redis_uri="redis://127.0.0.1:1/0"),
            max_attempts=2,
            retry_step_ms=1,
            retry_ceiling_ms=5,
        )
        assert manager.get_connection() is None
        assert manager.state is ConnectionState.CONNECTING
        assert await manager.connect() is None
        assert manager.state is ConnectionState.ERRORED
        await manager.disconnect()
        assert manager.state is ConnectionState.DISCONNECTED

    @pytest.mark.asyncio
    async def test_real_server(self, make_config, redis_url):
        manager = QueueConnectionManager(make_config(redis_uri=redis_url))
        handle = await manager.connect()
        assert handle is not None
        assert manager.state is ConnectionState.CONNECTED
        assert await handle.ping()
        await manager.disconnect()


class TestHelpers:
    def test_linear_backoff_capped(self):
        backoff = LinearBackoff(step=0.1, cap=3.0)
        assert backoff.compute(1) == pytest.approx(0.1)
        assert backoff.compute(5) == pytest.approx(0.5)
        assert backoff.compute(100) == 3.0

    def test_is_connection_error(self):
        from redis.exceptions import ConnectionError as RedisConnectionError
        assert is_connection_error(RedisConnectionError("x"))
        assert is_connection_error(ConnectionRefusedError())
        assert not is_connection_error(ValueError("x"))

    def test_singleton(self, make_config):
        reset_queue_connection()
        conf = make_config()
        first = get_queue_connection(conf)
        assert get_queue_connection() is first
        reset_queue_connection()
        assert get_queue_connection(conf) is not first
