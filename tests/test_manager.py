"""Tests for the per-instance queue registry."""
import pytest
import pytest_asyncio

from cache.connection import ConnectionState
from job_queue.manager import InstanceQueueRegistry
from job_queue.types import Presence


@pytest_asyncio.fixture
async def registry(connection, rate_conf):
    reg = InstanceQueueRegistry(connection, rate_conf)
    yield reg
    await reg.close_all()


class TestInstanceQueueRegistry:
    @pytest.mark.asyncio
    async def test_get_or_create_is_idempotent(self, registry):
        a = registry.get_or_create("bot-a", "a")
        assert registry.get_or_create("bot-a", "a") is a
        assert "a" in registry
        assert len(registry) == 1
        assert a.service.queue_name == a.worker.queue_name == "whatsapp_a"

    @pytest.mark.asyncio
    async def test_instances_isolated(self, registry):
        a = registry.get_or_create("bot-a", "a")
        b = registry.get_or_create("bot-b", "b")
        assert a.service is not b.service
        assert a.service.queue_name != b.service.queue_name

    @pytest.mark.asyncio
    async def test_attach_client_starts_worker(self, registry, session):
        pair = registry.attach_client("bot-a", "a", session)
        assert pair.worker.is_running()
        job = await pair.service.add_presence_job(Presence.AVAILABLE)
        result = await pair.service.wait_for_job(job)
        assert result.success is True
        session.send_presence_update.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_attach_before_connection_ready(self, registry, connection, session):
        connection._state = ConnectionState.CONNECTING
        pair = registry.attach_client("bot-a", "a", session)
        assert pair.worker.is_running()
        connection._state = ConnectionState.DISCONNECTED
        job = await pair.service.add_presence_job(Presence.AVAILABLE)
        assert job is not None
        result = await pair.service.wait_for_job(job, 1000)
        assert result.success is True

    @pytest.mark.asyncio
    async def test_detach_client(self, registry, session):
        pair = registry.attach_client("bot-a", "a", session)
        registry.detach_client("a")
        registry.detach_client("unknown")
        assert pair.worker.is_running()
        assert pair.worker._client is None

    @pytest.mark.asyncio
    async def test_remove(self, registry, session):
        pair = registry.attach_client("bot-a", "a", session)
        assert await registry.remove("a") is True
        assert await registry.remove("a") is False
        assert not pair.worker.is_running()
        assert registry.get("a") is None

    @pytest.mark.asyncio
    async def test_stats(self, registry, session):
        pair = registry.get_or_create("bot-a", "a")
        await pair.service.add_group_metadata_job("1@g.us")
        stats = await registry.stats()
        assert stats["a"]["instance"] == "bot-a"
        assert stats["a"]["worker_running"] is False
        assert stats["a"]["backoff_ms"] == 0
        assert stats["a"]["queue"]["waiting"] == 1

    @pytest.mark.asyncio
    async def test_close_all(self, registry, session):
        registry.attach_client("bot-a", "a", session)
        registry.attach_client("bot-b", "b", session)
        await registry.close_all()
        assert len(registry) == 0

    @pytest.mark.asyncio
    async def test_disabled_stats(self, disabled_conf):
        from cache.connection import QueueConnectionManager
        reg = InstanceQueueRegistry(QueueConnectionManager(disabled_conf), disabled_conf)
        reg.get_or_create("bot-a", "a")
        assert (await reg.stats())["a"]["queue"] is None
        await reg.close_all()
