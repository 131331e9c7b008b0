"""Tests for the per-instance Dispatcher (WhatsAppQueueService)."""
import asyncio
import random
import time
from unittest.mock import AsyncMock

import pytest

from cache.connection import ConnectionState, QueueConnectionManager
from job_queue.backend import JobState
from job_queue.service import WhatsAppQueueService, queue_name_for
from job_queue.types import (
    JobType, JoinRequestAction, MessageKey, Presence, QueuePriority, QueueStats,
)


class TestDisabled:
    @pytest.mark.asyncio
    async def test_all_operations_return_none(self, disabled_conf):
        svc = WhatsAppQueueService("bot", "i1", QueueConnectionManager(disabled_conf), disabled_conf)
        assert not svc.is_queue_enabled()
        assert await svc.add_send_message_job("1@s.whatsapp.net", {"text": "hi"}) is None
        assert await svc.add_presence_job(Presence.COMPOSING, "1@s.whatsapp.net") is None
        assert await svc.add_group_metadata_job("1@g.us") is None
        assert await svc.add_read_messages_job([MessageKey(remote_jid="1@s.whatsapp.net", id="A")]) is None
        assert await svc.add_on_whatsapp_job("1@s.whatsapp.net") is None
        assert await svc.add_list_join_requests_job("1@g.us") is None
        assert await svc.add_update_join_request_job("1@g.us", ["a"], JoinRequestAction.APPROVE) is None
        assert await svc.get_queue_stats() is None
        await svc.close()

    @pytest.mark.asyncio
    async def test_backend_down_returns_none(self, make_config):
        conf = make_config(redis_uri="redis://127.0.0.1:1/0")
        manager = QueueConnectionManager(conf, max_attempts=1, retry_step_ms=1)
        svc = WhatsAppQueueService("bot", "i1", manager, conf)
        assert await svc.add_send_message_job("1@s.whatsapp.net", {"text": "hi"}) is None
        assert await svc.get_queue_stats() is None
        await manager.disconnect()


class TestBinding:
    def test_queue_name(self):
        assert queue_name_for("abc") == "whatsapp_abc"

    @pytest.mark.asyncio
    async def test_rebinds_after_reconnect(self, service, connection):
        first = service._queue
        await connection.disconnect()
        assert await service.add_presence_job(Presence.AVAILABLE) is not None
        assert service._queue is not first
        assert service._queue.connection is connection.get_connection()

    @pytest.mark.asyncio
    async def test_rebind_closes_stale_events(self, service, connection):
        job = await service.add_presence_job(Presence.AVAILABLE)
        await service.wait_for_job(job, timeout_ms=10)
        stale = service._events
        await connection.disconnect()
        job = await service.add_presence_job(Presence.AVAILABLE)
        await service.wait_for_job(job, timeout_ms=10)
        assert service._events is not stale
        assert stale._closed is True

    @pytest.mark.asyncio
    async def test_add_failure_reports_connection_error(self, service, connection):
        service._ensure_queue()
        service._queue.add = AsyncMock(side_effect=ConnectionError("socket closed"))
        assert await service.add_presence_job(Presence.AVAILABLE) is None
        assert not connection.is_available()


class TestPriorities:
    @pytest.mark.asyncio
    async def test_reply_vs_outgoing(self, service):
        reply = await service.add_send_message_job("1@s.whatsapp.net", {"text": "a"}, is_reply=True)
        outgoing = await service.add_send_message_job("1@s.whatsapp.net", {"text": "b"}, is_reply=False)
        assert reply.priority == QueuePriority.REPLY == 2
        assert outgoing.priority == QueuePriority.OUTGOING == 3
        assert reply.name == JobType.SEND_MESSAGE.value
        assert reply.data["is_reply"] is True

    @pytest.mark.asyncio
    async def test_catalog_priorities(self, service):
        jobs = {
            "presence": await service.add_presence_job(Presence.COMPOSING, "1@s.whatsapp.net"),
            "metadata": await service.add_group_metadata_job("1@g.us"),
            "read": await service.add_read_messages_job([MessageKey(remote_jid="1@s.whatsapp.net", id="A")]),
            "on_whatsapp": await service.add_on_whatsapp_job("1@s.whatsapp.net"),
            "list_join": await service.add_list_join_requests_job("1@g.us"),
            "update_join": await service.add_update_join_request_job("1@g.us", ["a"], JoinRequestAction.REJECT),
        }
        assert jobs["presence"].priority == QueuePriority.PRESENCE
        assert jobs["metadata"].priority == QueuePriority.METADATA
        assert jobs["read"].priority == QueuePriority.OUTGOING
        assert jobs["on_whatsapp"].priority == QueuePriority.METADATA
        assert jobs["list_join"].priority == QueuePriority.METADATA
        assert jobs["update_join"].priority == QueuePriority.OUTGOING
        assert jobs["update_join"].data["action"] == "reject"

    @pytest.mark.asyncio
    async def test_reply_dequeued_first(self, service):
        outgoing = await service.add_send_message_job("1@s.whatsapp.net", {"text": "b"})
        reply = await service.add_send_message_job("1@s.whatsapp.net", {"text": "a"}, is_reply=True)
        first, _ = await service._queue.reserve()
        second, _ = await service._queue.reserve()
        assert (first.id, second.id) == (reply.id, outgoing.id)


class TestJitter:
    @pytest.mark.asyncio
    async def test_delay_bounds(self, connection, make_config):
        conf = make_config(message_delay_ms=1500, jitter_factor=0.5)
        svc = WhatsAppQueueService("bot", "i1", connection, conf, rng=random.Random(3))
        for _ in range(200):
            assert 750 <= svc.calculate_jittered_delay(1500) <= 2250

    @pytest.mark.asyncio
    async def test_send_is_delayed(self, connection, make_config):
        conf = make_config(message_delay_ms=1500, jitter_factor=0.5)
        svc = WhatsAppQueueService("bot", "i1", connection, conf)
        job = await svc.add_send_message_job("1@s.whatsapp.net", {"text": "hi"})
        assert 750 <= job.delay <= 2250
        assert await job.get_state() is JobState.DELAYED

    @pytest.mark.asyncio
    async def test_presence_never_delayed(self, connection, make_config):
        conf = make_config(message_delay_ms=1500, jitter_factor=0.5)
        svc = WhatsAppQueueService("bot", "i1", connection, conf)
        job = await svc.add_presence_job(Presence.COMPOSING)
        assert job.delay == 0
        assert await job.get_state() is JobState.WAITING


class TestDedup:
    @pytest.mark.asyncio
    async def test_group_metadata_single_job(self, service):
        a = await service.add_group_metadata_job("123@g.us")
        b = await service.add_group_metadata_job("123@g.us")
        assert a.id == b.id == "group-metadata:123@g.us"
        assert (await service.get_queue_stats()).waiting == 1

    @pytest.mark.asyncio
    async def test_on_whatsapp_single_job(self, service):
        a = await service.add_on_whatsapp_job("9198@s.whatsapp.net")
        b = await service.add_on_whatsapp_job("9198@s.whatsapp.net")
        assert a.id == b.id == "on-whatsapp:9198@s.whatsapp.net"

    @pytest.mark.asyncio
    async def test_distinct_keys(self, service):
        a = await service.add_group_metadata_job("1@g.us")
        b = await service.add_group_metadata_job("2@g.us")
        assert a.id != b.id

    @pytest.mark.asyncio
    async def test_finished_key_enqueues_fresh(self, service):
        a = await service.add_group_metadata_job("1@g.us")
        job, _ = await service._queue.reserve()
        await service._queue.complete(job, {"success": True})
        b = await service.add_group_metadata_job("1@g.us")
        assert b.id == a.id
        assert await b.get_state() is JobState.WAITING


class TestWaitForJob:
    @pytest.mark.asyncio
    async def test_timeout_returns_retryable_failure(self, service):
        job = await service.add_presence_job(Presence.AVAILABLE)
        started = time.monotonic()
        result = await service.wait_for_job(job, timeout_ms=100)
        elapsed = time.monotonic() - started
        assert result.success is False
        assert result.retryable is True
        assert "timed out" in result.error
        assert elapsed < 1.0

    @pytest.mark.asyncio
    async def test_completed_result_typed(self, service):
        job = await service.add_on_whatsapp_job("1@s.whatsapp.net")
        reserved, _ = await service._queue.reserve()
        await service._queue.complete(reserved, {"success": True, "data": [{"exists": True, "jid": "1@s.whatsapp.net"}]})
        result = await service.wait_for_job(job)
        assert result.success is True
        assert result.data[0].exists is True

    @pytest.mark.asyncio
    async def test_failed_job_returns_failure(self, service):
        job = await service.add_presence_job(Presence.AVAILABLE)
        reserved, _ = await service._queue.reserve()
        await service._queue.fail(reserved, RuntimeError("rate-overlimit"))
        # drain the remaining retry attempts
        while await job.get_state() is not JobState.FAILED:
            await asyncio.sleep(0.01)
            reserved, _ = await service._queue.reserve()
            if reserved is not None:
                await service._queue.fail(reserved, RuntimeError("rate-overlimit"))
        result = await service.wait_for_job(job, timeout_ms=100)
        assert result.success is False
        assert result.error == "rate-overlimit"
        assert result.retryable is True

    @pytest.mark.asyncio
    async def test_dedup_callers_share_completion(self, service):
        a = await service.add_group_metadata_job("1@g.us")
        b = await service.add_group_metadata_job("1@g.us")
        waits = asyncio.gather(service.wait_for_job(a), service.wait_for_job(b))
        await asyncio.sleep(0)
        reserved, _ = await service._queue.reserve()
        await service._queue.complete(reserved, {"success": True, "data": {"subject": "Dealers"}})
        first, second = await waits
        assert first.data == second.data == {"subject": "Dealers"}

    @pytest.mark.asyncio
    async def test_never_raises_after_close(self, service):
        job = await service.add_presence_job(Presence.AVAILABLE)
        await service.close()
        result = await service.wait_for_job(job, timeout_ms=50)
        assert result.success is False
        assert result.retryable is True

    @pytest.mark.asyncio
    async def test_disconnect_while_waiting(self, service, connection):
        job = await service.add_presence_job(Presence.AVAILABLE)
        waiter = asyncio.ensure_future(service.wait_for_job(job, timeout_ms=2000))
        await asyncio.sleep(0.01)
        await connection.disconnect()
        result = await waiter
        assert result.success is False
        assert result.retryable is True
        assert "closed" in result.error
        assert connection.state is ConnectionState.DISCONNECTED

    @pytest.mark.asyncio
    async def test_close_while_waiting(self, service):
        job = await service.add_presence_job(Presence.AVAILABLE)
        waiter = asyncio.ensure_future(service.wait_for_job(job, timeout_ms=2000))
        await asyncio.sleep(0.01)
        await service.close()
        result = await waiter
        assert result.success is False
        assert result.retryable is True


class TestStatsAndClose:
    @pytest.mark.asyncio
    async def test_stats(self, service):
        await service.add_presence_job(Presence.AVAILABLE)
        await service.add_group_metadata_job("1@g.us")
        stats = await service.get_queue_stats()
        assert isinstance(stats, QueueStats)
        assert stats.waiting == 2
        assert stats.active == stats.completed == stats.failed == stats.delayed == 0

    @pytest.mark.asyncio
    async def test_close_idempotent(self, service):
        await service.close()
        await service.close()
        assert await service.add_presence_job(Presence.AVAILABLE) is None
