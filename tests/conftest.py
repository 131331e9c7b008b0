"""Shared test fixtures for the WhatsApp outbound queue."""
import os
from dataclasses import replace
from unittest.mock import AsyncMock

import pytest
import pytest_asyncio

from cache.connection import QueueConnectionManager, reset_queue_connection
from config.settings import RateLimitConfig, reset_settings
from job_queue.service import WhatsAppQueueService
from job_queue.worker import WhatsAppQueueWorker

INSTANCE_NAME = "sales-bot"
INSTANCE_ID = "inst-001"


def fast_config(**overrides) -> RateLimitConfig:
    """In-process backend with delays shrunk so tests run in milliseconds."""
    conf = RateLimitConfig(
        enabled=True,
        redis_uri="memory://",
        max_retries=3,
        initial_backoff_ms=10,
        backoff_multiplier=2.0,
        max_backoff_ms=80,
        backoff_jitter_factor=0.0,
        backoff_reset_ms=300000,
        message_delay_ms=0,
        jitter_factor=0.0,
        messages_per_minute=1000,
        queue_timeout_ms=2000,
        poll_interval_ms=10,
    )
    return replace(conf, **overrides)


def make_session() -> AsyncMock:
    session = AsyncMock()
    session.send_message.return_value = {"key": {"id": "MSG1"}, "status": 1}
    session.send_presence_update.return_value = None
    session.fetch_group_metadata.return_value = {"id": "123@g.us", "subject": "Dealers"}
    session.mark_read.return_value = None
    session.check_registration.return_value = [{"exists": True, "jid": "919876543210@s.whatsapp.net"}]
    session.list_join_requests.return_value = [{"jid": "111@s.whatsapp.net"}]
    session.update_join_requests.return_value = [{"jid": "111@s.whatsapp.net", "status": "200"}]
    return session


@pytest.fixture(autouse=True)
def _reset_singletons():
    yield
    reset_queue_connection()
    reset_settings()


@pytest.fixture
def rate_conf() -> RateLimitConfig:
    return fast_config()


@pytest.fixture
def disabled_conf() -> RateLimitConfig:
    return fast_config(enabled=False)


@pytest_asyncio.fixture
async def connection(rate_conf):
    manager = QueueConnectionManager(rate_conf)
    yield manager
    await manager.disconnect()


@pytest.fixture
def session() -> AsyncMock:
    return make_session()


@pytest_asyncio.fixture
async def service(connection, rate_conf):
    svc = WhatsAppQueueService(INSTANCE_NAME, INSTANCE_ID, connection, rate_conf)
    yield svc
    await svc.close()


@pytest_asyncio.fixture
async def worker(connection, rate_conf):
    w = WhatsAppQueueWorker(INSTANCE_NAME, INSTANCE_ID, connection, rate_conf)
    yield w
    await w.close()


@pytest.fixture
def redis_url():
    url = os.environ.get("TEST_REDIS_URL")
    if not url:
        pytest.skip("TEST_REDIS_URL not set")
    return url


@pytest.fixture
def make_config():
    return fast_config
