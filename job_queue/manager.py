"""
Instance Queue Registry — one Dispatcher/Worker pair per automation instance.

The session layer calls attach_client() after login and detach_client() on
teardown; business logic reaches the dispatcher through get_or_create().
"""
from __future__ import annotations

import structlog
from dataclasses import dataclass
from typing import Any, Optional

from cache.connection import QueueConnectionManager, get_queue_connection
from channels.whatsapp_session import WhatsAppSession
from config.settings import RateLimitConfig
from job_queue.service import WhatsAppQueueService
from job_queue.worker import WhatsAppQueueWorker

logger = structlog.get_logger()


@dataclass
class InstanceQueue:
    service: WhatsAppQueueService
    worker: WhatsAppQueueWorker

    async def close(self) -> None:
        await self.worker.close()
        await self.service.close()


class InstanceQueueRegistry:
    def __init__(self, connection: QueueConnectionManager = None, config: RateLimitConfig = None):
        self.connection = connection or get_queue_connection(config)
        self.conf = config or self.connection.conf
        self._instances: dict[str, InstanceQueue] = {}

    def __contains__(self, instance_id: str) -> bool:
        return instance_id in self._instances

    def __len__(self) -> int:
        return len(self._instances)

    def get(self, instance_id: str) -> Optional[InstanceQueue]:
        return self._instances.get(instance_id)

    def get_or_create(self, instance_name: str, instance_id: str) -> InstanceQueue:
        pair = self._instances.get(instance_id)
        if pair is None:
            pair = InstanceQueue(
                service=WhatsAppQueueService(instance_name, instance_id, self.connection, self.conf),
                worker=WhatsAppQueueWorker(instance_name, instance_id, self.connection, self.conf),
            )
            self._instances[instance_id] = pair
            logger.debug("queue_instance_registered", instance=instance_name, instance_id=instance_id)
        return pair

    def attach_client(self, instance_name: str, instance_id: str, client: WhatsAppSession) -> InstanceQueue:
        """Hand a freshly authenticated session to the instance's worker."""
        pair = self.get_or_create(instance_name, instance_id)
        pair.worker.set_client(client)
        return pair

    def detach_client(self, instance_id: str) -> None:
        pair = self._instances.get(instance_id)
        if pair is not None:
            pair.worker.detach_client()

    async def remove(self, instance_id: str) -> bool:
        pair = self._instances.pop(instance_id, None)
        if pair is None:
            return False
        await pair.close()
        logger.debug("queue_instance_removed", instance_id=instance_id)
        return True

    async def close_all(self) -> None:
        for instance_id in list(self._instances):
            try:
                await self.remove(instance_id)
            except Exception as e:
                logger.error("queue_instance_close_failed", instance_id=instance_id, error=str(e))

    async def stats(self) -> dict[str, Any]:
        out = {}
        for instance_id, pair in self._instances.items():
            snapshot = await pair.service.get_queue_stats()
            out[instance_id] = {
                "instance": pair.service.instance_name,
                "worker_running": pair.worker.is_running(),
                "backoff_ms": pair.worker.backoff.current_ms,
                "queue": snapshot.model_dump() if snapshot else None,
            }
        return out
