"""
WhatsApp Queue Service — per-instance dispatcher for outbound actions.

Translates a requested action into a durable job with a priority, an optional
jittered delay and an optional dedup key. Every operation is fail-open: when
the feature is disabled or the backend is unavailable the add_* methods return
None and the caller executes the action directly.

Usage:
    service = WhatsAppQueueService("sales-bot", instance_id)
    job = await service.add_send_message_job(jid, {"text": "hi"}, is_reply=True)
    if job is None:
        ...  # not queued, call the session directly
    else:
        result = await service.wait_for_job(job)
"""
from __future__ import annotations

import random
import structlog
from typing import Any, Optional, Sequence

from cache.connection import QueueConnectionManager, get_queue_connection, is_connection_error
from config.settings import RateLimitConfig
from job_queue.backend import (
    JobFailedError, JobOptions, QueueBackend, QueueEvents, QueueJob, open_backend,
)
from job_queue.backoff import apply_jitter
from job_queue.types import (
    GroupMetadataJobData, JobResult, JoinRequestAction, ListJoinRequestsJobData,
    MessageKey, OnWhatsAppJobData, Presence, QueueJobData, QueuePriority, QueueStats,
    ReadMessagesJobData, SendMessageJobData, SendPresenceJobData, UpdateJoinRequestJobData,
    group_metadata_key, on_whatsapp_key, result_type_for,
)

logger = structlog.get_logger()


def queue_name_for(instance_id: str) -> str:
    return f"whatsapp_{instance_id}"


class WhatsAppQueueService:
    """Dispatcher half of an instance's queue pair. Safe for concurrent producers."""

    def __init__(
        self,
        instance_name: str,
        instance_id: str,
        connection: QueueConnectionManager = None,
        config: RateLimitConfig = None,
        rng: random.Random = None,
    ):
        self.instance_name = instance_name
        self.instance_id = instance_id
        self.connection = connection or get_queue_connection(config)
        self.conf = config or self.connection.conf
        self.queue_name = queue_name_for(instance_id)
        self._rng = rng
        self._queue: Optional[QueueBackend] = None
        self._events: Optional[QueueEvents] = None
        self._events_queue: Optional[QueueBackend] = None
        self._closed = False
        self.log = logger.bind(instance=instance_name, queue=self.queue_name)
        self._initialize()

    # ── Queue binding ─────────────────────────────────────────

    def _initialize(self) -> None:
        if not self.conf.enabled:
            self.log.debug("queue_rate_limit_disabled")
            return
        if self._ensure_queue() is None:
            self.log.warning("queue_connection_unavailable", action="dispatching directly")

    def _ensure_queue(self) -> Optional[QueueBackend]:
        """Bind to the current handle; rebinds after a reconnect."""
        if self._closed or not self.conf.enabled:
            return None
        handle = self.connection.get_connection()
        if handle is None:
            return None
        if self._queue is None or self._queue.connection is not handle:
            self._queue = open_backend(handle, self.queue_name)
            self.log.debug("queue_initialized")
        return self._queue

    async def _bind_events(self) -> Optional[QueueEvents]:
        """Events for the current queue; a subscription left over from a previous handle is closed."""
        queue = self._ensure_queue()
        if queue is not None and self._events_queue is not queue:
            stale = self._events
            self._events, self._events_queue = queue.events(), queue
            if stale is not None:
                await self._close_events(stale)
        return self._events

    async def _close_events(self, events: QueueEvents) -> None:
        try:
            await events.close()
        except Exception as e:
            self.log.error("queue_events_close_failed", error=str(e))

    def is_queue_enabled(self) -> bool:
        return self._ensure_queue() is not None and self.connection.is_available()

    def _report(self, error: BaseException) -> None:
        if is_connection_error(error):
            self.connection.report_error(error)

    # ── Jitter ────────────────────────────────────────────────

    def calculate_jittered_delay(self, base_delay_ms: int) -> int:
        """base × (1 + U(-1, 1) × JITTER_FACTOR), floored at 0."""
        return apply_jitter(base_delay_ms, self.conf.jitter_factor, self._rng)

    # ── Enqueue ───────────────────────────────────────────────

    def _job_options(self, priority: int, delay_ms: int, dedup_key: Optional[str]) -> JobOptions:
        return JobOptions(
            priority=int(priority),
            delay=max(0, int(delay_ms)),
            job_id=dedup_key,
            attempts=self.conf.max_retries,
            backoff=self.conf.initial_backoff_ms,
            remove_on_complete=self.conf.remove_on_complete,
            remove_on_fail=self.conf.remove_on_fail,
        )

    async def add_job(
        self,
        data: QueueJobData,
        priority: int,
        delay_ms: int = 0,
        dedup_key: Optional[str] = None,
    ) -> Optional[QueueJob]:
        """
        Enqueue one job. With a dedup key, an unfinished job under the same key is
        returned instead of creating a duplicate. Returns None when not queued.
        """
        if not self.is_queue_enabled():
            return None

        job_type = data.type
        try:
            if dedup_key:
                existing = await self._queue.get_job(dedup_key)
                if existing and not await existing.is_completed() and not await existing.is_failed():
                    self.log.debug("queue_job_deduplicated", job_type=job_type, job_id=existing.id)
                    return existing

            job = await self._queue.add(
                job_type,
                data.model_dump(mode="json"),
                self._job_options(priority, delay_ms, dedup_key),
            )
        except Exception as e:
            self._report(e)
            self.log.error("queue_job_add_failed", job_type=job_type, error=str(e))
            return None

        self.log.debug("queue_job_added", job_type=job_type, job_id=job.id,
                       priority=int(priority), delay_ms=delay_ms)
        return job

    async def add_send_message_job(
        self,
        sender: str,
        message: dict[str, Any],
        options: Optional[dict[str, Any]] = None,
        is_reply: bool = False,
    ) -> Optional[QueueJob]:
        data = SendMessageJobData(sender=sender, message=message, options=options, is_reply=is_reply)
        priority = QueuePriority.REPLY if is_reply else QueuePriority.OUTGOING
        delay = self.calculate_jittered_delay(self.conf.message_delay_ms)
        return await self.add_job(data, priority, delay_ms=delay)

    async def add_presence_job(self, presence: Presence, to_jid: Optional[str] = None) -> Optional[QueueJob]:
        data = SendPresenceJobData(presence=presence, to_jid=to_jid)
        return await self.add_job(data, QueuePriority.PRESENCE)

    async def add_group_metadata_job(self, group_jid: str) -> Optional[QueueJob]:
        data = GroupMetadataJobData(group_jid=group_jid)
        return await self.add_job(data, QueuePriority.METADATA, dedup_key=group_metadata_key(group_jid))

    async def add_read_messages_job(self, keys: Sequence[MessageKey]) -> Optional[QueueJob]:
        data = ReadMessagesJobData(keys=list(keys))
        return await self.add_job(data, QueuePriority.OUTGOING)

    async def add_on_whatsapp_job(self, jid: str) -> Optional[QueueJob]:
        data = OnWhatsAppJobData(jid=jid)
        return await self.add_job(data, QueuePriority.METADATA, dedup_key=on_whatsapp_key(jid))

    async def add_list_join_requests_job(self, group_jid: str) -> Optional[QueueJob]:
        data = ListJoinRequestsJobData(group_jid=group_jid)
        delay = self.calculate_jittered_delay(self.conf.message_delay_ms)
        return await self.add_job(data, QueuePriority.METADATA, delay_ms=delay)

    async def add_update_join_request_job(
        self,
        group_jid: str,
        participants: Sequence[str],
        action: JoinRequestAction,
    ) -> Optional[QueueJob]:
        data = UpdateJoinRequestJobData(group_jid=group_jid, participants=list(participants), action=action)
        delay = self.calculate_jittered_delay(self.conf.message_delay_ms)
        return await self.add_job(data, QueuePriority.OUTGOING, delay_ms=delay)

    # ── Wait ──────────────────────────────────────────────────

    async def wait_for_job(self, job: QueueJob, timeout_ms: Optional[int] = None) -> JobResult:
        """
        Block the calling coroutine until the job finishes or the timeout elapses.
        Never raises: timeouts and transport faults come back as a retryable
        failed result.
        """
        timeout_ms = timeout_ms or self.conf.queue_timeout_ms
        result_type = result_type_for(job.name)

        try:
            events = await self._bind_events()
            if events is None:
                raise RuntimeError("Queue events not available")
            raw = await job.wait_until_finished(events, timeout_ms)
            if not isinstance(raw, dict):
                raise ValueError(f"Unexpected result for job {job.id}: {raw!r}")
            return result_type.model_validate(raw)
        except Exception as e:
            if not isinstance(e, JobFailedError):
                self._report(e)
            self.log.error("queue_job_wait_failed", job_id=job.id, error=str(e))
            return result_type(success=False, error=str(e), retryable=True)

    # ── Stats / lifecycle ─────────────────────────────────────

    async def get_queue_stats(self) -> Optional[QueueStats]:
        if not self.is_queue_enabled():
            return None
        try:
            counts = await self._queue.get_counts()
        except Exception as e:
            self._report(e)
            self.log.error("queue_stats_failed", error=str(e))
            return None
        return QueueStats(**counts)

    async def close(self) -> None:
        """Release the events subscription and queue handle. Idempotent."""
        self._closed = True
        events, self._events = self._events, None
        queue, self._queue = self._queue, None
        self._events_queue = None
        if events is not None:
            await self._close_events(events)
        try:
            if queue is not None:
                await queue.close()
            self.log.debug("queue_closed")
        except Exception as e:
            self.log.error("queue_close_failed", error=str(e))
