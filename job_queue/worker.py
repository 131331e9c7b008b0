"""
WhatsApp Queue Worker — the single consumer of an instance's outbound jobs.

Concurrency is fixed at one: exactly one action is in flight against the
WhatsApp session per instance, so the account-level rate ceiling becomes a
per-job pacing problem. On top of that:

  rate window      at most MESSAGES_PER_MINUTE reservations per 60s, enforced
                   by the backend's reserve()
  backoff gate     while throttled, every job first sleeps a jittered
                   current backoff; close() cuts the sleep short
  classification   throttling errors escalate the backoff and are re-raised
                   so the backend retry policy applies; everything else is
                   folded into a JobResult

Backoff only decays lazily: completed/failed job events run check_reset().

The loop starts as soon as a client is attached and binds the backend on each
pass, so a connection still being established is picked up once it is ready.
"""
from __future__ import annotations

import asyncio
import random
import structlog
from dataclasses import asdict, is_dataclass
from typing import Any, Awaitable, Callable, Optional

from pydantic import ValidationError

from cache.connection import QueueConnectionManager, get_queue_connection, is_connection_error
from channels.whatsapp_session import WhatsAppSession
from config.settings import RateLimitConfig
from job_queue.backend import QueueBackend, QueueJob, RateLimit, open_backend
from job_queue.backoff import BackoffState, apply_jitter
from job_queue.classifier import FailureClassifier, error_message
from job_queue.service import queue_name_for
from job_queue.types import (
    GroupMetadataJobData, JobResult, JobType, ListJoinRequestsJobData, OnWhatsAppJobData,
    ReadMessagesJobData, SendMessageJobData, SendPresenceJobData, UpdateJoinRequestJobData,
    parse_job_data, result_type_for,
)

logger = structlog.get_logger()

RATE_WINDOW_MS = 60000
CLIENT_NOT_AVAILABLE = "WhatsApp client not available"
UNKNOWN_JOB_TYPE = "Unknown job type"
JOB_TYPES = {t.value for t in JobType}


class WorkerStoppingError(RuntimeError):
    """close() interrupted the backoff gate before the job ran."""

    def __init__(self, job_id: str):
        self.job_id = job_id
        super().__init__(f"Worker stopping, job {job_id} not run")


def _jsonable(value: Any) -> Any:
    if hasattr(value, "model_dump"):
        return value.model_dump(mode="json")
    if is_dataclass(value) and not isinstance(value, type):
        return asdict(value)
    if isinstance(value, (list, tuple)):
        return [_jsonable(v) for v in value]
    if isinstance(value, dict):
        return {k: _jsonable(v) for k, v in value.items()}
    return value


class WhatsAppQueueWorker:
    """Consumer half of an instance's queue pair."""

    def __init__(
        self,
        instance_name: str,
        instance_id: str,
        connection: QueueConnectionManager = None,
        config: RateLimitConfig = None,
        classifier: FailureClassifier = None,
        rng: random.Random = None,
        sleep: Callable[[float], Awaitable[Any]] = None,
    ):
        self.instance_name = instance_name
        self.instance_id = instance_id
        self.connection = connection or get_queue_connection(config)
        self.conf = config or self.connection.conf
        self.queue_name = queue_name_for(instance_id)
        self.classifier = classifier or FailureClassifier.from_config(self.conf)
        self.backoff = BackoffState.from_config(self.conf)
        self._rng = rng
        self._sleep = sleep or self._idle
        self._client: Optional[WhatsAppSession] = None
        self._queue: Optional[QueueBackend] = None
        self._task: Optional[asyncio.Task] = None
        self._running = False
        self._stopping = asyncio.Event()
        self.log = logger.bind(instance=instance_name, queue=self.queue_name)

        self._handlers: dict[JobType, Callable[[Any], Awaitable[JobResult]]] = {
            JobType.SEND_MESSAGE: self._process_send_message,
            JobType.SEND_PRESENCE_UPDATE: self._process_presence_update,
            JobType.GROUP_METADATA: self._process_group_metadata,
            JobType.READ_MESSAGES: self._process_read_messages,
            JobType.ON_WHATSAPP: self._process_on_whatsapp,
            JobType.LIST_JOIN_REQUESTS: self._process_list_join_requests,
            JobType.UPDATE_JOIN_REQUEST: self._process_update_join_request,
        }

    @property
    def limiter(self) -> RateLimit:
        return RateLimit(max=self.conf.messages_per_minute, duration_ms=RATE_WINDOW_MS)

    # ── Client lifecycle ──────────────────────────────────────

    def set_client(self, client: WhatsAppSession) -> None:
        """Attach an authenticated session and start consuming."""
        self._client = client
        if self.conf.enabled and not self.is_running():
            self._initialize()

    def detach_client(self) -> None:
        """Session torn down: keep consuming but fail jobs fast."""
        self._client = None
        self.log.debug("worker_client_detached")

    def _initialize(self) -> None:
        if not self.conf.enabled:
            self.log.debug("worker_rate_limit_disabled")
            return

        if not self.connection.is_enabled():
            self.log.warning("worker_not_started", reason="queue connection not configured")
            return

        if self._client is None:
            self.log.warning("worker_not_started", reason="WhatsApp client not available")
            return

        try:
            self._running = True
            self._stopping.clear()
            self._task = asyncio.get_running_loop().create_task(self._run())
        except RuntimeError as e:
            self.log.error("worker_init_failed", error=str(e))
            self._running = False
            return
        self.log.info("worker_initialized",
                      messages_per_minute=self.conf.messages_per_minute,
                      connected=self.connection.is_available())

    def _ensure_queue(self) -> Optional[QueueBackend]:
        """Bind to the current handle; None while the connection is not ready."""
        handle = self.connection.get_connection()
        if handle is None:
            return None
        if self._queue is None or self._queue.connection is not handle:
            self._queue = open_backend(handle, self.queue_name)
            self.log.debug("worker_queue_bound")
        return self._queue

    def is_running(self) -> bool:
        return self._running and self._task is not None and not self._task.done()

    # ── Consume loop ──────────────────────────────────────────

    async def _run(self) -> None:
        poll_s = self.conf.poll_interval_ms / 1000
        while self._running:
            queue = self._ensure_queue()
            if queue is None:
                await self._idle(poll_s)
                continue

            try:
                job, wait_ms = await queue.reserve(self.limiter, self.conf.stalled_job_ms)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                if is_connection_error(e):
                    self.connection.report_error(e)
                self.log.error("worker_error", error=str(e))
                await self._idle(poll_s)
                continue

            if job is None:
                idle_s = poll_s if wait_ms < 0 else min(max(wait_ms, 1) / 1000, poll_s)
                await self._idle(idle_s)
                continue

            await self._handle(queue, job)

    async def _idle(self, seconds: float) -> None:
        try:
            await asyncio.wait_for(self._stopping.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass

    async def _handle(self, queue: QueueBackend, job: QueueJob) -> None:
        try:
            result = await self.process_job(job)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            try:
                will_retry = await queue.fail(job, e)
            except Exception as backend_error:
                if is_connection_error(backend_error):
                    self.connection.report_error(backend_error)
                self.log.error("worker_error", job_id=job.id, error=str(backend_error),
                               stalled_after_ms=self.conf.stalled_job_ms)
                return
            self._on_failed(job, e, will_retry)
            return

        try:
            await queue.complete(job, result.model_dump(mode="json"))
        except Exception as e:
            if is_connection_error(e):
                self.connection.report_error(e)
            self.log.error("worker_error", job_id=job.id, error=str(e),
                           stalled_after_ms=self.conf.stalled_job_ms)
            return
        self._on_completed(job)

    def _on_completed(self, job: QueueJob) -> None:
        self.log.debug("worker_job_completed", job_id=job.id, job_type=job.name)
        self._check_backoff_reset()

    def _on_failed(self, job: QueueJob, error: BaseException, will_retry: bool) -> None:
        self.log.error("worker_job_failed", job_id=job.id, job_type=job.name,
                       attempt=job.attempts_made, will_retry=will_retry,
                       error=error_message(error))
        self._check_backoff_reset()

    # ── Job execution ─────────────────────────────────────────

    async def process_job(self, job: QueueJob) -> JobResult:
        """
        Run one job against the session.

        Raises the original error for throttling faults and WorkerStoppingError
        when close() cut the backoff gate short; returns a JobResult for
        everything else.
        """
        result_type = result_type_for(job.name)
        if self._client is None:
            return result_type(success=False, error=CLIENT_NOT_AVAILABLE, retryable=True)

        try:
            data = parse_job_data(job.data)
        except ValidationError as e:
            tag = job.data.get("type") if isinstance(job.data, dict) else None
            if tag not in JOB_TYPES:
                return JobResult(success=False, error=UNKNOWN_JOB_TYPE, retryable=False)
            return result_type(success=False, error=f"Invalid {tag} payload: {e}", retryable=False)

        if self.backoff.current_ms > 0:
            jittered = self.apply_backoff_jitter(self.backoff.current_ms)
            self.log.debug("worker_backoff_delay", delay_ms=jittered, base_ms=self.backoff.current_ms)
            await self._sleep(jittered / 1000)
            if self._stopping.is_set():
                raise WorkerStoppingError(job.id)

        try:
            return await self._handlers[JobType(data.type)](data)
        except Exception as e:
            if self.classifier.is_rate_limit_error(e):
                self.handle_rate_limit_error()
                raise
            return result_type(
                success=False,
                error=error_message(e),
                retryable=self.classifier.is_retryable_error(e),
            )

    def _require_client(self) -> WhatsAppSession:
        client = self._client
        if client is None:
            raise ConnectionError(CLIENT_NOT_AVAILABLE)
        return client

    async def _process_send_message(self, data: SendMessageJobData) -> JobResult:
        sent = await self._require_client().send_message(data.sender, data.message, data.options)
        self.reset_backoff_on_success()
        return result_type_for(JobType.SEND_MESSAGE)(success=True, data=_jsonable(sent))

    async def _process_presence_update(self, data: SendPresenceJobData) -> JobResult:
        client = self._require_client()
        if data.to_jid:
            await client.send_presence_update(data.presence, data.to_jid)
        else:
            await client.send_presence_update(data.presence)
        self.reset_backoff_on_success()
        return result_type_for(JobType.SEND_PRESENCE_UPDATE)(success=True)

    async def _process_group_metadata(self, data: GroupMetadataJobData) -> JobResult:
        metadata = await self._require_client().fetch_group_metadata(data.group_jid)
        self.reset_backoff_on_success()
        return result_type_for(JobType.GROUP_METADATA)(success=True, data=_jsonable(metadata))

    async def _process_read_messages(self, data: ReadMessagesJobData) -> JobResult:
        await self._require_client().mark_read(data.keys)
        self.reset_backoff_on_success()
        return result_type_for(JobType.READ_MESSAGES)(success=True)

    async def _process_on_whatsapp(self, data: OnWhatsAppJobData) -> JobResult:
        found = await self._require_client().check_registration(data.jid)
        self.reset_backoff_on_success()
        return result_type_for(JobType.ON_WHATSAPP)(success=True, data=_jsonable(found))

    async def _process_list_join_requests(self, data: ListJoinRequestsJobData) -> JobResult:
        requests = await self._require_client().list_join_requests(data.group_jid)
        self.reset_backoff_on_success()
        return result_type_for(JobType.LIST_JOIN_REQUESTS)(success=True, data=_jsonable(requests))

    async def _process_update_join_request(self, data: UpdateJoinRequestJobData) -> JobResult:
        updated = await self._require_client().update_join_requests(
            data.group_jid, data.participants, data.action
        )
        self.reset_backoff_on_success()
        return result_type_for(JobType.UPDATE_JOIN_REQUEST)(success=True, data=_jsonable(updated))

    # ── Backoff ───────────────────────────────────────────────

    def handle_rate_limit_error(self) -> int:
        current = self.backoff.escalate()
        self.log.warning("queue_backoff_increased", backoff_ms=current)
        return current

    def _check_backoff_reset(self) -> None:
        if self.backoff.check_reset():
            self.log.info("worker_backoff_reset")

    def reset_backoff_on_success(self) -> None:
        """Re-evaluate the quiet period; does not clear the backoff by itself."""
        self._check_backoff_reset()

    def apply_backoff_jitter(self, base_delay_ms: int) -> int:
        return apply_jitter(base_delay_ms, self.conf.backoff_jitter_factor, self._rng)

    # ── Shutdown ──────────────────────────────────────────────

    async def close(self) -> None:
        """
        Stop consuming new jobs and detach the client. An in-flight job runs to
        completion first. Idempotent.
        """
        self._running = False
        self._stopping.set()
        task, self._task = self._task, None
        try:
            if task is not None and not task.done():
                await task
            if self._queue is not None:
                await self._queue.close()
            self.log.debug("worker_closed")
        except Exception as e:
            self.log.error("worker_close_failed", error=str(e))
        finally:
            self._queue = None
            self._client = None
            self.backoff.clear()
