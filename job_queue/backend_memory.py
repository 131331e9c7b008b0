"""
In-memory queue backend (development and tests).

Mirrors the Redis backend's semantics on plain Python structures: heaps for
the priority and delayed sets, deques for retention, futures for events.
"""
from __future__ import annotations

import asyncio
import heapq
import json
import structlog
from typing import Any, Optional

from cache.broker import InMemoryBroker, QueueStore
from job_queue.backend import (
    FINISHED_STATES, JobOptions, JobState, JobWaitTimeoutError, QueueBackend,
    QueueEvents, QueueEventsClosedError, QueueJob, RateLimit, now_ms, priority_score,
    resolve_finished_event, retry_delay_ms,
)

logger = structlog.get_logger()


class InMemoryQueueEvents(QueueEvents):

    def __init__(self, backend: InMemoryQueueBackend):
        self._backend = backend
        self._pending: set[asyncio.Future] = set()
        self._closed = False

    async def wait_until_finished(self, job_id: str, timeout_ms: int) -> Any:
        if self._closed:
            raise QueueEventsClosedError(self._backend.name)
        store = self._backend.store
        record = store.jobs.get(job_id)
        if record and JobState(record["state"]) in FINISHED_STATES:
            return resolve_finished_event(self._backend.finished_event(job_id, record))

        fut = asyncio.get_running_loop().create_future()
        store.waiters.setdefault(job_id, []).append(fut)
        self._pending.add(fut)
        try:
            event = await asyncio.wait_for(fut, timeout=timeout_ms / 1000)
        except asyncio.TimeoutError:
            raise JobWaitTimeoutError(job_id, timeout_ms) from None
        finally:
            self._pending.discard(fut)
            futures = store.waiters.get(job_id, [])
            if fut in futures:
                futures.remove(fut)
            if not futures:
                store.waiters.pop(job_id, None)
        return resolve_finished_event(event)

    async def close(self) -> None:
        self._closed = True
        for fut in self._pending:
            if not fut.done():
                fut.set_exception(QueueEventsClosedError(self._backend.name))
        self._pending.clear()


class InMemoryQueueBackend(QueueBackend):
    """Single-process queue backed by an InMemoryBroker store."""

    def __init__(self, broker: InMemoryBroker, name: str):
        super().__init__(name)
        self._broker = broker
        self.store: QueueStore = broker.store(name)

    @property
    def connection(self) -> InMemoryBroker:
        return self._broker

    # ── Job records ───────────────────────────────────────────

    def _to_job(self, job_id: str, record: dict[str, Any]) -> QueueJob:
        return QueueJob(
            id=job_id,
            name=record["name"],
            data=json.loads(record["data"]),
            priority=record["priority"],
            delay=record["delay"],
            timestamp=record["timestamp"],
            attempts=record["attempts"],
            attempts_made=record["attempts_made"],
            backend=self,
        )

    def finished_event(self, job_id: str, record: dict[str, Any]) -> dict[str, Any]:
        if record["state"] == JobState.FAILED.value:
            return {"event": "failed", "jobId": job_id, "failedReason": record.get("failed_reason", "")}
        return {"event": "completed", "jobId": job_id, "returnvalue": record.get("returnvalue")}

    def _push_waiting(self, job_id: str, record: dict[str, Any]) -> None:
        self.store.priority_counter += 1
        score = priority_score(record["priority"], self.store.priority_counter)
        heapq.heappush(self.store.waiting, (score, job_id))
        record["state"] = JobState.WAITING.value

    def _discard(self, job_id: str) -> None:
        store = self.store
        store.jobs.pop(job_id, None)
        store.waiting = [(s, i) for s, i in store.waiting if i != job_id]
        heapq.heapify(store.waiting)
        store.delayed = [(s, i) for s, i in store.delayed if i != job_id]
        heapq.heapify(store.delayed)
        store.active.discard(job_id)
        for finished in (store.completed, store.failed):
            if job_id in finished:
                finished.remove(job_id)

    # ── QueueBackend ──────────────────────────────────────────

    async def add(self, name: str, data: dict[str, Any], opts: JobOptions) -> QueueJob:
        store = self.store
        if opts.job_id:
            job_id = opts.job_id
            existing = store.jobs.get(job_id)
            if existing is not None:
                if JobState(existing["state"]) not in FINISHED_STATES:
                    return self._to_job(job_id, existing)
                self._discard(job_id)
        else:
            store.id_counter += 1
            job_id = str(store.id_counter)

        timestamp = now_ms()
        record = {
            "name": name,
            "data": json.dumps(data),
            "priority": opts.priority,
            "delay": max(0, opts.delay),
            "timestamp": timestamp,
            "attempts": max(1, opts.attempts),
            "attempts_made": 0,
            "backoff": opts.backoff,
            "remove_on_complete": opts.remove_on_complete,
            "remove_on_fail": opts.remove_on_fail,
            "state": JobState.WAITING.value,
        }
        store.jobs[job_id] = record
        if record["delay"] > 0:
            heapq.heappush(store.delayed, (timestamp + record["delay"], job_id))
            record["state"] = JobState.DELAYED.value
        else:
            self._push_waiting(job_id, record)
        return self._to_job(job_id, record)

    async def get_job(self, job_id: str) -> Optional[QueueJob]:
        record = self.store.jobs.get(job_id)
        return self._to_job(job_id, record) if record else None

    async def get_state(self, job_id: str) -> JobState:
        record = self.store.jobs.get(job_id)
        return JobState(record["state"]) if record else JobState.UNKNOWN

    async def get_counts(self) -> dict[str, int]:
        store = self.store
        return {
            "waiting": len(store.waiting),
            "active": len(store.active),
            "completed": len(store.completed),
            "failed": len(store.failed),
            "delayed": len(store.delayed),
        }

    def _promote_delayed(self, now: int) -> None:
        store = self.store
        while store.delayed and store.delayed[0][0] <= now:
            _, job_id = heapq.heappop(store.delayed)
            record = store.jobs.get(job_id)
            if record is not None:
                self._push_waiting(job_id, record)

    def _next_delay(self, now: int) -> int:
        if self.store.delayed:
            return max(self.store.delayed[0][0] - now, 0)
        return -1

    def _requeue_stalled(self, now: int, stalled_after_ms: int) -> None:
        store = self.store
        for job_id in list(store.active):
            record = store.jobs.get(job_id)
            if record is None:
                store.active.discard(job_id)
                continue
            if record.get("processed_on", 0) > now - stalled_after_ms:
                continue
            store.active.discard(job_id)
            self._push_waiting(job_id, record)
            logger.warning("queue_job_stalled", queue=self.name, job_id=job_id)

    async def reserve(
        self,
        limiter: Optional[RateLimit] = None,
        stalled_after_ms: int = 0,
    ) -> tuple[Optional[QueueJob], int]:
        store = self.store
        now = now_ms()
        if stalled_after_ms > 0:
            self._requeue_stalled(now, stalled_after_ms)
        self._promote_delayed(now)

        if limiter and limiter.max > 0:
            while store.limiter and store.limiter[0] <= now - limiter.duration_ms:
                store.limiter.popleft()
            if len(store.limiter) >= limiter.max:
                return None, max(store.limiter[0] + limiter.duration_ms - now, 1)

        if not store.waiting:
            return None, self._next_delay(now)

        _, job_id = heapq.heappop(store.waiting)
        record = store.jobs[job_id]
        record["state"] = JobState.ACTIVE.value
        record["processed_on"] = now
        store.active.add(job_id)
        if limiter and limiter.max > 0:
            store.limiter.append(now)
        return self._to_job(job_id, record), 0

    def _trim(self, finished: Any, keep: int) -> None:
        while len(finished) > max(keep, 0):
            self.store.jobs.pop(finished.popleft(), None)

    def _notify(self, job_id: str, event: dict[str, Any]) -> None:
        for fut in self.store.waiters.pop(job_id, []):
            if not fut.done():
                fut.set_result(event)

    async def complete(self, job: QueueJob, result: Any) -> None:
        store = self.store
        record = store.jobs.get(job.id)
        if record is None:
            return
        store.active.discard(job.id)
        record["state"] = JobState.COMPLETED.value
        record["returnvalue"] = result
        record["finished_on"] = now_ms()
        store.completed.append(job.id)
        event = self.finished_event(job.id, record)
        self._trim(store.completed, record["remove_on_complete"])
        self._notify(job.id, event)

    async def fail(self, job: QueueJob, error: BaseException) -> bool:
        store = self.store
        record = store.jobs.get(job.id)
        if record is None:
            return False
        store.active.discard(job.id)
        record["attempts_made"] += 1
        record["failed_reason"] = str(error)
        job.attempts_made = record["attempts_made"]

        if record["attempts_made"] < record["attempts"]:
            delay = retry_delay_ms(record["backoff"], record["attempts_made"])
            heapq.heappush(store.delayed, (now_ms() + delay, job.id))
            record["state"] = JobState.DELAYED.value
            logger.debug("queue_job_retry_scheduled", queue=self.name, job_id=job.id,
                         attempt=record["attempts_made"], delay_ms=delay)
            return True

        record["state"] = JobState.FAILED.value
        record["finished_on"] = now_ms()
        store.failed.append(job.id)
        event = self.finished_event(job.id, record)
        self._trim(store.failed, record["remove_on_fail"])
        self._notify(job.id, event)
        return False

    def events(self) -> InMemoryQueueEvents:
        return InMemoryQueueEvents(self)

    async def close(self) -> None:
        pass
