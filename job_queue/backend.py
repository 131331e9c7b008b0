"""
Queue Backend — Abstract durable job store used by the dispatcher and worker.

Job lifecycle:
  add ──▶ waiting ──▶ active ──▶ completed
     └──▶ delayed ──┘       └──▶ failed
                  ▲            │
                  └── retry ───┘  (attempts_made < attempts)

  An active job that outlives the stall limit goes back to waiting.

Ordering:
  Eligible jobs are served lowest score first where
  score = priority × 2^32 + enqueue counter, i.e. priority then FIFO.

Events:
  Every terminal transition publishes {"event", "jobId", "returnvalue" |
  "failedReason"} so QueueEvents can resolve blocked waiters.
"""
from __future__ import annotations

import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional

PRIORITY_SHIFT = 0x100000000


def now_ms() -> int:
    return int(time.time() * 1000)


def priority_score(priority: int, counter: int) -> int:
    return priority * PRIORITY_SHIFT + (counter & 0xFFFFFFFF)


def retry_delay_ms(backoff_ms: int, attempts_made: int) -> int:
    """Exponential retry delay: backoff × 2^(attempts_made - 1)."""
    if backoff_ms <= 0:
        return 0
    return int(backoff_ms * (2 ** max(attempts_made - 1, 0)))


class JobState(str, Enum):
    WAITING = "waiting"
    DELAYED = "delayed"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"
    UNKNOWN = "unknown"


FINISHED_STATES = {JobState.COMPLETED, JobState.FAILED}


class JobFailedError(Exception):
    """A waited-on job ended in the failed state."""

    def __init__(self, job_id: str, failed_reason: str):
        self.job_id = job_id
        self.failed_reason = failed_reason
        super().__init__(failed_reason or f"Job {job_id} failed")


class QueueEventsClosedError(RuntimeError):
    """The events subscription was torn down while a caller was waiting."""

    def __init__(self, queue_name: str):
        self.queue_name = queue_name
        super().__init__(f"Queue events closed while waiting ({queue_name})")


class JobWaitTimeoutError(TimeoutError):
    def __init__(self, job_id: str, timeout_ms: int):
        self.job_id = job_id
        self.timeout_ms = timeout_ms
        super().__init__(
            f"Job wait timed out before finishing, no finish notification "
            f"arrived after {timeout_ms}ms (id={job_id})"
        )


@dataclass
class JobOptions:
    priority: int = 0
    delay: int = 0                     # ms before the job becomes eligible
    job_id: Optional[str] = None       # explicit id doubles as dedup key
    attempts: int = 1
    backoff: int = 0                   # base ms for exponential retry delay
    remove_on_complete: int = 100
    remove_on_fail: int = 50


@dataclass
class RateLimit:
    """At most ``max`` reservations per ``duration_ms`` sliding window."""
    max: int
    duration_ms: int = 60000


@dataclass
class QueueJob:
    """Handle to one job in a backend."""
    id: str
    name: str
    data: dict[str, Any]
    priority: int = 0
    delay: int = 0
    timestamp: int = 0
    attempts: int = 1
    attempts_made: int = 0
    backend: Optional[QueueBackend] = field(default=None, repr=False, compare=False)

    async def get_state(self) -> JobState:
        return await self.backend.get_state(self.id)

    async def is_completed(self) -> bool:
        return await self.get_state() is JobState.COMPLETED

    async def is_failed(self) -> bool:
        return await self.get_state() is JobState.FAILED

    async def wait_until_finished(self, events: QueueEvents, timeout_ms: int) -> Any:
        """Return the job's return value; raise JobFailedError / JobWaitTimeoutError."""
        return await events.wait_until_finished(self.id, timeout_ms)


def resolve_finished_event(event: dict[str, Any]) -> Any:
    """Turn a terminal event into a return value or a JobFailedError."""
    if event.get("event") == JobState.FAILED.value:
        raise JobFailedError(str(event.get("jobId", "")), str(event.get("failedReason", "")))
    return event.get("returnvalue")


class QueueEvents(ABC):
    """Subscription to terminal job events of one queue."""

    @abstractmethod
    async def wait_until_finished(self, job_id: str, timeout_ms: int) -> Any:
        ...

    @abstractmethod
    async def close(self) -> None:
        ...


class QueueBackend(ABC):
    """Abstract durable priority queue."""

    def __init__(self, name: str):
        self.name = name

    @property
    @abstractmethod
    def connection(self) -> Any:
        """The connection handle this backend was opened on."""
        ...

    @abstractmethod
    async def add(self, name: str, data: dict[str, Any], opts: JobOptions) -> QueueJob:
        """
        Enqueue a job. With ``opts.job_id`` naming an unfinished job the existing
        job is returned unchanged; a finished one is replaced.
        """
        ...

    @abstractmethod
    async def get_job(self, job_id: str) -> Optional[QueueJob]:
        ...

    @abstractmethod
    async def get_state(self, job_id: str) -> JobState:
        ...

    @abstractmethod
    async def get_counts(self) -> dict[str, int]:
        """Counts keyed waiting/active/completed/failed/delayed."""
        ...

    @abstractmethod
    async def reserve(
        self,
        limiter: Optional[RateLimit] = None,
        stalled_after_ms: int = 0,
    ) -> tuple[Optional[QueueJob], int]:
        """
        Requeue stalled active jobs, promote due delayed jobs, then move the
        best eligible job to active.

        An active job is stalled once it has been active for longer than
        ``stalled_after_ms`` (0 disables the sweep): its holder crashed or
        could not record the outcome.

        Returns (job, 0) on success, otherwise (None, ms until something may
        become eligible; -1 when nothing is scheduled).
        """
        ...

    @abstractmethod
    async def complete(self, job: QueueJob, result: Any) -> None:
        ...

    @abstractmethod
    async def fail(self, job: QueueJob, error: BaseException) -> bool:
        """Record a failed attempt. Returns True when the job will be retried."""
        ...

    @abstractmethod
    def events(self) -> QueueEvents:
        ...

    @abstractmethod
    async def close(self) -> None:
        """Release backend-local resources. The shared connection stays open."""
        ...


def open_backend(handle: Any, queue_name: str) -> QueueBackend:
    """Factory: pick the backend implementation matching a connection handle."""
    from cache.broker import InMemoryBroker

    if isinstance(handle, InMemoryBroker):
        from job_queue.backend_memory import InMemoryQueueBackend
        return InMemoryQueueBackend(handle, queue_name)

    from job_queue.backend_redis import RedisQueueBackend
    return RedisQueueBackend(handle, queue_name)
