"""
Redis queue backend — production durable store.

Key layout (prefix ``wa:{queue}``):
  :id          INCR counter for generated job ids
  :pc          INCR counter breaking priority ties (FIFO)
  :job:{id}    HASH job record
  :wait        ZSET eligible jobs, score = priority × 2^32 + pc
  :delayed     ZSET delayed jobs, score = eligible-at ms
  :active      SET  jobs being processed
  :completed   ZSET finished ok, score = finished-at ms (trimmed)
  :failed      ZSET finished failed, score = finished-at ms (trimmed)
  :limiter     ZSET reservation timestamps for the sliding rate window
  :events      PUB/SUB channel of terminal job events

Add and reserve run as Lua scripts so dedup and pop-with-limit are atomic.
"""
from __future__ import annotations

import asyncio
import json
import uuid
import structlog
from typing import Any, Optional

from redis.exceptions import RedisError

from job_queue.backend import (
    PRIORITY_SHIFT, JobOptions, JobState, JobWaitTimeoutError, QueueBackend,
    QueueEvents, QueueEventsClosedError, QueueJob, RateLimit, now_ms, resolve_finished_event,
    retry_delay_ms,
)

logger = structlog.get_logger()


ADD_SCRIPT = """
local jobKey = KEYS[1]
local jobId = ARGV[1]
if redis.call("EXISTS", jobKey) == 1 then
  local state = redis.call("HGET", jobKey, "state")
  if state ~= "completed" and state ~= "failed" then
    return 0
  end
  redis.call("ZREM", KEYS[5], jobId)
  redis.call("ZREM", KEYS[6], jobId)
  redis.call("DEL", jobKey)
end
local priority = tonumber(ARGV[4])
local delay = tonumber(ARGV[5])
local timestamp = tonumber(ARGV[6])
redis.call("HSET", jobKey,
  "name", ARGV[2], "data", ARGV[3], "priority", ARGV[4], "delay", ARGV[5],
  "timestamp", ARGV[6], "attempts", ARGV[7], "attempts_made", "0",
  "backoff", ARGV[8], "remove_on_complete", ARGV[9], "remove_on_fail", ARGV[10])
if delay > 0 then
  redis.call("ZADD", KEYS[3], timestamp + delay, jobId)
  redis.call("HSET", jobKey, "state", "delayed")
else
  local pc = redis.call("INCR", KEYS[4])
  redis.call("ZADD", KEYS[2], priority * ARGV[11] + (pc % ARGV[11]), jobId)
  redis.call("HSET", jobKey, "state", "waiting")
end
return 1
"""

RESERVE_SCRIPT = """
local now = tonumber(ARGV[1])
local jobPrefix = ARGV[2]
local shift = tonumber(ARGV[3])
local stalledAfter = tonumber(ARGV[7])
local stalled = 0
if stalledAfter > 0 then
  for _, id in ipairs(redis.call("SMEMBERS", KEYS[3])) do
    local processedOn = tonumber(redis.call("HGET", jobPrefix .. id, "processed_on")) or 0
    if processedOn <= now - stalledAfter then
      redis.call("SREM", KEYS[3], id)
      local priority = tonumber(redis.call("HGET", jobPrefix .. id, "priority"))
      if priority then
        local pc = redis.call("INCR", KEYS[5])
        redis.call("ZADD", KEYS[1], priority * shift + (pc % shift), id)
        redis.call("HSET", jobPrefix .. id, "state", "waiting")
        stalled = stalled + 1
      end
    end
  end
end
local due = redis.call("ZRANGEBYSCORE", KEYS[2], "-inf", now)
for _, id in ipairs(due) do
  redis.call("ZREM", KEYS[2], id)
  local priority = tonumber(redis.call("HGET", jobPrefix .. id, "priority"))
  if priority then
    local pc = redis.call("INCR", KEYS[5])
    redis.call("ZADD", KEYS[1], priority * shift + (pc % shift), id)
    redis.call("HSET", jobPrefix .. id, "state", "waiting")
  end
end
local limitMax = tonumber(ARGV[4])
local limitDuration = tonumber(ARGV[5])
if limitMax > 0 then
  redis.call("ZREMRANGEBYSCORE", KEYS[4], "-inf", now - limitDuration)
  if redis.call("ZCARD", KEYS[4]) >= limitMax then
    local oldest = redis.call("ZRANGE", KEYS[4], 0, 0, "WITHSCORES")
    local wait = tonumber(oldest[2]) + limitDuration - now
    if wait < 1 then wait = 1 end
    return {"", tostring(wait), tostring(stalled)}
  end
end
local popped = redis.call("ZPOPMIN", KEYS[1])
if #popped == 0 then
  local nextDelayed = redis.call("ZRANGE", KEYS[2], 0, 0, "WITHSCORES")
  if #nextDelayed == 0 then
    return {"", "-1", tostring(stalled)}
  end
  local wait = tonumber(nextDelayed[2]) - now
  if wait < 0 then wait = 0 end
  return {"", tostring(wait), tostring(stalled)}
end
local id = popped[1]
redis.call("SADD", KEYS[3], id)
redis.call("HSET", jobPrefix .. id, "state", "active", "processed_on", now)
if limitMax > 0 then
  redis.call("ZADD", KEYS[4], now, ARGV[6])
  redis.call("PEXPIRE", KEYS[4], limitDuration)
end
return {id, "0", tostring(stalled)}
"""


class QueueKeys:
    def __init__(self, queue_name: str, prefix: str = "wa"):
        base = f"{prefix}:{queue_name}"
        self.base = base
        self.id = f"{base}:id"
        self.pc = f"{base}:pc"
        self.job_prefix = f"{base}:job:"
        self.wait = f"{base}:wait"
        self.delayed = f"{base}:delayed"
        self.active = f"{base}:active"
        self.completed = f"{base}:completed"
        self.failed = f"{base}:failed"
        self.limiter = f"{base}:limiter"
        self.events = f"{base}:events"

    def job(self, job_id: str) -> str:
        return f"{self.job_prefix}{job_id}"


class RedisQueueEvents(QueueEvents):
    """
    One pub/sub subscription per events object, fanned out to waiters by job id.
    The listener starts on the first wait.
    """

    def __init__(self, backend: RedisQueueBackend):
        self._backend = backend
        self._pubsub = None
        self._listener: Optional[asyncio.Task] = None
        self._waiters: dict[str, list[asyncio.Future]] = {}
        self._subscribe_lock = asyncio.Lock()
        self._closed = False

    async def _ensure_listening(self) -> None:
        async with self._subscribe_lock:
            if self._closed:
                raise QueueEventsClosedError(self._backend.name)
            if self._listener is not None and not self._listener.done():
                return
            await self._release_pubsub()
            pubsub = self._backend.redis.pubsub(ignore_subscribe_messages=True)
            self._pubsub = pubsub
            await pubsub.subscribe(self._backend.keys.events)
            self._listener = asyncio.create_task(self._listen())

    async def _release_pubsub(self) -> None:
        pubsub, self._pubsub = self._pubsub, None
        if pubsub is None:
            return
        try:
            await pubsub.unsubscribe()
            await pubsub.aclose()
        except RedisError as e:
            logger.debug("queue_events_release_failed", queue=self._backend.name, error=str(e))

    async def _listen(self) -> None:
        try:
            async for message in self._pubsub.listen():
                if message.get("type") != "message":
                    continue
                try:
                    event = json.loads(message["data"])
                except (TypeError, ValueError):
                    continue
                for fut in self._waiters.pop(str(event.get("jobId")), []):
                    if not fut.done():
                        fut.set_result(event)
        except asyncio.CancelledError:
            raise
        except RedisError as e:
            logger.error("queue_events_listener_error", queue=self._backend.name, error=str(e))
            for futures in self._waiters.values():
                for fut in futures:
                    if not fut.done():
                        fut.set_exception(e)
            self._waiters.clear()

    async def wait_until_finished(self, job_id: str, timeout_ms: int) -> Any:
        await self._ensure_listening()
        fut = asyncio.get_running_loop().create_future()
        self._waiters.setdefault(job_id, []).append(fut)
        try:
            # subscribed first, so a finish between here and the wait is not lost
            finished = await self._backend.finished_event(job_id)
            if finished is not None:
                event = finished
            else:
                event = await asyncio.wait_for(fut, timeout=timeout_ms / 1000)
        except asyncio.TimeoutError:
            raise JobWaitTimeoutError(job_id, timeout_ms) from None
        finally:
            futures = self._waiters.get(job_id, [])
            if fut in futures:
                futures.remove(fut)
            if not futures:
                self._waiters.pop(job_id, None)
        return resolve_finished_event(event)

    async def close(self) -> None:
        async with self._subscribe_lock:
            self._closed = True
            if self._listener is not None:
                self._listener.cancel()
                try:
                    await self._listener
                except asyncio.CancelledError:
                    pass
                self._listener = None
            await self._release_pubsub()
        for futures in self._waiters.values():
            for fut in futures:
                if not fut.done():
                    fut.set_exception(QueueEventsClosedError(self._backend.name))
        self._waiters.clear()


class RedisQueueBackend(QueueBackend):
    """Priority/delay/dedup queue on a shared redis.asyncio client."""

    def __init__(self, redis, name: str, prefix: str = "wa"):
        super().__init__(name)
        self.redis = redis
        self.keys = QueueKeys(name, prefix)
        self._add_script = redis.register_script(ADD_SCRIPT)
        self._reserve_script = redis.register_script(RESERVE_SCRIPT)

    @property
    def connection(self):
        return self.redis

    def _to_job(self, job_id: str, record: dict[str, str]) -> QueueJob:
        return QueueJob(
            id=job_id,
            name=record.get("name", ""),
            data=json.loads(record.get("data") or "{}"),
            priority=int(record.get("priority", 0)),
            delay=int(record.get("delay", 0)),
            timestamp=int(record.get("timestamp", 0)),
            attempts=int(record.get("attempts", 1)),
            attempts_made=int(record.get("attempts_made", 0)),
            backend=self,
        )

    async def finished_event(self, job_id: str) -> Optional[dict[str, Any]]:
        record = await self.redis.hgetall(self.keys.job(job_id))
        state = record.get("state") if record else None
        if state == JobState.COMPLETED.value:
            return {"event": "completed", "jobId": job_id,
                    "returnvalue": json.loads(record.get("returnvalue") or "null")}
        if state == JobState.FAILED.value:
            return {"event": "failed", "jobId": job_id,
                    "failedReason": record.get("failed_reason", "")}
        return None

    # ── QueueBackend ──────────────────────────────────────────

    async def add(self, name: str, data: dict[str, Any], opts: JobOptions) -> QueueJob:
        job_id = opts.job_id or str(await self.redis.incr(self.keys.id))
        job_key = self.keys.job(job_id)
        await self._add_script(
            keys=[job_key, self.keys.wait, self.keys.delayed, self.keys.pc,
                  self.keys.completed, self.keys.failed],
            args=[job_id, name, json.dumps(data), opts.priority, max(0, opts.delay),
                  now_ms(), max(1, opts.attempts), opts.backoff,
                  opts.remove_on_complete, opts.remove_on_fail, PRIORITY_SHIFT],
        )
        record = await self.redis.hgetall(job_key)
        return self._to_job(job_id, record)

    async def get_job(self, job_id: str) -> Optional[QueueJob]:
        record = await self.redis.hgetall(self.keys.job(job_id))
        return self._to_job(job_id, record) if record else None

    async def get_state(self, job_id: str) -> JobState:
        state = await self.redis.hget(self.keys.job(job_id), "state")
        return JobState(state) if state else JobState.UNKNOWN

    async def get_counts(self) -> dict[str, int]:
        async with self.redis.pipeline(transaction=False) as pipe:
            pipe.zcard(self.keys.wait)
            pipe.scard(self.keys.active)
            pipe.zcard(self.keys.completed)
            pipe.zcard(self.keys.failed)
            pipe.zcard(self.keys.delayed)
            waiting, active, completed, failed, delayed = await pipe.execute()
        return {
            "waiting": int(waiting),
            "active": int(active),
            "completed": int(completed),
            "failed": int(failed),
            "delayed": int(delayed),
        }

    async def reserve(
        self,
        limiter: Optional[RateLimit] = None,
        stalled_after_ms: int = 0,
    ) -> tuple[Optional[QueueJob], int]:
        limit_max = limiter.max if limiter else 0
        limit_duration = limiter.duration_ms if limiter else 0
        job_id, wait, stalled = await self._reserve_script(
            keys=[self.keys.wait, self.keys.delayed, self.keys.active,
                  self.keys.limiter, self.keys.pc],
            args=[now_ms(), self.keys.job_prefix, PRIORITY_SHIFT,
                  limit_max, limit_duration, uuid.uuid4().hex, max(0, stalled_after_ms)],
        )
        if int(stalled):
            logger.warning("queue_job_stalled", queue=self.name, count=int(stalled))
        if not job_id:
            return None, int(float(wait))
        record = await self.redis.hgetall(self.keys.job(job_id))
        return self._to_job(job_id, record), 0

    async def _trim(self, finished_key: str, keep: int) -> None:
        stale = await self.redis.zrange(finished_key, 0, -(max(keep, 0) + 1))
        if not stale:
            return
        async with self.redis.pipeline(transaction=True) as pipe:
            pipe.zrem(finished_key, *stale)
            pipe.delete(*[self.keys.job(job_id) for job_id in stale])
            await pipe.execute()

    async def complete(self, job: QueueJob, result: Any) -> None:
        finished_on = now_ms()
        payload = json.dumps(result)
        async with self.redis.pipeline(transaction=True) as pipe:
            pipe.srem(self.keys.active, job.id)
            pipe.hset(self.keys.job(job.id), mapping={
                "state": JobState.COMPLETED.value,
                "returnvalue": payload,
                "finished_on": finished_on,
            })
            pipe.zadd(self.keys.completed, {job.id: finished_on})
            await pipe.execute()
        await self.redis.publish(self.keys.events, json.dumps(
            {"event": "completed", "jobId": job.id, "returnvalue": result}))
        keep = await self.redis.hget(self.keys.job(job.id), "remove_on_complete")
        await self._trim(self.keys.completed, int(keep or 100))

    async def fail(self, job: QueueJob, error: BaseException) -> bool:
        job_key = self.keys.job(job.id)
        attempts_made = await self.redis.hincrby(job_key, "attempts_made", 1)
        attempts, backoff, keep = await self.redis.hmget(job_key, "attempts", "backoff", "remove_on_fail")
        job.attempts_made = int(attempts_made)
        now = now_ms()

        if int(attempts_made) < int(attempts or 1):
            delay = retry_delay_ms(int(backoff or 0), int(attempts_made))
            async with self.redis.pipeline(transaction=True) as pipe:
                pipe.srem(self.keys.active, job.id)
                pipe.hset(job_key, mapping={"state": JobState.DELAYED.value, "failed_reason": str(error)})
                pipe.zadd(self.keys.delayed, {job.id: now + delay})
                await pipe.execute()
            logger.debug("queue_job_retry_scheduled", queue=self.name, job_id=job.id,
                         attempt=int(attempts_made), delay_ms=delay)
            return True

        async with self.redis.pipeline(transaction=True) as pipe:
            pipe.srem(self.keys.active, job.id)
            pipe.hset(job_key, mapping={
                "state": JobState.FAILED.value,
                "failed_reason": str(error),
                "finished_on": now,
            })
            pipe.zadd(self.keys.failed, {job.id: now})
            await pipe.execute()
        await self.redis.publish(self.keys.events, json.dumps(
            {"event": "failed", "jobId": job.id, "failedReason": str(error)}))
        await self._trim(self.keys.failed, int(keep or 50))
        return False

    def events(self) -> RedisQueueEvents:
        return RedisQueueEvents(self)

    async def close(self) -> None:
        pass
