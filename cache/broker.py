"""
In-process broker — stand-in for Redis when RATE_LIMIT_REDIS_URI=memory://.

Single-process only. Holds one QueueStore per queue name so a dispatcher and
worker opened on the same broker see the same jobs.
"""
from __future__ import annotations

import asyncio
from collections import deque
from dataclasses import dataclass, field
from typing import Any

from job_queue.backend import QueueEventsClosedError


@dataclass
class QueueStore:
    jobs: dict[str, dict[str, Any]] = field(default_factory=dict)
    waiting: list[tuple[int, str]] = field(default_factory=list)     # heap of (score, id)
    delayed: list[tuple[int, str]] = field(default_factory=list)     # heap of (eligible_at, id)
    active: set[str] = field(default_factory=set)
    completed: deque = field(default_factory=deque)                  # ids, oldest first
    failed: deque = field(default_factory=deque)
    limiter: deque = field(default_factory=deque)                    # reservation timestamps
    waiters: dict[str, list[asyncio.Future]] = field(default_factory=dict)
    id_counter: int = 0
    priority_counter: int = 0


class InMemoryBroker:
    """Connection handle for the in-memory backend."""

    def __init__(self):
        self._stores: dict[str, QueueStore] = {}
        self.closed = False

    def store(self, queue_name: str) -> QueueStore:
        if queue_name not in self._stores:
            self._stores[queue_name] = QueueStore()
        return self._stores[queue_name]

    def queue_names(self) -> list[str]:
        return list(self._stores)

    async def ping(self) -> bool:
        return not self.closed

    async def aclose(self) -> None:
        self.closed = True
        for name, store in self._stores.items():
            for futures in store.waiters.values():
                for fut in futures:
                    if not fut.done():
                        fut.set_exception(QueueEventsClosedError(name))
            store.waiters.clear()
