"""
Queued WhatsApp Session — routes outbound actions through the instance queue.

Each call enqueues the action and waits for its result. When the dispatcher
declines (feature disabled, backend down) the call goes straight to the
underlying session, so callers see the same interface either way.
"""
from __future__ import annotations

import structlog
from typing import Any, Awaitable, Callable, Optional, Sequence

from channels.whatsapp_session import WhatsAppSession
from job_queue.backend import QueueJob
from job_queue.service import WhatsAppQueueService
from job_queue.types import JobResult, JoinRequestAction, MessageKey, Presence

logger = structlog.get_logger()


class QueuedActionError(Exception):
    """A queued action finished unsuccessfully."""

    def __init__(self, message: str, retryable: bool = False, job_id: Optional[str] = None):
        super().__init__(message)
        self.retryable = retryable
        self.job_id = job_id


class QueuedWhatsAppSession:
    def __init__(self, service: WhatsAppQueueService, session: WhatsAppSession, timeout_ms: int = None):
        self.service = service
        self.session = session
        self.timeout_ms = timeout_ms

    async def _run(
        self,
        enqueue: Awaitable[Optional[QueueJob]],
        direct: Callable[[], Awaitable[Any]],
    ) -> Any:
        job = await enqueue
        if job is None:
            return await direct()

        result: JobResult = await self.service.wait_for_job(job, self.timeout_ms)
        if not result.success:
            logger.warning("queued_action_failed", job_id=job.id, job_type=job.name,
                           error=result.error, retryable=result.retryable)
            raise QueuedActionError(result.error or "Queued action failed",
                                    retryable=bool(result.retryable), job_id=job.id)
        return result.data

    async def send_message(
        self,
        jid: str,
        content: dict[str, Any],
        options: Optional[dict[str, Any]] = None,
        is_reply: bool = False,
    ) -> Any:
        return await self._run(
            self.service.add_send_message_job(jid, content, options, is_reply=is_reply),
            lambda: self.session.send_message(jid, content, options),
        )

    async def send_presence_update(self, presence: Presence, jid: Optional[str] = None) -> None:
        await self._run(
            self.service.add_presence_job(presence, jid),
            lambda: self.session.send_presence_update(presence, jid),
        )

    async def fetch_group_metadata(self, group_jid: str) -> Any:
        return await self._run(
            self.service.add_group_metadata_job(group_jid),
            lambda: self.session.fetch_group_metadata(group_jid),
        )

    async def mark_read(self, keys: Sequence[MessageKey]) -> None:
        await self._run(
            self.service.add_read_messages_job(keys),
            lambda: self.session.mark_read(keys),
        )

    async def check_registration(self, jid: str) -> list[Any]:
        return await self._run(
            self.service.add_on_whatsapp_job(jid),
            lambda: self.session.check_registration(jid),
        )

    async def list_join_requests(self, group_jid: str) -> list[Any]:
        return await self._run(
            self.service.add_list_join_requests_job(group_jid),
            lambda: self.session.list_join_requests(group_jid),
        )

    async def update_join_requests(
        self, group_jid: str, participants: Sequence[str], action: JoinRequestAction
    ) -> list[Any]:
        return await self._run(
            self.service.add_update_join_request_job(group_jid, participants, action),
            lambda: self.session.update_join_requests(group_jid, participants, action),
        )
