"""
WhatsApp Session — the network-client capability the queue worker drives.

The worker never speaks the WhatsApp protocol itself. It is handed an
authenticated session object implementing WhatsAppSession after login and
loses it again on session teardown. Any client library can be adapted to this
interface; errors should surface as WhatsAppSessionError where the transport
exposes a status code so throttling is detected structurally.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Optional, Protocol, Sequence, runtime_checkable

from job_queue.types import JoinRequestAction, MessageKey, Presence


@runtime_checkable
class WhatsAppSession(Protocol):
    """Outbound operations of one authenticated WhatsApp session."""

    async def send_message(
        self, jid: str, content: dict[str, Any], options: Optional[dict[str, Any]] = None
    ) -> Any:
        """Send a message; returns the sent message record."""
        ...

    async def send_presence_update(self, presence: Presence, jid: Optional[str] = None) -> None:
        ...

    async def fetch_group_metadata(self, group_jid: str) -> Any:
        ...

    async def mark_read(self, keys: Sequence[MessageKey]) -> None:
        ...

    async def check_registration(self, jid: str) -> list[dict[str, Any]]:
        """
        Returns:
            [{"exists": bool, "jid": "..."}]
        """
        ...

    async def list_join_requests(self, group_jid: str) -> list[Any]:
        ...

    async def update_join_requests(
        self, group_jid: str, participants: Sequence[str], action: JoinRequestAction
    ) -> list[Any]:
        ...


@dataclass
class ErrorOutput:
    status_code: int
    payload: Optional[dict[str, Any]] = None


class WhatsAppSessionError(Exception):
    """
    Transport error from a session call.

    ``output.status_code`` carries the HTTP-like status of the failed request,
    ``data`` a raw status or payload when the transport gives one.
    """

    def __init__(self, message: str, status_code: Optional[int] = None, data: Any = None):
        super().__init__(message)
        self.message = message
        self.output = ErrorOutput(status_code) if status_code is not None else None
        self.data = data
