"""
Job Catalog — the closed set of outbound WhatsApp actions and their results.

Every payload carries a literal ``type`` tag so a raw dict read back from the
queue backend parses into exactly one variant (see ``parse_job_data``).
"""
from __future__ import annotations

from enum import Enum, IntEnum
from typing import Annotated, Any, Generic, Literal, Optional, TypeVar, Union

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, TypeAdapter


# ──────────────────────────────────────────────────────────────
#  Enums
# ──────────────────────────────────────────────────────────────

class QueuePriority(IntEnum):
    """Lower value is served first."""
    CRITICAL = 1
    REPLY = 2
    OUTGOING = 3
    PRESENCE = 4
    METADATA = 5


class JobType(str, Enum):
    SEND_MESSAGE = "SEND_MESSAGE"
    SEND_PRESENCE_UPDATE = "SEND_PRESENCE_UPDATE"
    GROUP_METADATA = "GROUP_METADATA"
    READ_MESSAGES = "READ_MESSAGES"
    ON_WHATSAPP = "ON_WHATSAPP"
    LIST_JOIN_REQUESTS = "LIST_JOIN_REQUESTS"
    UPDATE_JOIN_REQUEST = "UPDATE_JOIN_REQUEST"


class Presence(str, Enum):
    AVAILABLE = "available"
    UNAVAILABLE = "unavailable"
    COMPOSING = "composing"
    RECORDING = "recording"
    PAUSED = "paused"


class JoinRequestAction(str, Enum):
    APPROVE = "approve"
    REJECT = "reject"


# ──────────────────────────────────────────────────────────────
#  Job payloads
# ──────────────────────────────────────────────────────────────

class MessageKey(BaseModel):
    """Identifies one received message for a read receipt."""
    remote_jid: str = Field(validation_alias=AliasChoices("remote_jid", "remoteJid"))
    id: str
    participant: Optional[str] = None

    model_config = ConfigDict(populate_by_name=True)


class SendMessageJobData(BaseModel):
    type: Literal["SEND_MESSAGE"] = "SEND_MESSAGE"
    sender: str                               # recipient jid
    message: dict[str, Any]                   # message content as the session expects it
    options: Optional[dict[str, Any]] = None
    is_reply: bool = False


class SendPresenceJobData(BaseModel):
    type: Literal["SEND_PRESENCE_UPDATE"] = "SEND_PRESENCE_UPDATE"
    presence: Presence
    to_jid: Optional[str] = None


class GroupMetadataJobData(BaseModel):
    type: Literal["GROUP_METADATA"] = "GROUP_METADATA"
    group_jid: str


class ReadMessagesJobData(BaseModel):
    type: Literal["READ_MESSAGES"] = "READ_MESSAGES"
    keys: list[MessageKey]


class OnWhatsAppJobData(BaseModel):
    type: Literal["ON_WHATSAPP"] = "ON_WHATSAPP"
    jid: str


class ListJoinRequestsJobData(BaseModel):
    type: Literal["LIST_JOIN_REQUESTS"] = "LIST_JOIN_REQUESTS"
    group_jid: str


class UpdateJoinRequestJobData(BaseModel):
    type: Literal["UPDATE_JOIN_REQUEST"] = "UPDATE_JOIN_REQUEST"
    group_jid: str
    participants: list[str]
    action: JoinRequestAction


QueueJobData = Annotated[
    Union[
        SendMessageJobData,
        SendPresenceJobData,
        GroupMetadataJobData,
        ReadMessagesJobData,
        OnWhatsAppJobData,
        ListJoinRequestsJobData,
        UpdateJoinRequestJobData,
    ],
    Field(discriminator="type"),
]

_job_data_adapter: TypeAdapter = TypeAdapter(QueueJobData)


def parse_job_data(raw: dict[str, Any]) -> QueueJobData:
    """Validate a raw payload dict into its tagged variant."""
    return _job_data_adapter.validate_python(raw)


# ──────────────────────────────────────────────────────────────
#  Results
# ──────────────────────────────────────────────────────────────

T = TypeVar("T")


class JobResult(BaseModel, Generic[T]):
    """Outcome of one job. ``retryable`` asks the backend to re-attempt."""
    success: bool
    data: Optional[T] = None
    error: Optional[str] = None
    retryable: Optional[bool] = None


class WhatsAppRegistration(BaseModel):
    exists: bool
    jid: str = Field(validation_alias=AliasChoices("jid", "id"))

    model_config = ConfigDict(populate_by_name=True)


SendMessageJobResult = JobResult[Any]
SendPresenceJobResult = JobResult[None]
GroupMetadataJobResult = JobResult[Any]
ReadMessagesJobResult = JobResult[None]
OnWhatsAppJobResult = JobResult[list[WhatsAppRegistration]]
ListJoinRequestsJobResult = JobResult[list[Any]]
UpdateJoinRequestJobResult = JobResult[list[Any]]

RESULT_TYPES: dict[JobType, type[JobResult]] = {
    JobType.SEND_MESSAGE: SendMessageJobResult,
    JobType.SEND_PRESENCE_UPDATE: SendPresenceJobResult,
    JobType.GROUP_METADATA: GroupMetadataJobResult,
    JobType.READ_MESSAGES: ReadMessagesJobResult,
    JobType.ON_WHATSAPP: OnWhatsAppJobResult,
    JobType.LIST_JOIN_REQUESTS: ListJoinRequestsJobResult,
    JobType.UPDATE_JOIN_REQUEST: UpdateJoinRequestJobResult,
}


def result_type_for(job_type: Union[JobType, str, None]) -> type[JobResult]:
    try:
        return RESULT_TYPES[JobType(job_type)]
    except (KeyError, ValueError):
        return JobResult


class QueueStats(BaseModel):
    """Snapshot of backend job counts at query time."""
    waiting: int = 0
    active: int = 0
    completed: int = 0
    failed: int = 0
    delayed: int = 0


# ──────────────────────────────────────────────────────────────
#  Dedup keys
# ──────────────────────────────────────────────────────────────

def group_metadata_key(group_jid: str) -> str:
    return f"group-metadata:{group_jid}"


def on_whatsapp_key(jid: str) -> str:
    return f"on-whatsapp:{jid}"
