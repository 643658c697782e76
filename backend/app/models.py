from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator


def utc_now() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


class ConversationStatus(str, Enum):
    active = "active"
    archived = "archived"
    transferred = "transferred"


OPEN_CONVERSATION_STATUSES = (ConversationStatus.active, ConversationStatus.transferred)


class ParticipantType(str, Enum):
    owner = "owner"
    participant = "participant"
    observer = "observer"


class InboxStatus(str, Enum):
    pending = "pending"
    assigned = "assigned"
    ignored = "ignored"


class JobType(str, Enum):
    send_message = "send_message"
    send_campaign = "send_campaign"
    process_webhook = "process_webhook"


class JobStatus(str, Enum):
    pending = "pending"
    processing = "processing"
    done = "done"
    failed = "failed"


class CampaignStatus(str, Enum):
    draft = "draft"
    scheduled = "scheduled"
    sending = "sending"
    sent = "sent"
    completed_with_errors = "completed_with_errors"
    failed = "failed"


class MessageDirection(str, Enum):
    inbound = "inbound"
    outbound = "outbound"


class MessageStatus(str, Enum):
    pending = "pending"
    sent = "sent"
    delivered = "delivered"
    read = "read"
    failed = "failed"


class InstanceStatus(str, Enum):
    connected = "connected"
    disconnected = "disconnected"
    pending = "pending"
    error = "error"


class WebhookOutcome(str, Enum):
    processed = "processed"
    ignored = "ignored"
    rejected = "rejected"
    failed = "failed"


class ContactCreateRequest(BaseModel):
    name: str = Field(min_length=1, max_length=255)
    phone: str = Field(min_length=10, max_length=20)
    email: Optional[str] = Field(default=None, max_length=255)
    company: Optional[str] = Field(default=None, max_length=255)
    notes: Optional[str] = Field(default=None, max_length=1000)
    tags: list[str] = Field(default_factory=list)


class ConversationCreateRequest(BaseModel):
    contact_id: str
    owner_id: Optional[str] = None
    notes: Optional[str] = Field(default=None, max_length=1000)


class ConversationTransferRequest(BaseModel):
    to_user_id: str = Field(min_length=1, max_length=120)
    reason: Optional[str] = Field(default=None, max_length=500)


class ParticipantAddRequest(BaseModel):
    user_id: str = Field(min_length=1, max_length=120)
    type: ParticipantType = ParticipantType.participant

    @field_validator("type")
    @classmethod
    def reject_owner(cls, value: ParticipantType) -> ParticipantType:
        if value == ParticipantType.owner:
            raise ValueError("owners are assigned through transfer, not added")
        return value


class InboxAssignRequest(BaseModel):
    user_id: Optional[str] = Field(default=None, max_length=120)


class MessageSendRequest(BaseModel):
    contact_id: str
    body: str = Field(min_length=1, max_length=4096)
    has_media: bool = False
    media_url: Optional[str] = None
    media_type: Optional[str] = None
    scheduled_for: Optional[datetime] = None
    instance_id: Optional[str] = None

    @field_validator("scheduled_for")
    @classmethod
    def normalize_schedule(cls, value: Optional[datetime]) -> Optional[datetime]:
        return to_naive_utc(value)


class MessageSendResponse(BaseModel):
    status: str
    message_id: Optional[str] = None
    whatsapp_message_id: Optional[str] = None
    job_id: Optional[int] = None
    remaining: int


class CampaignCreateRequest(BaseModel):
    name: str = Field(min_length=1, max_length=255)
    message: str = Field(min_length=1, max_length=4096)
    contact_list_id: str
    instance_id: Optional[str] = None
    scheduled_for: Optional[datetime] = None
    media_url: Optional[str] = None
    media_type: Optional[Literal["image", "video", "document", "audio"]] = None

    @field_validator("scheduled_for")
    @classmethod
    def normalize_schedule(cls, value: Optional[datetime]) -> Optional[datetime]:
        return to_naive_utc(value)


class CampaignDispatchResponse(BaseModel):
    campaign_id: str
    job_id: int
    status: CampaignStatus
    total: int


class AutoReplyRuleCreateRequest(BaseModel):
    trigger: str = Field(min_length=1, max_length=120)
    reply: str = Field(min_length=1, max_length=4096)
    is_active: bool = True


class InstanceCreateRequest(BaseModel):
    instance_name: str = Field(min_length=1, max_length=120)
    instance_id: str = Field(min_length=1, max_length=120)
    api_url: str = Field(min_length=8, max_length=500)
    api_key: str = Field(min_length=1, max_length=500)
    webhook_url: Optional[str] = Field(default=None, max_length=500)


class InstanceItem(BaseModel):
    id: str
    instance_name: str
    instance_id: str
    api_url: str
    phone_number: Optional[str]
    status: InstanceStatus
    is_active: bool
    last_connected_at: Optional[datetime]
    created_at: datetime


class InstanceStatusResponse(BaseModel):
    instance_id: str
    status: InstanceStatus
    phone_number: Optional[str]


class QueueRunSummary(BaseModel):
    picked: int = 0
    done: int = 0
    retried: int = 0
    failed: int = 0
    skipped: int = 0


class QueueProcessResponse(BaseModel):
    success: bool
    summary: QueueRunSummary


class WebhookAckResponse(BaseModel):
    success: bool
    detail: Optional[str] = None


class ContactRecord(BaseModel):
    id: str
    user_id: str
    name: str
    phone: str
    email: Optional[str] = None
    company: Optional[str] = None
    notes: Optional[str] = None
    is_active: bool = True
    last_message_at: Optional[datetime] = None
    tags: list[str] = Field(default_factory=list)
    created_at: datetime
    updated_at: datetime


class ContactSummary(BaseModel):
    id: str
    name: str
    phone: str
    email: Optional[str] = None


class ConversationRecord(BaseModel):
    id: str
    contact_id: str
    owner_id: str
    status: ConversationStatus
    last_message_at: Optional[datetime] = None
    notes: Optional[str] = None
    created_at: datetime
    updated_at: datetime


class ParticipantRecord(BaseModel):
    id: str
    conversation_id: str
    user_id: str
    type: ParticipantType
    added_by: Optional[str] = None
    added_at: datetime
    removed_at: Optional[datetime] = None
    is_active: bool = True


class TransferRecord(BaseModel):
    id: str
    conversation_id: str
    from_user_id: str
    to_user_id: str
    reason: Optional[str] = None
    transferred_at: datetime


class ConversationDetails(ConversationRecord):
    contact: Optional[ContactSummary] = None
    participants: list[ParticipantRecord] = Field(default_factory=list)


class InboxItemRecord(BaseModel):
    id: int
    contact_id: str
    message_id: Optional[str] = None
    status: InboxStatus
    assigned_to: Optional[str] = None
    assigned_at: Optional[datetime] = None
    priority: int = 0
    created_at: datetime


class QueueJobRecord(BaseModel):
    id: int
    job_type: JobType
    payload: dict[str, Any] = Field(default_factory=dict)
    status: JobStatus
    attempts: int = 0
    max_attempts: int = 3
    last_error: Optional[str] = None
    next_eligible_at: Optional[datetime] = None
    claimed_at: Optional[datetime] = None
    created_at: datetime
    processed_at: Optional[datetime] = None


class CampaignRecord(BaseModel):
    id: str
    user_id: str
    name: str
    message: str
    contact_list_id: str
    instance_id: Optional[str] = None
    scheduled_for: Optional[datetime] = None
    total: int = 0
    sent: int = 0
    delivered: int = 0
    read: int = 0
    failed: int = 0
    progress: float = 0.0
    status: CampaignStatus = CampaignStatus.draft
    media_url: Optional[str] = None
    media_type: Optional[str] = None
    created_at: datetime
    updated_at: datetime


class ContactListRecord(BaseModel):
    id: str
    user_id: str
    name: str
    created_at: datetime


class MessageRecord(BaseModel):
    id: str
    user_id: str
    contact_id: str
    campaign_id: Optional[str] = None
    direction: MessageDirection
    body: str = ""
    status: MessageStatus
    has_media: bool = False
    media_url: Optional[str] = None
    media_type: Optional[str] = None
    whatsapp_message_id: Optional[str] = None
    sent_at: Optional[datetime] = None
    delivered_at: Optional[datetime] = None
    read_at: Optional[datetime] = None
    error_message: Optional[str] = None
    created_at: datetime


class AutoReplyRuleRecord(BaseModel):
    id: str
    user_id: str
    trigger: str
    reply: str
    is_active: bool = True
    usage_count: int = 0
    created_at: datetime


class WebhookLogRecord(BaseModel):
    id: int
    event_type: Optional[str] = None
    instance_id: Optional[str] = None
    payload: str
    outcome: WebhookOutcome
    error: Optional[str] = None
    created_at: datetime


class WhatsAppInstanceRecord(BaseModel):
    id: str
    user_id: str
    instance_name: str
    instance_id: str
    api_url: str
    api_key: str
    webhook_url: Optional[str] = None
    phone_number: Optional[str] = None
    status: InstanceStatus = InstanceStatus.pending
    qr_code: Optional[str] = None
    is_active: bool = True
    last_connected_at: Optional[datetime] = None
    created_at: datetime


class WebhookSender(BaseModel):
    name: Optional[str] = None
    pushname: Optional[str] = None


class InboundMessageData(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    from_number: str = Field(alias="from")
    to: str
    body: Optional[str] = None
    type: str
    timestamp: float
    id: str
    sender: Optional[WebhookSender] = None
    media_url: Optional[str] = None
    media_type: Optional[str] = None
    caption: Optional[str] = None


class MessageStatusData(BaseModel):
    id: str
    status: str
    error: Optional[str] = None


class WebhookEnvelope(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    event: str
    instance_id: Optional[str] = Field(default=None, alias="instanceId")


class InboundMessageEvent(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    event: Literal["message.received", "message"]
    instance_id: str = Field(alias="instanceId")
    data: InboundMessageData


class MessageStatusEvent(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    event: Literal["message.status", "message.ack"]
    instance_id: str = Field(alias="instanceId")
    data: MessageStatusData


class IgnoredEvent(BaseModel):
    event: str
    instance_id: Optional[str] = None


WebhookEvent = Union[InboundMessageEvent, MessageStatusEvent, IgnoredEvent]

MESSAGE_EVENTS = {"message.received", "message"}
STATUS_EVENTS = {"message.status", "message.ack"}


def parse_webhook_event(raw: Any) -> WebhookEvent:
    """Validate a gateway payload into one of the closed event shapes.

    Raises pydantic.ValidationError on schema mismatch.
    """
    envelope = WebhookEnvelope.model_validate(raw)
    if envelope.event in MESSAGE_EVENTS:
        return InboundMessageEvent.model_validate(raw)
    if envelope.event in STATUS_EVENTS:
        return MessageStatusEvent.model_validate(raw)
    return IgnoredEvent(event=envelope.event, instance_id=envelope.instance_id)
