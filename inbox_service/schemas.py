"""
Pydantic schemas for records, request payloads and API responses.

This module contains:
- Typed records validated from raw store rows (InboundRecord, OutboundRecord)
- The derived ConversationSummary and merged ThreadMessage
- Webhook payload models (WhatsApp Business Account format)
- Response models for the HTTP endpoints
"""

from datetime import datetime
from typing import Literal, Optional

from pydantic import BaseModel, Field, field_validator, model_validator

from inbox_service.utils import parse_utc


# =============================================================================
# Typed Store Records
# =============================================================================

class InboundRecord(BaseModel):
    """
    One row of the inbound log (webhook_messages), validated at the store
    boundary. Unknown columns are ignored so projections can be narrow.
    """
    id: int
    message_id: Optional[str] = None
    from_number: str
    from_name: Optional[str] = None
    message_type: str = "text"
    message_text: Optional[str] = None
    media_id: Optional[str] = None
    media_mime_type: Optional[str] = None
    timestamp: Optional[int] = None
    status: str = "unread"
    replied: bool = False
    reply_text: Optional[str] = None
    reply_sent_at: Optional[str] = None
    created_at: Optional[str] = None

    model_config = {"extra": "ignore"}

    @field_validator("replied", mode="before")
    @classmethod
    def coerce_replied(cls, v):
        return bool(v) if v is not None else False

    @field_validator("message_type", mode="before")
    @classmethod
    def default_message_type(cls, v):
        return "text" if v is None else v

    @field_validator("status", mode="before")
    @classmethod
    def default_status(cls, v):
        return "unread" if v is None else v

    @field_validator("created_at", "reply_sent_at")
    @classmethod
    def validate_iso8601(cls, v: Optional[str]) -> Optional[str]:
        if v is not None:
            parse_utc(v)
        return v

    @model_validator(mode="after")
    def require_time(self) -> "InboundRecord":
        if self.timestamp is None and not self.created_at:
            raise ValueError("inbound row needs timestamp or created_at")
        return self

    @property
    def message_time(self) -> datetime:
        """
        Provider timestamp, falling back to ingestion time.

        webhook_messages.timestamp is NOT NULL, so for stored rows this is
        always the timestamp column, the same key thread queries order by.
        The fallback only applies to rows validated from other sources.
        """
        if self.timestamp is not None:
            return parse_utc(self.timestamp)
        return parse_utc(self.created_at)


class OutboundRecord(BaseModel):
    """One row of the outbound log (message_history)."""
    id: int
    message_id: Optional[str] = None
    to_number: str
    template_name: Optional[str] = None
    message_text: Optional[str] = None
    message_type: Optional[str] = None
    status: Optional[str] = None
    media_url: Optional[str] = None
    created_at: str
    updated_at: Optional[str] = None

    model_config = {"extra": "ignore"}

    @field_validator("created_at", "updated_at")
    @classmethod
    def validate_iso8601(cls, v: Optional[str]) -> Optional[str]:
        if v is not None:
            parse_utc(v)
        return v

    @property
    def message_time(self) -> datetime:
        return parse_utc(self.created_at)


# =============================================================================
# Derived Models
# =============================================================================

class ConversationSummary(BaseModel):
    """
    Per-contact aggregate of both message logs, keyed by normalized phone.
    Built fresh on every cache rebuild and never persisted.
    """
    normalized_phone: str
    phone_number: str = Field(..., description="Raw phone from the most recent contributing message")
    contact_name: str
    last_message_text: str = ""
    last_message_time: datetime
    last_message_is_outgoing: bool
    last_incoming_message_text: Optional[str] = None
    last_incoming_message_time: Optional[datetime] = None
    unread_count: int = Field(0, ge=0)
    is_read: bool
    has_replied: bool = False
    has_incoming_messages: bool
    updated_at: datetime

    @property
    def priority_time(self) -> datetime:
        """Unanswered inbound activity outranks newer outbound activity."""
        return self.last_incoming_message_time or self.last_message_time


class ThreadMessage(BaseModel):
    """
    One message of a conversation thread, from either log.
    ``type`` tells the direction; fields of the other direction stay null.
    """
    id: int
    type: Literal["incoming", "outgoing"]
    timestamp: datetime
    message_text: str = ""
    message_type: Optional[str] = None
    status: Optional[str] = None
    # incoming
    from_number: Optional[str] = None
    contact_name: Optional[str] = None
    replied: Optional[bool] = None
    reply_text: Optional[str] = None
    media_id: Optional[str] = None
    media_mime_type: Optional[str] = None
    # outgoing
    to_number: Optional[str] = None
    template_name: Optional[str] = None
    media_url: Optional[str] = None


# =============================================================================
# Webhook Payload Models
# =============================================================================

class WhatsAppMessage(BaseModel):
    """A single entry of ``value.messages``; type-specific bodies stay as dicts."""
    id: str = Field(..., min_length=1)
    from_number: str = Field(..., alias="from", min_length=1)
    timestamp: int
    type: str = "text"
    text: Optional[dict] = None
    button: Optional[dict] = None
    interactive: Optional[dict] = None
    image: Optional[dict] = None
    video: Optional[dict] = None
    document: Optional[dict] = None
    audio: Optional[dict] = None

    model_config = {"populate_by_name": True, "extra": "allow"}


class WhatsAppStatus(BaseModel):
    """Delivery-status callback for an outbound message."""
    id: str
    status: str
    timestamp: Optional[int] = None
    recipient_id: Optional[str] = None

    model_config = {"extra": "allow"}


class WebhookChangeValue(BaseModel):
    contacts: list[dict] = Field(default_factory=list)
    messages: list[dict] = Field(default_factory=list)
    statuses: list[dict] = Field(default_factory=list)

    model_config = {"extra": "allow"}


class WebhookChange(BaseModel):
    field: str
    value: WebhookChangeValue = Field(default_factory=WebhookChangeValue)


class WebhookEntry(BaseModel):
    id: Optional[str] = None
    changes: list[WebhookChange] = Field(default_factory=list)


class WebhookPayload(BaseModel):
    """Top-level WhatsApp Business Account webhook body."""
    object: str
    entry: list[WebhookEntry] = Field(default_factory=list)

    model_config = {
        "json_schema_extra": {
            "examples": [
                {
                    "object": "whatsapp_business_account",
                    "entry": [{
                        "id": "1234",
                        "changes": [{
                            "field": "messages",
                            "value": {
                                "contacts": [{"profile": {"name": "Sara"}, "wa_id": "966501234567"}],
                                "messages": [{
                                    "id": "wamid.A1",
                                    "from": "966501234567",
                                    "timestamp": "1736935200",
                                    "type": "text",
                                    "text": {"body": "Hello"}
                                }]
                            }
                        }]
                    }]
                }
            ]
        }
    }


# =============================================================================
# Response Models
# =============================================================================

class WebhookResponse(BaseModel):
    """Webhook acknowledgement; always sent with HTTP 200."""
    success: bool = True
    created: int = 0
    duplicates: int = 0
    status_updates: int = 0
    error: Optional[str] = None


class ErrorResponse(BaseModel):
    detail: str = Field(..., description="Error description")


class ConversationListResponse(BaseModel):
    """
    Response model for GET /conversations.

    - conversations: page of summaries, most urgent first
    - total: conversations in the cached list (before paging)
    - hasMore / nextOffset: where the next page starts
    - loaded: summaries in this page
    - fromCache / stale / error: how the list was obtained
    """
    conversations: list[ConversationSummary] = Field(default_factory=list)
    total: int = Field(..., ge=0)
    has_more: bool = Field(..., serialization_alias="hasMore")
    next_offset: Optional[int] = Field(None, serialization_alias="nextOffset")
    loaded: int = Field(..., ge=0)
    from_cache: bool = Field(False, serialization_alias="fromCache")
    stale: bool = False
    error: Optional[str] = None

    model_config = {"populate_by_name": True}


class ThreadResponse(BaseModel):
    """
    Response model for GET /conversations/{phone}.

    Each direction is paged on its own, so ``messages`` can hold up to
    twice ``limit`` entries.
    """
    messages: list[ThreadMessage] = Field(default_factory=list)
    total: int = Field(..., ge=0)
    has_more: bool = Field(..., serialization_alias="hasMore")
    incoming_total: int = Field(0, ge=0, serialization_alias="incomingTotal")
    outgoing_total: int = Field(0, ge=0, serialization_alias="outgoingTotal")
    error: Optional[str] = None

    model_config = {"populate_by_name": True}


class MarkReadResponse(BaseModel):
    success: bool = True
    updated: int = Field(0, ge=0, description="Inbound messages switched to read")


class SenderCount(BaseModel):
    """Inbound message count for one sender."""
    from_number: str = Field(
        ...,
        alias="from",
        serialization_alias="from",
        description="Sender phone number"
    )
    count: int = Field(..., ge=0)

    model_config = {"populate_by_name": True}


class StatsResponse(BaseModel):
    """
    Response model for GET /stats: totals across both message logs.
    """
    total_incoming: int = Field(..., ge=0)
    unread_incoming: int = Field(..., ge=0)
    senders_count: int = Field(..., ge=0)
    total_outgoing: int = Field(..., ge=0)
    successful_outgoing: int = Field(..., ge=0, description="Outbound with status sent, delivered or read")
    failed_outgoing: int = Field(..., ge=0)
    templates_count: int = Field(..., ge=0, description="Distinct template names used")
    messages_per_sender: list[SenderCount] = Field(
        default_factory=list,
        description="Top 10 senders by inbound count (descending)"
    )
    first_incoming_ts: Optional[int] = None
    last_incoming_ts: Optional[int] = None


class HealthResponse(BaseModel):
    """Response model for health check endpoints."""
    status: str = Field(..., description="Health status")
    reason: Optional[str] = Field(None, description="Reason if not ready")
