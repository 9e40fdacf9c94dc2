"""Request/response schemas for the messaging endpoints and real-time frames."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Literal

from pydantic import AliasChoices, BaseModel, ConfigDict, Field

# ---------------------------------------------------------------------------
# Messages
# ---------------------------------------------------------------------------


class AttachmentOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    attachment_id: int
    message_id: int
    attachment_type: str
    file_name: str
    file_url: str
    file_size: int | None = None
    mime_type: str | None = None
    metadata: dict[str, Any] | None = None
    uploaded_at: datetime


class MessageOut(BaseModel):
    """A message as the viewer sees it, with one level of reply preview."""

    model_config = ConfigDict(from_attributes=True)

    message_id: int
    conversation_id: int
    sender_id: str
    message_text: str
    sent_at: datetime
    edited_at: datetime | None = None
    is_deleted: bool = False
    deleted_at: datetime | None = None
    reply_to_message_id: int | None = None
    sender_name: str = ""
    sender_image: str | None = None
    is_read: bool = False
    attachments: list[AttachmentOut] = Field(default_factory=list)
    reply_to_message: MessageOut | None = None


class AttachmentIn(BaseModel):
    """Descriptor of a file already uploaded to blob storage."""

    attachment_type: Literal["image", "document", "workout_plan"]
    file_name: str = Field(..., min_length=1, max_length=255)
    file_url: str = Field(..., min_length=1, max_length=2048, pattern=r"^https?://")
    file_size: int | None = Field(None, ge=0)
    mime_type: str | None = Field(None, max_length=128)
    metadata: dict[str, Any] | None = None


class SendMessageRequest(BaseModel):
    conversation_id: int
    message_text: str
    reply_to_message_id: int | None = None
    attachments: list[AttachmentIn] = Field(default_factory=list, max_length=10)


class UpdateMessageRequest(BaseModel):
    message_text: str


class MessageResponse(BaseModel):
    message: MessageOut


class MessagesResponse(BaseModel):
    messages: list[MessageOut]
    total: int
    limit: int
    offset: int
    has_more: bool


# ---------------------------------------------------------------------------
# Conversations
# ---------------------------------------------------------------------------


class CreateConversationRequest(BaseModel):
    coach_id: str = Field(..., min_length=1)
    client_id: str = Field(..., min_length=1)


class ConversationOut(BaseModel):
    """Conversation with participant display fields and the viewer's unread count."""

    model_config = ConfigDict(from_attributes=True)

    conversation_id: int = Field(validation_alias=AliasChoices("conversation_id", "id"))
    coach_id: str
    client_id: str
    coach_name: str = ""
    coach_image: str | None = None
    client_name: str = ""
    client_image: str | None = None
    created_at: datetime
    updated_at: datetime
    last_message_at: datetime | None = None
    is_archived: bool = False
    last_message: MessageOut | None = None
    unread_count: int = 0
    total_messages: int = 0


class ConversationSummary(BaseModel):
    """One inbox row."""

    model_config = ConfigDict(from_attributes=True)

    conversation_id: int
    coach_id: str
    client_id: str
    coach_name: str
    coach_image: str | None = None
    client_name: str
    client_image: str | None = None
    created_at: datetime
    updated_at: datetime
    last_message_at: datetime | None = None
    is_archived: bool
    last_message_text: str | None = None
    last_message_sender_id: str | None = None
    last_message_sent_at: datetime | None = None
    total_messages: int = 0
    unread_count: int = 0


class ConversationResponse(BaseModel):
    conversation: ConversationOut
    message: str | None = None


class ConversationsResponse(BaseModel):
    conversations: list[ConversationSummary]
    total: int
    limit: int
    offset: int
    has_more: bool


class ArchiveRequest(BaseModel):
    is_archived: bool = True


class UnreadCountResponse(BaseModel):
    conversation_id: int
    unread_count: int


class StatusMessage(BaseModel):
    message: str


class MarkAllReadResponse(BaseModel):
    message: str
    marked: int


class SubscriptionResponse(BaseModel):
    status: str
    conversation_id: int
    connected: bool


# ---------------------------------------------------------------------------
# Real-time
# ---------------------------------------------------------------------------


class RealtimeEvent(BaseModel):
    """Server-to-client frame. Optional fields are omitted when unset."""

    type: str
    conversation_id: int | None = None
    message: MessageOut | None = None
    message_id: int | None = None
    read_by: str | None = None
    error: str | None = None
    timestamp: datetime


class RealtimeStatsResponse(BaseModel):
    active_connections: int
    connected_users: int
    channels: dict[str, int]
