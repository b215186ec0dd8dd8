from __future__ import annotations

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

Role = Literal["buyer", "seller", "agent", "admin"]
ThreadStatus = Literal["active", "archived", "blocked"]
ThreadContextType = Literal["inquiry", "offer", "inspection", "general", "support"]
MessageType = Literal["text", "system"]
RoutingReason = Literal["INVALID_PAIR", "ROUTING_BLOCKED"]

ROLES: frozenset[str] = frozenset({"buyer", "seller", "agent", "admin"})


class _WireModel(BaseModel):
    # Fields are snake_case in Python and camelCase on the wire.
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


def _blank_to_none(value: str | None) -> str | None:
    if value is None:
        return None
    stripped = str(value).strip()
    return stripped or None


class SendMessageRequest(_WireModel):
    thread_id: str | None = Field(default=None, max_length=128)
    recipient_id: str | None = Field(default=None, max_length=128)
    property_id: str | None = Field(default=None, max_length=128)
    text: str = ""

    @field_validator("thread_id", "recipient_id", "property_id", mode="before")
    @classmethod
    def _normalize_ids(cls, value: str | None) -> str | None:
        return _blank_to_none(value)


class ThreadParticipantItem(_WireModel):
    user_id: str
    name: str
    role: Role


class LastMessageItem(_WireModel):
    sender_id: str
    content: str
    sent_at: datetime


class ThreadItem(_WireModel):
    id: str
    participants: list[ThreadParticipantItem]
    property_id: str | None = None
    property_title: str | None = None
    context_type: ThreadContextType = "general"
    status: ThreadStatus = "active"
    last_message: LastMessageItem | None = None
    message_count: int = 0
    unread_count: int = 0
    updated_at: datetime


class PaginationMeta(_WireModel):
    page: int
    limit: int
    total: int
    total_pages: int
    has_next_page: bool
    has_prev_page: bool


class ThreadListResponse(_WireModel):
    items: list[ThreadItem]
    meta: PaginationMeta


class MessageItem(_WireModel):
    id: str
    conversation_id: str
    sender_id: str
    receiver_id: str | None = None
    sender_name: str
    sender_role: Role
    message_text: str
    message_type: MessageType = "text"
    timestamp: datetime
    read: bool = False


class MarkReadResponse(_WireModel):
    thread_id: str
    marked_count: int


class MessageDeleteResponse(_WireModel):
    message_id: str
    deleted: bool


class ErrorResponse(BaseModel):
    detail: str
    code: str
    reason: RoutingReason | None = None
