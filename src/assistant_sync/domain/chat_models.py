from __future__ import annotations

from datetime import UTC, datetime
from typing import Any, Dict, List, Literal, Optional
import uuid

from pydantic import BaseModel, Field, field_validator


Role = Literal["user", "assistant"]
EntityKind = Literal["project", "task"]


def utc_now() -> datetime:
    return datetime.now(UTC)


def _new_client_id() -> str:
    return uuid.uuid4().hex


class Message(BaseModel):
    role: Role
    content: str
    created_at: datetime = Field(default_factory=utc_now)
    message_id: Optional[str] = None
    client_id: str = Field(default_factory=_new_client_id)
    pending: bool = False
    created_entity_id: Optional[str] = None
    created_entity_kind: Optional[EntityKind] = None
    created_entity_project_id: Optional[str] = None
    action: Optional[Dict[str, Any]] = None

    @field_validator("created_at")
    @classmethod
    def _as_aware(cls, value: datetime) -> datetime:
        # Server timestamps without an offset are UTC
        if value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value

    @property
    def key(self) -> str:
        return self.message_id or self.client_id

    @property
    def is_stamped(self) -> bool:
        return self.created_entity_id is not None


class Conversation(BaseModel):
    conversation_id: str
    title: Optional[str] = None
    messages: List[Message] = Field(default_factory=list)
    metadata: Dict[str, Any] = Field(default_factory=dict)
    updated_at: Optional[datetime] = None


class ConversationCreate(BaseModel):
    title: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


class ChatReply(BaseModel):
    """Result of one send call: the assistant text and any directive the server extracted."""

    reply_text: str
    directive: Optional[Dict[str, Any]] = None
    model: Optional[str] = None


class EntityRef(BaseModel):
    entity_id: str
    kind: EntityKind
    name: Optional[str] = None
    project_id: Optional[str] = None


class TenantScope(BaseModel):
    tenant_id: str
    user_id: str
    user_email: str
