from __future__ import annotations

import asyncio
import json
from collections import Counter
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from src.assistant_sync.domain.chat_models import (
    ChatReply,
    Conversation,
    ConversationCreate,
    EntityRef,
    Message,
    TenantScope,
    utc_now,
)
from src.assistant_sync.domain.directives import CreateProjectDirective, CreateTaskDirective
from src.assistant_sync.domain.errors import TransientNetworkError


def at(seconds: float, base: Optional[datetime] = None) -> datetime:
    """Timestamp ``seconds`` after a fixed base (default: now)."""
    return (base or utc_now()) + timedelta(seconds=seconds)


def msg(role: str, content: str, created_at: datetime, **kwargs: Any) -> Message:
    return Message(role=role, content=content, created_at=created_at, **kwargs)


class FakeBackend:
    """In-memory stand-in for the assistant backend.

    Fetches return fresh ``Message`` objects each time, like the HTTP client
    does, so local fields only survive through reconciliation.
    """

    def __init__(self) -> None:
        self.calls: Counter = Counter()
        self.conversations: Dict[str, Conversation] = {}
        self.replies: List[Any] = []
        self.create_errors: List[Exception] = []
        self.projects: List[EntityRef] = []
        self.tasks: List[EntityRef] = []
        self.send_gate: Optional[asyncio.Event] = None
        self.offline = False
        self._seq = 0

    def _next_id(self, prefix: str) -> str:
        self._seq += 1
        return f"{prefix}-{self._seq}"

    def add_conversation(self, messages: Optional[List[Message]] = None, title: str = "Chat") -> Conversation:
        conversation = Conversation(
            conversation_id=self._next_id("conv"), title=title, messages=list(messages or [])
        )
        self.conversations[conversation.conversation_id] = conversation
        return conversation

    def append(self, conversation_id: str, role: str, content: str, **kwargs: Any) -> Message:
        message = Message(
            role=role,
            content=content,
            created_at=kwargs.pop("created_at", None) or utc_now(),
            message_id=self._next_id("msg"),
            **kwargs,
        )
        self.conversations[conversation_id].messages.append(message)
        return message

    def _fetched(self, conversation: Conversation) -> Conversation:
        return Conversation(
            conversation_id=conversation.conversation_id,
            title=conversation.title,
            messages=[
                Message(
                    role=m.role,
                    content=m.content,
                    created_at=m.created_at,
                    message_id=m.message_id,
                    action=m.action,
                )
                for m in conversation.messages
            ],
        )

    async def list_conversations(self) -> List[Conversation]:
        self.calls["list_conversations"] += 1
        return [self._fetched(c) for c in self.conversations.values()]

    async def create_conversation(self, payload: ConversationCreate) -> Conversation:
        self.calls["create_conversation"] += 1
        return self._fetched(self.add_conversation(title=payload.title or "New Conversation"))

    async def get_conversation(self, conversation_id: str) -> Optional[Conversation]:
        self.calls["get_conversation"] += 1
        if self.offline:
            raise TransientNetworkError("Network connection issue: offline")
        conversation = self.conversations.get(conversation_id)
        return self._fetched(conversation) if conversation else None

    async def delete_conversation(self, conversation_id: str) -> None:
        self.calls["delete_conversation"] += 1
        self.conversations.pop(conversation_id, None)

    async def send_chat_message(
        self, conversation_id: str, content: str, model_id: Optional[str] = None
    ) -> ChatReply:
        self.calls["send_chat_message"] += 1
        if self.offline:
            raise TransientNetworkError("Network connection issue: offline")
        if self.send_gate is not None:
            await self.send_gate.wait()
        reply = self.replies.pop(0) if self.replies else ChatReply(reply_text=f"Echo: {content}")
        if isinstance(reply, Exception):
            raise reply
        self.append(conversation_id, "user", content)
        self.append(conversation_id, "assistant", reply.reply_text, action=reply.directive)
        return reply

    async def create_project_from_directive(
        self, directive: CreateProjectDirective, scope: TenantScope
    ) -> EntityRef:
        self.calls["create_project"] += 1
        await asyncio.sleep(0)
        if self.create_errors:
            raise self.create_errors.pop(0)
        project = EntityRef(entity_id=self._next_id("proj"), kind="project", name=directive.project_name)
        self.projects.append(project)
        return project

    async def create_task_from_directive(self, directive: CreateTaskDirective, scope: TenantScope) -> EntityRef:
        self.calls["create_task"] += 1
        await asyncio.sleep(0)
        if self.create_errors:
            raise self.create_errors.pop(0)
        project = await self.find_existing_project(scope, directive.project_name or "")
        task = EntityRef(
            entity_id=self._next_id("task"),
            kind="task",
            name=directive.title,
            project_id=project.entity_id if project else None,
        )
        self.tasks.append(task)
        return task

    async def find_existing_project(self, scope: TenantScope, name: str) -> Optional[EntityRef]:
        self.calls["find_existing_project"] += 1
        for project in self.projects:
            if project.name == name:
                return project
        return None

    async def find_existing_task(
        self, scope: TenantScope, title: str, project_id: Optional[str] = None
    ) -> Optional[EntityRef]:
        self.calls["find_existing_task"] += 1
        for task in self.tasks:
            if task.name == title and (project_id is None or task.project_id == project_id):
                return task
        return None


class FakeResponse:
    def __init__(self, status_code: int = 200, payload: Any = None, text: Optional[str] = None) -> None:
        self.status_code = status_code
        self._payload = payload
        self.text = text if text is not None else json.dumps(payload)

    def json(self) -> Any:
        if self._payload is None and self.text:
            return json.loads(self.text)
        return self._payload


class FakeSession:
    """Records ``requests.Session.request`` calls and replays queued responses."""

    def __init__(self, *responses: Any) -> None:
        self.responses = list(responses)
        self.requests: List[Dict[str, Any]] = []

    def request(self, method: str, url: str, **kwargs: Any) -> FakeResponse:
        self.requests.append({"method": method, "url": url, **kwargs})
        response = self.responses.pop(0) if self.responses else FakeResponse(200, {})
        if isinstance(response, Exception):
            raise response
        return response


class FakeRedis:
    """The slice of the redis-py client the ledger uses."""

    def __init__(self) -> None:
        self.store: Dict[str, str] = {}

    def get(self, name: str) -> Optional[bytes]:
        value = self.store.get(name)
        return value.encode("utf-8") if value is not None else None

    def set(self, name: str, value: str, nx: bool = False) -> Optional[bool]:
        if nx and name in self.store:
            return None
        self.store[name] = value
        return True

    def delete(self, *names: str) -> int:
        removed = 0
        for name in names:
            if self.store.pop(name, None) is not None:
                removed += 1
        return removed

    def scan_iter(self, match: str = "*"):
        prefix = match.rstrip("*")
        for name in list(self.store):
            if name.startswith(prefix):
                yield name.encode("utf-8")
