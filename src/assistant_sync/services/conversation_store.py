"""Reconciliation of server conversation snapshots with local messages.

The server copy of a conversation is authoritative but lags behind what the
user just typed; the local copy holds optimistic messages and fields stamped
by the action dispatcher that the server never stores. ``merge`` combines the
two into one ordered, duplicate-free list.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional, Tuple

from ..domain.chat_models import EntityRef, Message, utc_now


_LOCAL_FIELDS = ("created_entity_id", "created_entity_kind", "created_entity_project_id")


@dataclass(frozen=True)
class DedupWindows:
    user_seconds: float = 10.0
    assistant_seconds: float = 2.0

    def for_role(self, role: str) -> timedelta:
        seconds = self.user_seconds if role == "user" else self.assistant_seconds
        return timedelta(seconds=seconds)


def _same_message(a: Message, b: Message, windows: DedupWindows) -> bool:
    if a.role != b.role or a.content != b.content:
        return False
    return abs(a.created_at - b.created_at) <= windows.for_role(a.role)


def _canonical_order(message: Message) -> Tuple[datetime, str, str, str]:
    # total order on content so ties never fall back to list position
    return (message.created_at, message.role, message.content, message.message_id or "")


def _collapse_echoes(canonical: List[Message], windows: DedupWindows) -> List[Message]:
    """Drop server echoes; the earliest copy of each cluster wins."""
    kept: List[Message] = []
    for message in canonical:
        if any(_same_message(message, other, windows) for other in kept):
            continue
        kept.append(message)
    return kept


def _pair_up(server: List[Message], local: List[Message], windows: DedupWindows) -> Dict[int, int]:
    """Map server index to local index, closest pairs first."""
    pairs: List[Tuple[timedelta, int, int]] = []
    for l_index, message in enumerate(local):
        for s_index, candidate in enumerate(server):
            if _same_message(candidate, message, windows):
                pairs.append((abs(candidate.created_at - message.created_at), s_index, l_index))
    pairs.sort()

    matched: Dict[int, int] = {}
    used_local = set()
    for _, s_index, l_index in pairs:
        if s_index in matched or l_index in used_local:
            continue
        matched[s_index] = l_index
        used_local.add(l_index)
    return matched


def _sort_key(message: Message) -> datetime:
    return message.created_at


def merge(
    canonical: Iterable[Message],
    local: Iterable[Message],
    windows: Optional[DedupWindows] = None,
) -> List[Message]:
    """Combine a server snapshot with the local list.

    Local messages with a canonical counterpart (same role and content, close
    enough in time) are replaced by it, carrying over any entity fields the
    dispatcher stamped locally. Local messages without one stay as they are.
    Both inputs are put in time order first, so their list order never
    changes the outcome. The result is sorted by ``created_at`` with
    canonical messages ahead of pending ones on exact ties.
    """
    windows = windows or DedupWindows()
    ordered = sorted(canonical, key=_canonical_order)
    local = sorted(local, key=_canonical_order)
    server = [m.model_copy() for m in _collapse_echoes(ordered, windows)]

    matched = _pair_up(server, local, windows)
    taken = set(matched.values())
    still_pending = [m for i, m in enumerate(local) if i not in taken]

    for index, l_index in matched.items():
        local_copy = local[l_index]
        target = server[index]
        target.client_id = local_copy.client_id
        target.pending = False
        for name in _LOCAL_FIELDS:
            value = getattr(local_copy, name)
            if value is not None:
                setattr(target, name, value)

    return sorted(server + still_pending, key=_sort_key)


class ConversationState:
    """Local message list for the conversation currently in view."""

    def __init__(
        self,
        conversation_id: Optional[str] = None,
        windows: Optional[DedupWindows] = None,
        optimistic_window_seconds: float = 1.0,
    ) -> None:
        self.conversation_id = conversation_id
        self._windows = windows or DedupWindows()
        self._optimistic_window = timedelta(seconds=optimistic_window_seconds)
        self._messages: List[Message] = []

    @property
    def messages(self) -> List[Message]:
        return list(self._messages)

    def __len__(self) -> int:
        return len(self._messages)

    def reset(self, conversation_id: Optional[str], messages: Iterable[Message] = ()) -> None:
        self.conversation_id = conversation_id
        self._messages = merge(messages, [], self._windows)

    def append_optimistic(self, content: str, now: Optional[datetime] = None) -> Optional[Message]:
        """Add a pending user message; an identical one from the last second is reused instead."""
        now = now or utc_now()
        for existing in self._messages:
            if (
                existing.role == "user"
                and existing.content == content
                and abs(existing.created_at - now) < self._optimistic_window
            ):
                return None
        message = Message(role="user", content=content, created_at=now, pending=True)
        self._messages = sorted(self._messages + [message], key=_sort_key)
        return message

    def remove_optimistic(self, client_id: str) -> bool:
        before = len(self._messages)
        self._messages = [m for m in self._messages if not (m.pending and m.client_id == client_id)]
        return len(self._messages) != before

    def add_reply(
        self,
        content: str,
        action: Optional[Dict[str, Any]] = None,
        now: Optional[datetime] = None,
    ) -> Message:
        now = now or utc_now()
        for existing in self._messages[-5:]:
            if existing.role == "assistant" and _same_message(
                existing, Message(role="assistant", content=content, created_at=now), self._windows
            ):
                return existing
        message = Message(role="assistant", content=content, created_at=now, action=action)
        self._messages = sorted(self._messages + [message], key=_sort_key)
        return message

    def apply_snapshot(self, canonical: Iterable[Message]) -> List[Message]:
        self._messages = merge(canonical, self._messages, self._windows)
        return self.messages

    def newest(self) -> Optional[Message]:
        return self._messages[-1] if self._messages else None

    def newest_assistant(self) -> Optional[Message]:
        for message in reversed(self._messages):
            if message.role == "assistant":
                return message
        return None

    def find(self, key: str) -> Optional[Message]:
        for message in self._messages:
            if message.key == key or message.client_id == key:
                return message
        return None

    def stamp(self, message: Message, entity: EntityRef) -> Optional[Message]:
        """Record the created entity on the held copy of ``message``."""
        target = self.find(message.client_id) or self.find(message.key)
        if target is None:
            return None
        stamp_message(target, entity)
        return target


def stamp_message(message: Message, entity: EntityRef) -> None:
    message.created_entity_id = entity.entity_id
    message.created_entity_kind = entity.kind
    if entity.project_id:
        message.created_entity_project_id = entity.project_id
