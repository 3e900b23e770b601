from __future__ import annotations

import json
import logging
from typing import Any, List, Optional, Tuple

import redis

from ..domain.chat_models import EntityRef
from .ledger import LedgerEntry, LedgerKey, LedgerStatus


logger = logging.getLogger("assistant.ledger")

_PREFIX = "assistant:ledger:"


class RedisLedger:
    """Ledger shared by every client of one Redis instance.

    ``claim`` relies on ``SET NX`` so two devices observing the same directive
    cannot both win the pending slot.
    """

    def __init__(self, url: Optional[str] = None, client: Any = None) -> None:
        if client is None:
            client = redis.Redis.from_url(url or "redis://localhost:6379/0", socket_timeout=0.5)
        self._client = client

    def _name(self, key: LedgerKey) -> str:
        return _PREFIX + key.as_string()

    def _read(self, name: str) -> Optional[LedgerEntry]:
        raw = self._client.get(name)
        if raw is None:
            return None
        if isinstance(raw, bytes):
            raw = raw.decode("utf-8")
        try:
            return LedgerEntry.from_dict(json.loads(raw))
        except (ValueError, TypeError):
            logger.warning("ledger_entry_unreadable", extra={"key": name})
            return None

    def _write(self, name: str, entry: LedgerEntry, **kwargs: Any) -> bool:
        return bool(self._client.set(name, json.dumps(entry.to_dict()), **kwargs))

    def get(self, key: LedgerKey) -> Optional[LedgerEntry]:
        return self._read(self._name(key))

    def claim(self, key: LedgerKey) -> Tuple[bool, LedgerEntry]:
        name = self._name(key)
        pending = LedgerEntry(status=LedgerStatus.PENDING)
        if self._write(name, pending, nx=True):
            return True, pending
        existing = self._read(name)
        if existing is None or existing.status == LedgerStatus.FAILED:
            self._write(name, pending)
            return True, pending
        return False, existing

    def complete(self, key: LedgerKey, entity: EntityRef, source: str = "created") -> LedgerEntry:
        name = self._name(key)
        existing = self._read(name)
        if existing is not None and existing.status == LedgerStatus.COMPLETED:
            return existing
        entry = LedgerEntry(
            status=LedgerStatus.COMPLETED,
            result_entity_id=entity.entity_id,
            result_project_id=entity.project_id,
            entity_kind=entity.kind,
            source=source,
        )
        self._write(name, entry)
        return entry

    def fail(self, key: LedgerKey, error: Optional[str] = None) -> LedgerEntry:
        name = self._name(key)
        existing = self._read(name)
        if existing is not None and existing.status == LedgerStatus.COMPLETED:
            return existing
        entry = LedgerEntry(status=LedgerStatus.FAILED, error=error)
        self._write(name, entry)
        return entry

    def release(self, key: LedgerKey) -> bool:
        name = self._name(key)
        existing = self._read(name)
        if existing is None or existing.status != LedgerStatus.FAILED:
            return False
        self._client.delete(name)
        return True

    def _names_for(self, conversation_id: str) -> List[str]:
        names = []
        for raw in self._client.scan_iter(match=f"{_PREFIX}{conversation_id}:*"):
            names.append(raw.decode("utf-8") if isinstance(raw, bytes) else raw)
        return names

    def entries_for(self, conversation_id: str) -> List[Tuple[LedgerKey, LedgerEntry]]:
        out: List[Tuple[LedgerKey, LedgerEntry]] = []
        for name in self._names_for(conversation_id):
            entry = self._read(name)
            if entry is None:
                continue
            key = LedgerKey.from_string(name[len(_PREFIX):])
            if key.conversation_id != conversation_id:
                continue
            out.append((key, entry))
        return out

    def purge_conversation(self, conversation_id: str) -> int:
        names = [self._name(key) for key, _ in self.entries_for(conversation_id)]
        if names:
            self._client.delete(*names)
        return len(names)
