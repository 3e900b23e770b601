from __future__ import annotations

from dataclasses import asdict, dataclass, field, replace
from datetime import UTC, datetime
from enum import Enum
from pathlib import Path
from threading import RLock
from typing import Any, Dict, List, Optional, Protocol, Tuple
import json
import logging
import os

from ..config import Settings
from ..domain.chat_models import EntityRef
from .json_file import read_json, write_json_atomic


logger = logging.getLogger("assistant.ledger")


class LedgerStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass(frozen=True)
class LedgerKey:
    conversation_id: str
    action_kind: str
    fingerprint: str

    def as_string(self) -> str:
        return f"{self.conversation_id}:{self.action_kind}:{self.fingerprint}"

    @classmethod
    def from_string(cls, raw: str) -> "LedgerKey":
        conversation_id, action_kind, fp = raw.rsplit(":", 2)
        return cls(conversation_id=conversation_id, action_kind=action_kind, fingerprint=fp)


@dataclass
class LedgerEntry:
    status: LedgerStatus
    result_entity_id: Optional[str] = None
    result_project_id: Optional[str] = None
    entity_kind: Optional[str] = None
    source: Optional[str] = None
    error: Optional[str] = None
    updated_at: str = field(default_factory=lambda: _now_iso())

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["status"] = self.status.value
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "LedgerEntry":
        return cls(
            status=LedgerStatus(data.get("status", LedgerStatus.PENDING.value)),
            result_entity_id=data.get("result_entity_id"),
            result_project_id=data.get("result_project_id"),
            entity_kind=data.get("entity_kind"),
            source=data.get("source"),
            error=data.get("error"),
            updated_at=data.get("updated_at") or _now_iso(),
        )


def _now_iso() -> str:
    return datetime.now(UTC).isoformat().replace("+00:00", "Z")


class IdempotencyLedger(Protocol):
    def get(self, key: LedgerKey) -> Optional[LedgerEntry]: ...

    def claim(self, key: LedgerKey) -> Tuple[bool, LedgerEntry]: ...

    def complete(self, key: LedgerKey, entity: EntityRef, source: str = "created") -> LedgerEntry: ...

    def fail(self, key: LedgerKey, error: Optional[str] = None) -> LedgerEntry: ...

    def release(self, key: LedgerKey) -> bool: ...

    def entries_for(self, conversation_id: str) -> List[Tuple[LedgerKey, LedgerEntry]]: ...

    def purge_conversation(self, conversation_id: str) -> int: ...


class InMemoryLedger:
    """Ledger kept in process memory; lost on restart."""

    def __init__(self) -> None:
        self._entries: Dict[LedgerKey, LedgerEntry] = {}
        self._lock = RLock()

    def _persist(self) -> None:
        return None

    def get(self, key: LedgerKey) -> Optional[LedgerEntry]:
        with self._lock:
            entry = self._entries.get(key)
            return replace(entry) if entry else None

    def claim(self, key: LedgerKey) -> Tuple[bool, LedgerEntry]:
        """Atomically record a pending entry unless a live one already exists.

        Returns ``(True, pending_entry)`` when the caller now owns the creation,
        otherwise ``(False, existing_entry)``. Failed entries are claimable.
        """
        with self._lock:
            existing = self._entries.get(key)
            if existing is not None and existing.status != LedgerStatus.FAILED:
                return False, replace(existing)
            entry = LedgerEntry(status=LedgerStatus.PENDING)
            self._entries[key] = entry
            self._persist()
            return True, replace(entry)

    def complete(self, key: LedgerKey, entity: EntityRef, source: str = "created") -> LedgerEntry:
        with self._lock:
            existing = self._entries.get(key)
            if existing is not None and existing.status == LedgerStatus.COMPLETED:
                return replace(existing)
            entry = LedgerEntry(
                status=LedgerStatus.COMPLETED,
                result_entity_id=entity.entity_id,
                result_project_id=entity.project_id,
                entity_kind=entity.kind,
                source=source,
            )
            self._entries[key] = entry
            self._persist()
            return replace(entry)

    def fail(self, key: LedgerKey, error: Optional[str] = None) -> LedgerEntry:
        with self._lock:
            existing = self._entries.get(key)
            if existing is not None and existing.status == LedgerStatus.COMPLETED:
                return replace(existing)
            entry = LedgerEntry(status=LedgerStatus.FAILED, error=error)
            self._entries[key] = entry
            self._persist()
            return replace(entry)

    def release(self, key: LedgerKey) -> bool:
        """Remove a failed entry. Pending and completed entries are kept."""
        with self._lock:
            existing = self._entries.get(key)
            if existing is None or existing.status != LedgerStatus.FAILED:
                return False
            del self._entries[key]
            self._persist()
            return True

    def entries_for(self, conversation_id: str) -> List[Tuple[LedgerKey, LedgerEntry]]:
        with self._lock:
            return [
                (key, replace(entry))
                for key, entry in self._entries.items()
                if key.conversation_id == conversation_id
            ]

    def purge_conversation(self, conversation_id: str) -> int:
        with self._lock:
            doomed = [key for key in self._entries if key.conversation_id == conversation_id]
            for key in doomed:
                del self._entries[key]
            if doomed:
                self._persist()
            return len(doomed)


class FileLedger(InMemoryLedger):
    """JSON file-backed ledger that survives restarts.

    Structure: a single JSON object mapping ``conversation:kind:fingerprint``
    to the entry dict. Writes go through a temp file and ``os.replace``.
    """

    def __init__(self, file_path: Optional[str] = None) -> None:
        super().__init__()
        self._path = Path(file_path or os.getenv("ASSISTANT_LEDGER_FILE", "run/ledger.json"))
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._load()

    @property
    def path(self) -> Path:
        return self._path

    def _load(self) -> None:
        if not self._path.exists():
            return
        try:
            data = read_json(self._path) or {}
        except (OSError, json.JSONDecodeError):
            logger.warning("ledger_load_failed", extra={"path": str(self._path)})
            return
        for raw_key, raw_entry in data.items():
            try:
                self._entries[LedgerKey.from_string(raw_key)] = LedgerEntry.from_dict(raw_entry)
            except (ValueError, TypeError, AttributeError):
                logger.warning("ledger_entry_skipped", extra={"key": raw_key})

    def _persist(self) -> None:
        payload = {key.as_string(): entry.to_dict() for key, entry in self._entries.items()}
        try:
            write_json_atomic(self._path, payload)
        except OSError:
            # Memory state stays authoritative for this process
            logger.exception("ledger_persist_failed", extra={"path": str(self._path)})


_ledger: IdempotencyLedger | None = None


def get_ledger(settings: Optional[Settings] = None) -> IdempotencyLedger:
    global _ledger
    if _ledger is not None:
        return _ledger
    settings = settings or Settings()
    if settings.ledger_impl == "memory":
        _ledger = InMemoryLedger()
    elif settings.ledger_impl == "redis" and settings.redis_url:
        from .ledger_redis import RedisLedger

        _ledger = RedisLedger(settings.redis_url)
    else:
        if settings.ledger_impl == "redis":
            logger.warning("ledger_redis_url_missing", extra={"path": settings.ledger_file})
        _ledger = FileLedger(settings.ledger_file)
    return _ledger


def reset_ledger() -> None:
    """Drop the cached ledger instance (useful for tests)."""

    global _ledger
    _ledger = None
