from __future__ import annotations

import json
import logging
from pathlib import Path
from threading import RLock
from typing import Dict, Optional

from .json_file import read_json, write_json_atomic


logger = logging.getLogger("assistant.preferences")


class ActiveConversationStore:
    """Remembers which conversation each user last had open.

    Structure: ``{"active_conversation": {user_id: conversation_id}}``.
    Without a file path the mapping lives in memory only.
    """

    def __init__(self, file_path: Optional[str] = None) -> None:
        self._lock = RLock()
        self._path = Path(file_path) if file_path else None
        self._active: Dict[str, str] = {}
        self._load()

    def _load(self) -> None:
        if self._path is None or not self._path.exists():
            return
        try:
            data = read_json(self._path) or {}
        except (OSError, json.JSONDecodeError):
            logger.warning("preferences_load_failed", extra={"path": str(self._path)})
            return
        active = data.get("active_conversation") if isinstance(data, dict) else None
        if isinstance(active, dict):
            self._active = {str(k): str(v) for k, v in active.items() if v}

    def _save(self) -> None:
        if self._path is None:
            return
        try:
            write_json_atomic(self._path, {"active_conversation": self._active})
        except OSError:
            logger.exception("preferences_save_failed", extra={"path": str(self._path)})

    def get(self, user_id: str) -> Optional[str]:
        with self._lock:
            return self._active.get(user_id)

    def set(self, user_id: str, conversation_id: str) -> None:
        with self._lock:
            if self._active.get(user_id) == conversation_id:
                return
            self._active[user_id] = conversation_id
            self._save()

    def clear(self, user_id: str, conversation_id: Optional[str] = None) -> bool:
        """Forget the user's active conversation, optionally only if it matches."""
        with self._lock:
            current = self._active.get(user_id)
            if current is None:
                return False
            if conversation_id is not None and current != conversation_id:
                return False
            del self._active[user_id]
            self._save()
            return True
