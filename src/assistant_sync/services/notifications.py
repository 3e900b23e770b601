from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, List, Optional

from ..domain.chat_models import utc_now

_logger = logging.getLogger("assistant.notifications")


@dataclass
class Notification:
    level: str
    message: str
    conversation_id: str | None = None
    created_at: datetime = field(default_factory=utc_now)


# Rolling buffer of recent user-facing notices for diagnostics
_RECENT: List[Notification] = []
_MAX_BUFFER = 100


def record_notification(notification: Notification) -> None:
    """Log a user-facing notice and keep it in the in-memory buffer."""

    _RECENT.append(notification)
    if len(_RECENT) > _MAX_BUFFER:
        del _RECENT[0 : len(_RECENT) - _MAX_BUFFER]

    level = logging.ERROR if notification.level == "error" else logging.INFO
    try:
        _logger.log(
            level,
            "user_notification",
            extra={
                "notification_level": notification.level,
                "notification_message": notification.message,
                "conversation_id": notification.conversation_id,
            },
        )
    except Exception:
        # Logging failures should not surface to callers
        pass


def list_recent_notifications(limit: int = 50) -> List[Notification]:
    if limit <= 0:
        return []
    return list(_RECENT[-limit:])


def clear_notifications() -> None:
    _RECENT.clear()


class Notifier:
    """Callable handed to services that need to tell the user something.

    Every notice is recorded; ``sink`` additionally receives it (a UI toast,
    a console printer).
    """

    def __init__(self, sink: Optional[Callable[[Notification], None]] = None) -> None:
        self._sink = sink

    def __call__(self, level: str, message: str, conversation_id: Optional[str] = None) -> Notification:
        notification = Notification(level=level, message=message, conversation_id=conversation_id)
        record_notification(notification)
        if self._sink is not None:
            try:
                self._sink(notification)
            except Exception:
                _logger.exception("notification_sink_failed")
        return notification

    def success(self, message: str, conversation_id: Optional[str] = None) -> Notification:
        return self(level="success", message=message, conversation_id=conversation_id)

    def error(self, message: str, conversation_id: Optional[str] = None) -> Notification:
        return self(level="error", message=message, conversation_id=conversation_id)
