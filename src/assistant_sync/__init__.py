"""Client-side conversation sync for the project assistant.

Importing the package wires the ``assistant`` logger tree. Events are logged
as snake_case names with context in ``extra``; the handler prints the
conversation and directive kind next to the event when a record carries them.
"""
import logging
import os


_CONTEXT_FIELDS = ("conversation_id", "kind", "entity_id", "status", "error")

# child logger -> env var overriding its level
_CHANNEL_LEVELS = {
    "assistant.http": "ASSISTANT_HTTP_LOG_LEVEL",
    "assistant.dispatch": "ASSISTANT_DISPATCH_LOG_LEVEL",
}


class _ContextFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        line = super().format(record)
        context = [f"{name}={getattr(record, name)}" for name in _CONTEXT_FIELDS if hasattr(record, name)]
        return f"{line} {' '.join(context)}" if context else line


def _level(env_name: str, fallback: int) -> int:
    raw = (os.getenv(env_name) or "").strip().upper()
    value = logging.getLevelName(raw) if raw else fallback
    return value if isinstance(value, int) else fallback


def _configure_logging() -> None:
    root = logging.getLogger("assistant")
    if not root.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(_ContextFormatter("%(asctime)s %(name)s %(levelname)s %(message)s"))
        root.addHandler(handler)
    root.setLevel(_level("ASSISTANT_LOG_LEVEL", logging.INFO))

    for channel, env_name in _CHANNEL_LEVELS.items():
        logging.getLogger(channel).setLevel(_level(env_name, root.level))


_configure_logging()
