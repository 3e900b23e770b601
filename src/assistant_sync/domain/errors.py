from __future__ import annotations

"""Error taxonomy shared by the assistant client components."""

from typing import Optional


class AssistantError(Exception):
    """Base class for failures raised by assistant collaborators."""


class TransientNetworkError(AssistantError):
    """Send, poll or create failed for connectivity reasons (timeouts, 5xx)."""

    def __init__(self, message: str, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class QuotaOrCapacityError(AssistantError):
    """The chat backend signalled token or rate exhaustion inside its envelope."""

    def __init__(self, message: str, model: Optional[str] = None, code: Optional[str] = None) -> None:
        super().__init__(message)
        self.model = model
        self.code = code


class MalformedDirectiveError(AssistantError):
    """A directive fragment was found but could not be decoded or validated."""


class CreationFailure(AssistantError):
    """The external creation endpoint rejected or failed the request."""

    def __init__(self, message: str, kind: Optional[str] = None) -> None:
        super().__init__(message)
        self.kind = kind


class ConversationNotFound(AssistantError):
    def __init__(self, conversation_id: str) -> None:
        super().__init__(f"Conversation not found: {conversation_id}")
        self.conversation_id = conversation_id
