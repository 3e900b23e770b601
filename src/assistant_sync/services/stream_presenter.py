from __future__ import annotations

import asyncio
import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, Iterable, List, Optional, Sequence, Set

from ..core.state_machine import RevealState, is_valid_reveal_transition
from ..domain.chat_models import Message, utc_now
from .directive_parser import is_directive_only


logger = logging.getLogger("assistant.presenter")

FrameCallback = Callable[[str, str, RevealState], None]

_TOKEN_RE = re.compile(r"\S+")


def reveal_frames(text: str) -> List[str]:
    """Prefixes of ``text`` ending after each whitespace-delimited token.

    The last frame is always ``text`` itself, so trailing whitespace and
    whitespace-only texts still converge.
    """
    frames = [text[: match.end()] for match in _TOKEN_RE.finditer(text)]
    if not frames or frames[-1] != text:
        frames.append(text)
    return frames


@dataclass
class RevealSession:
    key: str
    text: str
    frames: List[str] = field(default_factory=list)
    position: int = 0
    state: RevealState = RevealState.IDLE

    @property
    def displayed(self) -> str:
        if self.state == RevealState.COMPLETE:
            return self.text
        if self.position == 0:
            return ""
        return self.frames[self.position - 1]

    def restart(self, text: str) -> None:
        self.text = text
        self.frames = reveal_frames(text)
        self.position = 0


class StreamPresenter:
    """Word-by-word reveal of the newest assistant message.

    Only a message that is newest, from the assistant, not a bare directive
    and newly arrived is revealed; everything else renders complete at once.
    The ticker runs as a task on the current event loop; without a running
    loop the caller drives it with ``step()``.
    """

    def __init__(
        self,
        interval: float = 0.025,
        recency_window: float = 5.0,
        on_frame: Optional[FrameCallback] = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._interval = max(0.0, interval)
        self._recency = timedelta(seconds=recency_window)
        self._on_frame = on_frame
        self._clock = clock
        self._session: Optional[RevealSession] = None
        self._task: Optional[asyncio.Task] = None
        self._enabled = True
        self._settled: Set[str] = set()
        self.steps = 0

    @property
    def enabled(self) -> bool:
        return self._enabled

    @property
    def session(self) -> Optional[RevealSession]:
        return self._session

    def set_enabled(self, enabled: bool) -> None:
        self._enabled = enabled
        if not enabled:
            self.finish()

    def is_newly_arrived(self, message: Message, just_streamed: bool = False) -> bool:
        if just_streamed:
            return True
        return self._clock() - message.created_at < self._recency

    def _qualifies(self, message: Message, just_streamed: bool) -> bool:
        return (
            self._enabled
            and message.role == "assistant"
            and bool(message.content)
            and message.client_id not in self._settled
            and not is_directive_only(message.content)
            and self.is_newly_arrived(message, just_streamed)
        )

    def mark_history(self, messages: Iterable[Message]) -> None:
        """Render these messages complete from the first paint, never revealed."""
        for message in messages:
            self._settled.add(message.client_id)

    def _transition(self, session: RevealSession, target: RevealState) -> bool:
        if not is_valid_reveal_transition(session.state, target):
            logger.debug(
                "reveal_transition_ignored",
                extra={"key": session.key, "from": session.state.value, "to": target.value},
            )
            return False
        session.state = target
        return True

    def _emit(self, session: RevealSession) -> None:
        if self._on_frame is None:
            return
        try:
            self._on_frame(session.key, session.displayed, session.state)
        except Exception:
            logger.exception("reveal_frame_callback_failed", extra={"key": session.key})

    def observe(self, messages: Sequence[Message], just_streamed: bool = False) -> RevealState:
        """Re-evaluate after the message list changed; returns the newest message's state."""
        newest = messages[-1] if messages else None
        current = self._session
        if newest is not None and current is not None and current.key == newest.client_id:
            if newest.content != current.text:
                if current.state == RevealState.REVEALING:
                    current.restart(newest.content)
                    self._transition(current, RevealState.REVEALING)
                    self._start_ticker(current)
                else:
                    current.text = newest.content
            return current.state

        if current is not None and current.state == RevealState.REVEALING:
            self.finish()
        if current is not None:
            self._settled.add(current.key)

        if newest is None or not self._qualifies(newest, just_streamed):
            self._session = None
            return RevealState.COMPLETE

        session = RevealSession(key=newest.client_id, text=newest.content)
        session.restart(newest.content)
        self._session = session
        self._transition(session, RevealState.REVEALING)
        self._start_ticker(session)
        return session.state

    def _start_ticker(self, session: RevealSession) -> None:
        self._cancel_task()
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        self._task = loop.create_task(self._tick(session))

    async def _tick(self, session: RevealSession) -> None:
        while self._session is session and session.state == RevealState.REVEALING:
            await asyncio.sleep(self._interval)
            if self._session is not session:
                return
            self.step()

    def step(self) -> str:
        """Reveal one more token of the active message and return the displayed text."""
        session = self._session
        if session is None:
            return ""
        if session.state != RevealState.REVEALING:
            return session.displayed
        session.position = min(session.position + 1, len(session.frames))
        self.steps += 1
        if session.position >= len(session.frames):
            self._transition(session, RevealState.COMPLETE)
            self._settled.add(session.key)
        self._emit(session)
        return session.displayed

    def finish(self) -> None:
        """Show the full text of the active message now (stop button, disable)."""
        session = self._session
        self._cancel_task()
        if session is None or session.state == RevealState.COMPLETE:
            return
        self._transition(session, RevealState.COMPLETE)
        self._emit(session)

    def close(self) -> None:
        """Drop the active session and its timer without emitting anything further."""
        self._cancel_task()
        if self._session is not None:
            self._settled.add(self._session.key)
        self._session = None

    def _cancel_task(self) -> None:
        task = self._task
        self._task = None
        if task is None or task.done():
            return
        try:
            current = asyncio.current_task()
        except RuntimeError:
            current = None
        if task is not current:
            task.cancel()

    def state_of(self, message: Message) -> RevealState:
        session = self._session
        if session is not None and session.key == message.client_id:
            return session.state
        return RevealState.COMPLETE

    def display_text(self, message: Message) -> str:
        session = self._session
        if session is not None and session.key == message.client_id:
            return session.displayed
        return message.content
