"""Session orchestration for the conversation currently in view.

Owns the local message list, the presenter, the dispatcher and the two
per-conversation timers (reveal ticker and background poll). Every task is
tagged with the generation of the view that started it; switching or closing
bumps the generation and cancels the timers, so a late result from an old
view is dropped instead of mutating the new one.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Callable, List, Optional, Set

from ..config import Settings
from ..domain.chat_models import Conversation, ConversationCreate, EntityRef, Message, TenantScope
from ..domain.errors import AssistantError, ConversationNotFound, QuotaOrCapacityError
from ..infrastructure.backend_client import AssistantBackend
from ..infrastructure.ledger import IdempotencyLedger
from ..infrastructure.preferences import ActiveConversationStore
from ..observability.metrics import record_poll, time_send
from .action_dispatcher import ActionDispatcher, DispatchOutcome
from .conversation_store import ConversationState, DedupWindows
from .notifications import Notifier
from .stream_presenter import FrameCallback, StreamPresenter


logger = logging.getLogger("assistant.sync")

ChangeCallback = Callable[[List[Message]], None]

TITLE_LIMIT = 50


def quota_notice(model: Optional[str]) -> str:
    return f"Tokens expired for {model or 'the selected model'}. Please try a different model."


class ConversationController:
    def __init__(
        self,
        backend: AssistantBackend,
        scope: TenantScope,
        ledger: IdempotencyLedger,
        settings: Optional[Settings] = None,
        notifier: Optional[Notifier] = None,
        preferences: Optional[ActiveConversationStore] = None,
        on_change: Optional[ChangeCallback] = None,
        on_frame: Optional[FrameCallback] = None,
        model_id: Optional[str] = None,
    ) -> None:
        self.settings = settings or Settings()
        self.backend = backend
        self.scope = scope
        self.ledger = ledger
        self.notifier = notifier or Notifier()
        self.preferences = preferences or ActiveConversationStore()
        self.model_id = model_id
        self._on_change = on_change

        self.state = ConversationState(
            windows=DedupWindows(
                user_seconds=self.settings.dedup_user_seconds,
                assistant_seconds=self.settings.dedup_assistant_seconds,
            ),
            optimistic_window_seconds=self.settings.optimistic_dedup_seconds,
        )
        self.presenter = StreamPresenter(
            interval=self.settings.reveal_interval_seconds,
            recency_window=self.settings.reveal_recency_seconds,
            on_frame=on_frame,
        )
        self.dispatcher = ActionDispatcher(
            ledger, backend, scope, notifier=self.notifier, on_stamp=self._on_stamp
        )

        self._generation = 0
        self._poll_task: Optional[asyncio.Task] = None
        self._send_task: Optional[asyncio.Task] = None
        self._dispatch_tasks: Set[asyncio.Task] = set()

    # -- view ---------------------------------------------------------------

    @property
    def active_id(self) -> Optional[str]:
        return self.state.conversation_id

    @property
    def messages(self) -> List[Message]:
        return self.state.messages

    @property
    def is_sending(self) -> bool:
        return self._send_task is not None and not self._send_task.done()

    @property
    def is_polling(self) -> bool:
        return self._poll_task is not None and not self._poll_task.done()

    def _changed(self) -> None:
        if self._on_change is None:
            return
        try:
            self._on_change(self.state.messages)
        except Exception:
            logger.exception("change_callback_failed", extra={"conversation_id": self.active_id})

    def _on_stamp(self, message: Message, entity: EntityRef) -> None:
        if self.state.stamp(message, entity) is not None:
            self._changed()

    def _cancel_timers(self) -> None:
        self._generation += 1
        self.presenter.close()
        for task in (self._poll_task, self._send_task):
            if task is not None and not task.done():
                task.cancel()
        self._poll_task = None
        self._send_task = None

    # -- conversations ------------------------------------------------------

    async def list_conversations(self) -> List[Conversation]:
        return await self.backend.list_conversations()

    async def create_conversation(self, title: Optional[str] = None, poll: bool = True) -> Conversation:
        conversation = await self.backend.create_conversation(ConversationCreate(title=title))
        logger.info("conversation_created", extra={"conversation_id": conversation.conversation_id})
        await self.open(conversation.conversation_id, poll=poll, snapshot=conversation)
        return conversation

    async def open(
        self,
        conversation_id: str,
        poll: bool = True,
        snapshot: Optional[Conversation] = None,
    ) -> Optional[Conversation]:
        """Switch the view to ``conversation_id``; old timers are cancelled first."""
        self._cancel_timers()
        self.state.reset(conversation_id)
        generation = self._generation

        conversation = snapshot or await self.backend.get_conversation(conversation_id)
        if generation != self._generation:
            # superseded by a later switch while loading
            return conversation
        if conversation is None:
            self.preferences.clear(self.scope.user_id, conversation_id)
            self.state.reset(None)
            self._changed()
            raise ConversationNotFound(conversation_id)

        self.state.reset(conversation_id, conversation.messages)
        history = self.state.messages
        self.dispatcher.restore(conversation_id, history)
        self.presenter.mark_history(history)
        self.preferences.set(self.scope.user_id, conversation_id)
        self._changed()
        if poll:
            self.start_polling()
        return conversation

    async def resume(self, poll: bool = True) -> Optional[Conversation]:
        """Reopen the conversation the user last had active, if it still exists."""
        remembered = self.preferences.get(self.scope.user_id)
        if not remembered:
            return None
        try:
            return await self.open(remembered, poll=poll)
        except ConversationNotFound:
            logger.info("remembered_conversation_missing", extra={"conversation_id": remembered})
            return None

    def close(self) -> None:
        self._cancel_timers()
        self.state.reset(None)
        self._changed()

    async def delete_conversation(self, conversation_id: str) -> None:
        await self.backend.delete_conversation(conversation_id)
        purged = self.ledger.purge_conversation(conversation_id)
        self.preferences.clear(self.scope.user_id, conversation_id)
        logger.info("conversation_deleted", extra={"conversation_id": conversation_id, "ledger_entries": purged})
        if self.active_id == conversation_id:
            self.close()

    # -- polling ------------------------------------------------------------

    def start_polling(self) -> None:
        if self.active_id is None:
            return
        if self._poll_task is not None and not self._poll_task.done():
            self._poll_task.cancel()
        self._poll_task = asyncio.get_running_loop().create_task(
            self._poll_loop(self.active_id, self._generation)
        )

    def stop_polling(self) -> None:
        if self._poll_task is not None and not self._poll_task.done():
            self._poll_task.cancel()
        self._poll_task = None

    async def _poll_loop(self, conversation_id: str, generation: int) -> None:
        while generation == self._generation:
            await asyncio.sleep(self.settings.poll_interval_seconds)
            if generation != self._generation:
                return
            try:
                await self.refresh(conversation_id, generation)
            except Exception:
                record_poll("error")
                logger.exception("poll_iteration_failed", extra={"conversation_id": conversation_id})

    async def refresh(self, conversation_id: Optional[str] = None, generation: Optional[int] = None) -> bool:
        """Fetch the canonical copy and merge it; returns whether a merge happened."""
        conversation_id = conversation_id or self.active_id
        generation = self._generation if generation is None else generation
        if conversation_id is None or conversation_id != self.active_id:
            return False
        if self.is_sending:
            record_poll("skipped")
            return False
        try:
            conversation = await self.backend.get_conversation(conversation_id)
        except AssistantError as exc:
            record_poll("error")
            logger.warning("poll_failed", extra={"conversation_id": conversation_id, "error": str(exc)})
            return False
        if generation != self._generation or conversation_id != self.active_id:
            record_poll("stale")
            return False
        if conversation is None:
            record_poll("missing")
            return False

        self.state.apply_snapshot(conversation.messages)
        record_poll("merged")
        self._after_change(just_streamed=False)
        return True

    # -- sending ------------------------------------------------------------

    def _after_change(self, just_streamed: bool) -> None:
        messages = self.state.messages
        self.presenter.observe(messages, just_streamed=just_streamed)
        self._changed()
        if self.active_id is not None:
            self._schedule_dispatch(self.active_id, messages)

    def _schedule_dispatch(self, conversation_id: str, messages: List[Message]) -> None:
        task = asyncio.get_running_loop().create_task(self.dispatcher.observe(conversation_id, messages))
        self._dispatch_tasks.add(task)
        task.add_done_callback(self._dispatch_done)

    def _dispatch_done(self, task: asyncio.Task) -> None:
        self._dispatch_tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("dispatch_task_failed", exc_info=exc)

    async def wait_for_dispatches(self) -> List[DispatchOutcome]:
        """Wait until every scheduled dispatch has settled."""
        outcomes: List[DispatchOutcome] = []
        while self._dispatch_tasks:
            pending = list(self._dispatch_tasks)
            results = await asyncio.gather(*pending, return_exceptions=True)
            outcomes.extend(r for r in results if isinstance(r, DispatchOutcome))
            self._dispatch_tasks.difference_update(pending)
        return outcomes

    async def send(self, content: str, model_id: Optional[str] = None) -> Optional[Message]:
        """Send a user message; returns the assistant reply, or None if nothing was added.

        The user message appears at once as a pending entry. A failed send
        removes it and notifies; an aborted send (``stop()``) keeps it and
        stays silent.
        """
        text = (content or "").strip()
        if not text or self.is_sending:
            return None
        if self.active_id is None:
            try:
                await self.create_conversation(title=text[:TITLE_LIMIT])
            except AssistantError as exc:
                logger.warning("conversation_create_failed", extra={"error": str(exc)})
                self.notifier.error(f"Failed to start conversation: {exc}")
                return None
        conversation_id = self.active_id
        generation = self._generation

        optimistic = self.state.append_optimistic(text)
        if optimistic is None:
            logger.debug("duplicate_send_ignored", extra={"conversation_id": conversation_id})
            return None
        self._changed()

        task = asyncio.get_running_loop().create_task(
            self._exchange(conversation_id, generation, optimistic, model_id or self.model_id)
        )
        self._send_task = task
        try:
            await asyncio.wait({task})
        except asyncio.CancelledError:
            task.cancel()
            raise
        finally:
            if self._send_task is task:
                self._send_task = None

        if task.cancelled():
            logger.info("send_aborted", extra={"conversation_id": conversation_id})
            return None
        return task.result()

    async def _exchange(
        self,
        conversation_id: str,
        generation: int,
        optimistic: Message,
        model_id: Optional[str],
    ) -> Optional[Message]:
        with time_send() as timing:
            try:
                reply = await self.backend.send_chat_message(conversation_id, optimistic.content, model_id)
            except asyncio.CancelledError:
                timing["outcome"] = "aborted"
                raise
            except QuotaOrCapacityError as exc:
                timing["outcome"] = "quota"
                self._rollback(generation, optimistic)
                logger.warning("send_quota_exhausted", extra={"model": exc.model, "code": exc.code})
                self.notifier.error(quota_notice(exc.model or model_id), conversation_id=conversation_id)
                return None
            except AssistantError as exc:
                timing["outcome"] = "error"
                self._rollback(generation, optimistic)
                logger.warning("send_failed", extra={"conversation_id": conversation_id, "error": str(exc)})
                self.notifier.error(f"Failed to send message: {exc}", conversation_id=conversation_id)
                return None

        if generation != self._generation:
            logger.info("reply_for_inactive_view_dropped", extra={"conversation_id": conversation_id})
            return None
        message = self.state.add_reply(reply.reply_text, action=reply.directive)
        self._after_change(just_streamed=True)
        return message

    def _rollback(self, generation: int, optimistic: Message) -> None:
        if generation != self._generation:
            return
        if self.state.remove_optimistic(optimistic.client_id):
            self.presenter.observe(self.state.messages)
            self._changed()

    def stop(self) -> bool:
        """Abort the in-flight send and show any revealing text in full."""
        self.presenter.finish()
        if not self.is_sending:
            return False
        self._send_task.cancel()
        return True

    async def aclose(self) -> None:
        self.close()
        for task in list(self._dispatch_tasks):
            if not task.done():
                await asyncio.wait({task})
