"""Exactly-once creation of entities requested by assistant directives.

Every observation of an assistant message carrying a directive (live reply,
poll re-fetch, reload) funnels through ``ActionDispatcher.dispatch``. The
idempotency ledger decides whether creation already happened; the backend
lookup covers a cleared or absent ledger. At most one creation call is issued
per conversation and directive fingerprint.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Callable, List, Optional, Sequence, Set, Union

from ..core.state_machine import DispatchPhase, advance_dispatch
from ..domain.chat_models import EntityRef, Message, TenantScope
from ..domain.directives import CreateProjectDirective, CreateTaskDirective, fingerprint
from ..domain.errors import AssistantError, MalformedDirectiveError
from ..infrastructure.backend_client import AssistantBackend
from ..infrastructure.ledger import IdempotencyLedger, LedgerKey, LedgerStatus
from ..observability.metrics import record_dispatch
from .conversation_store import stamp_message
from .directive_parser import coerce_directive, parse, summarize
from .notifications import Notifier


logger = logging.getLogger("assistant.dispatch")

AnyDirective = Union[CreateProjectDirective, CreateTaskDirective]
StampCallback = Callable[[Message, EntityRef], None]

CREATED = "created"
REUSED_LEDGER = "reused_ledger"
REUSED_EXISTING = "reused_existing"
IN_FLIGHT = "in_flight"
FAILED = "failed"
NO_DIRECTIVE = "no_directive"


@dataclass
class DispatchOutcome:
    outcome: str
    kind: Optional[str] = None
    entity: Optional[EntityRef] = None
    error: Optional[str] = None
    phases: List[DispatchPhase] = field(default_factory=list)

    @property
    def phase(self) -> Optional[DispatchPhase]:
        return self.phases[-1] if self.phases else None


class _Run:
    """Phase trail of one dispatch, validated against the transition table."""

    def __init__(self) -> None:
        self.phases: List[DispatchPhase] = [DispatchPhase.OBSERVED]

    def to(self, target: DispatchPhase) -> None:
        self.phases.append(advance_dispatch(self.phases[-1], target))


def directive_of(message: Message) -> Optional[AnyDirective]:
    """Directive carried by a message: its structured action, else its text."""
    if message.action:
        try:
            return coerce_directive(message.action)
        except MalformedDirectiveError:
            logger.debug("message_action_rejected", extra={"message_key": message.key})
    return parse(message.content)


class ActionDispatcher:
    def __init__(
        self,
        ledger: IdempotencyLedger,
        backend: AssistantBackend,
        scope: TenantScope,
        notifier: Optional[Notifier] = None,
        on_stamp: Optional[StampCallback] = None,
    ) -> None:
        self._ledger = ledger
        self._backend = backend
        self._scope = scope
        self._notify = notifier or Notifier()
        self._on_stamp = on_stamp
        self._in_flight: Set[str] = set()
        self._failed_messages: Set[str] = set()

    def is_in_flight(self, kind: str) -> bool:
        return kind in self._in_flight

    def _stamp(self, message: Message, entity: EntityRef) -> None:
        stamp_message(message, entity)
        if self._on_stamp is not None:
            self._on_stamp(message, entity)

    def _finish(self, run: _Run, outcome: str, kind: str, **kwargs) -> DispatchOutcome:
        run.to(DispatchPhase.SETTLED)
        record_dispatch(kind, outcome)
        return DispatchOutcome(outcome=outcome, kind=kind, phases=run.phases, **kwargs)

    async def dispatch(
        self, directive: AnyDirective, conversation_id: str, message: Message
    ) -> DispatchOutcome:
        kind = directive.action
        run = _Run()
        if kind in self._in_flight:
            logger.debug("dispatch_in_flight", extra={"kind": kind, "conversation_id": conversation_id})
            run.to(DispatchPhase.SKIPPED)
            return self._finish(run, IN_FLIGHT, kind)

        self._in_flight.add(kind)
        try:
            return await self._dispatch(run, directive, conversation_id, message)
        finally:
            self._in_flight.discard(kind)

    async def _dispatch(
        self, run: _Run, directive: AnyDirective, conversation_id: str, message: Message
    ) -> DispatchOutcome:
        kind = directive.action
        key = LedgerKey(conversation_id=conversation_id, action_kind=kind, fingerprint=fingerprint(directive))

        run.to(DispatchPhase.LEDGER_CHECK)
        claimed, entry = self._ledger.claim(key)
        if not claimed:
            if entry.status == LedgerStatus.COMPLETED and entry.result_entity_id:
                entity = EntityRef(
                    entity_id=entry.result_entity_id,
                    kind=directive.entity_kind,
                    project_id=entry.result_project_id,
                )
                run.to(DispatchPhase.STAMPED)
                self._stamp(message, entity)
                logger.info("dispatch_reused_ledger", extra={"kind": kind, "entity_id": entity.entity_id})
                return self._finish(run, REUSED_LEDGER, kind, entity=entity)
            # pending elsewhere; the id is stamped when that creation settles
            run.to(DispatchPhase.SKIPPED)
            return self._finish(run, REUSED_LEDGER, kind)

        run.to(DispatchPhase.EXISTENCE_CHECK)
        existing = await self._find_existing(directive)
        if existing is not None:
            self._ledger.complete(key, existing, source="existing")
            run.to(DispatchPhase.STAMPED)
            self._stamp(message, existing)
            logger.info("dispatch_reused_existing", extra={"kind": kind, "entity_id": existing.entity_id})
            return self._finish(run, REUSED_EXISTING, kind, entity=existing)

        run.to(DispatchPhase.CREATING)
        try:
            entity = await self._create(directive)
        except AssistantError as exc:
            return self._fail(run, key, kind, conversation_id, str(exc))
        except Exception as exc:
            logger.exception("dispatch_unexpected_error", extra={"kind": kind})
            return self._fail(run, key, kind, conversation_id, str(exc) or exc.__class__.__name__)

        self._ledger.complete(key, entity, source="created")
        run.to(DispatchPhase.STAMPED)
        self._stamp(message, entity)
        logger.info(
            "dispatch_created",
            extra={"kind": kind, "entity_id": entity.entity_id, "conversation_id": conversation_id},
        )
        self._notify.success(summarize(directive), conversation_id=conversation_id)
        return self._finish(run, CREATED, kind, entity=entity)

    def _fail(self, run: _Run, key: LedgerKey, kind: str, conversation_id: str, error: str) -> DispatchOutcome:
        self._ledger.fail(key, error)
        self._ledger.release(key)
        logger.warning("dispatch_failed", extra={"kind": kind, "error": error})
        noun = "project" if kind == "create_project" else "task"
        self._notify.error(f"Failed to create {noun}: {error}", conversation_id=conversation_id)
        return self._finish(run, FAILED, kind, error=error)

    async def _find_existing(self, directive: AnyDirective) -> Optional[EntityRef]:
        try:
            if isinstance(directive, CreateProjectDirective):
                return await self._backend.find_existing_project(self._scope, directive.project_name)
            project_id = None
            if directive.project_name:
                project = await self._backend.find_existing_project(self._scope, directive.project_name)
                if project is None:
                    return None
                project_id = project.entity_id
            return await self._backend.find_existing_task(self._scope, directive.title, project_id)
        except AssistantError as exc:
            logger.warning("existence_check_failed", extra={"kind": directive.action, "error": str(exc)})
            return None
        except Exception:
            # the claim is already held; a broken lookup must not strand it as pending
            logger.exception("existence_check_unexpected_error", extra={"kind": directive.action})
            return None

    async def _create(self, directive: AnyDirective) -> EntityRef:
        if isinstance(directive, CreateProjectDirective):
            return await self._backend.create_project_from_directive(directive, self._scope)
        return await self._backend.create_task_from_directive(directive, self._scope)

    async def observe(self, conversation_id: str, messages: Sequence[Message]) -> DispatchOutcome:
        """Dispatch the directive of the newest message, if it is an unstamped assistant reply."""
        newest = messages[-1] if messages else None
        if newest is None or newest.role != "assistant" or newest.is_stamped:
            return DispatchOutcome(outcome=NO_DIRECTIVE)
        # a failed message is retried only through a new reply, never by re-observation
        if newest.client_id in self._failed_messages:
            return DispatchOutcome(outcome=FAILED, kind=None)
        directive = directive_of(newest)
        if directive is None:
            return DispatchOutcome(outcome=NO_DIRECTIVE)
        outcome = await self.dispatch(directive, conversation_id, newest)
        if outcome.outcome == FAILED:
            self._failed_messages.add(newest.client_id)
        return outcome

    def restore(self, conversation_id: str, messages: Sequence[Message]) -> int:
        """Stamp history messages whose directive the ledger records as completed."""
        restored = 0
        for message in messages:
            if message.role != "assistant" or message.is_stamped:
                continue
            directive = directive_of(message)
            if directive is None:
                continue
            key = LedgerKey(
                conversation_id=conversation_id,
                action_kind=directive.action,
                fingerprint=fingerprint(directive),
            )
            entry = self._ledger.get(key)
            if entry is None or entry.status != LedgerStatus.COMPLETED or not entry.result_entity_id:
                continue
            self._stamp(
                message,
                EntityRef(
                    entity_id=entry.result_entity_id,
                    kind=directive.entity_kind,
                    project_id=entry.result_project_id,
                ),
            )
            restored += 1
        return restored
