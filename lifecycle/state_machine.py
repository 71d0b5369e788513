"""
Instance State Machine — table-driven lifecycle for conversation instances.

Every state change an instance ever undergoes goes through
InstanceStateMachine.transition(). The table below is the single source of
truth for which events are legal in which state.

Flow:
  transition(instance_id, event)
    → load instance (InstanceNotFoundError if absent)
    → reject if terminal or event not legal (InvalidTransitionError lists legal events)
    → resolve target (fixed, or restore previous_state when resuming from PAUSED)
    → persist, emit StateTransition to every audit sink
    → run terminal hooks if the new state is terminal (failures isolated)

Usage:
    sm = InstanceStateMachine(instance_store, audit_sinks=[LoggingAuditSink()])
    sm.on_terminal_state(heartbeat.cancel)

    result = await sm.transition(instance.id, StateEvent.PAUSE)
    if not result:
        print(result.error)       # "Invalid transition: 'pause' from state COMPLETED ..."
"""
from __future__ import annotations

import structlog
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Optional

from lifecycle.audit import AuditSink
from lifecycle.errors import (
    HookFailure, InstanceNotFoundError, InvalidTransitionError, LifecycleError,
)
from models.schemas import ConversationInstance, InstanceState, StateEvent, StateTransition

if TYPE_CHECKING:
    from database.store_base import BaseInstanceStore

logger = structlog.get_logger()

TerminalHook = Callable[[str], Awaitable[Any]]


# ──────────────────────────────────────────────────────────────
#  Transition Table
# ──────────────────────────────────────────────────────────────

class TransitionTarget:
    """Either a fixed destination state or the restore-previous marker."""

    __slots__ = ("state", "restores_previous")

    def __init__(self, state: Optional[InstanceState] = None, restores_previous: bool = False):
        self.state = state
        self.restores_previous = restores_previous

    @classmethod
    def to(cls, state: InstanceState) -> "TransitionTarget":
        return cls(state=state)

    @classmethod
    def restore_previous(cls) -> "TransitionTarget":
        return cls(restores_previous=True)

    def resolve(self, instance: ConversationInstance) -> Optional[InstanceState]:
        if self.restores_previous:
            return instance.previous_state
        return self.state

    def __repr__(self):
        return "<restore previous_state>" if self.restores_previous else f"<{self.state.value}>"


S = InstanceState
E = StateEvent
_to = TransitionTarget.to

TRANSITION_TABLE: dict[InstanceState, dict[StateEvent, TransitionTarget]] = {
    S.CREATED: {
        E.AGENT_SENDS_FIRST_MESSAGE: _to(S.ACTIVE),
        E.CONTACT_HAS_ACTIVE_INSTANCE: _to(S.QUEUED),
        E.PAUSE: _to(S.PAUSED),
        E.CANCEL: _to(S.FAILED),
    },
    S.QUEUED: {
        E.PRIOR_INSTANCE_TERMINAL: _to(S.CREATED),
        E.PAUSE: _to(S.PAUSED),
        E.CANCEL: _to(S.FAILED),
    },
    S.ACTIVE: {
        E.MESSAGE_SENT: _to(S.WAITING_FOR_REPLY),
        E.CONTACT_REPLIES: _to(S.WAITING_FOR_AGENT),
        E.END_CONVERSATION: _to(S.COMPLETED),
        E.REQUEST_INTERVENTION: _to(S.NEEDS_HUMAN_INTERVENTION),
        E.UNRECOVERABLE_ERROR: _to(S.FAILED),
        E.PAUSE: _to(S.PAUSED),
        E.CANCEL: _to(S.FAILED),
    },
    S.WAITING_FOR_REPLY: {
        E.CONTACT_REPLIES: _to(S.WAITING_FOR_AGENT),
        E.HEARTBEAT_FIRES: _to(S.HEARTBEAT_SCHEDULED),
        E.END_CONVERSATION: _to(S.COMPLETED),
        E.PAUSE: _to(S.PAUSED),
        E.CANCEL: _to(S.FAILED),
    },
    S.WAITING_FOR_AGENT: {
        E.MESSAGE_SENT: _to(S.WAITING_FOR_REPLY),
        E.AGENT_PROCESSES_REPLY: _to(S.ACTIVE),
        E.END_CONVERSATION: _to(S.COMPLETED),
        E.PAUSE: _to(S.PAUSED),
        E.CANCEL: _to(S.FAILED),
    },
    S.HEARTBEAT_SCHEDULED: {
        E.FOLLOWUP_SENT: _to(S.WAITING_FOR_REPLY),
        E.MAX_FOLLOWUPS_EXCEEDED: _to(S.ABANDONED),
        E.PAUSE: _to(S.PAUSED),
        E.CANCEL: _to(S.FAILED),
    },
    S.PAUSED: {
        E.RESUME: TransitionTarget.restore_previous(),
        E.CANCEL: _to(S.FAILED),
    },
    S.NEEDS_HUMAN_INTERVENTION: {
        E.RESUME: _to(S.ACTIVE),
        E.MANUAL_SEND: _to(S.ACTIVE),
        E.PAUSE: _to(S.PAUSED),
        E.CANCEL: _to(S.FAILED),
    },
    S.COMPLETED: {},
    S.ABANDONED: {},
    S.FAILED: {},
}

del S, E, _to


def valid_events(state: InstanceState) -> list[StateEvent]:
    """Events legal from `state`, in table order."""
    return list(TRANSITION_TABLE.get(state, {}).keys())


def can_transition(state: InstanceState, event: StateEvent) -> bool:
    return event in TRANSITION_TABLE.get(state, {})


# ──────────────────────────────────────────────────────────────
#  Transition Result
# ──────────────────────────────────────────────────────────────

class TransitionResult:
    """Outcome of applying an event to an instance."""

    def __init__(
        self,
        transitioned: bool,
        instance: Optional[ConversationInstance] = None,
        from_state: Optional[InstanceState] = None,
        to_state: Optional[InstanceState] = None,
        record: Optional[StateTransition] = None,
        error: Optional[LifecycleError] = None,
        hook_failures: list[HookFailure] = None,
    ):
        self.transitioned = transitioned
        self.instance = instance
        self.from_state = from_state
        self.to_state = to_state
        self.record = record
        self.error = error
        self.hook_failures = hook_failures or []

    @property
    def not_found(self) -> bool:
        return isinstance(self.error, InstanceNotFoundError)

    def __bool__(self):
        return self.transitioned

    def __repr__(self):
        if self.transitioned:
            return f"<Transition {self.from_state.value} → {self.to_state.value}>"
        return f"<NoTransition {self.error}>"


# ──────────────────────────────────────────────────────────────
#  Instance State Machine
# ──────────────────────────────────────────────────────────────

class InstanceStateMachine:
    """
    Applies lifecycle events to persisted instances.

    Owns the terminal-hook registry and the list of audit sinks. Holds no
    per-instance state of its own; every call reloads from the store.
    """

    def __init__(self, store: "BaseInstanceStore", audit_sinks: list[AuditSink] = None):
        self.store = store
        self.audit_sinks: list[AuditSink] = list(audit_sinks or [])
        self._terminal_hooks: list[TerminalHook] = []

    # ── Registration ──────────────────────────────────────────

    def on_terminal_state(self, hook: TerminalHook) -> None:
        """Register an async hook called with the instance id on entry to a terminal state."""
        self._terminal_hooks.append(hook)

    def add_audit_sink(self, sink: AuditSink) -> None:
        self.audit_sinks.append(sink)

    # ── Transition ────────────────────────────────────────────

    async def transition(
        self,
        instance_id: str,
        event: StateEvent,
        failure_reason: Optional[str] = None,
    ) -> TransitionResult:
        """
        Apply `event` to the instance.

        Args:
            instance_id:    Target instance
            event:          Lifecycle event from the transition table
            failure_reason: Recorded on the instance when given (cancel always
                            records "cancelled")

        Returns:
            TransitionResult — truthy on success; on failure `error` holds an
            InstanceNotFoundError or InvalidTransitionError and nothing was persisted.
        """
        event = StateEvent(event)
        instance = await self.store.get_by_id(instance_id)
        if instance is None:
            return TransitionResult(False, error=InstanceNotFoundError(instance_id))

        current = instance.state
        if current.is_terminal:
            return self._reject(instance, event)

        target = TRANSITION_TABLE[current].get(event)
        if target is None:
            return self._reject(instance, event)

        to_state = target.resolve(instance)
        if to_state is None:
            error = InvalidTransitionError(
                instance_id, current.value, event.value,
                valid_events=[e.value for e in valid_events(current)],
                reason="no previous_state recorded to restore",
            )
            logger.warning("transition_rejected", instance_id=instance_id, error=str(error))
            return TransitionResult(False, instance=instance, from_state=current, error=error)

        fields: dict[str, Any] = {"state": to_state}
        if event == StateEvent.PAUSE:
            fields["previous_state"] = current
        elif event == StateEvent.RESUME:
            fields["previous_state"] = None
        if event == StateEvent.CANCEL:
            fields["failure_reason"] = "cancelled"
        elif failure_reason:
            fields["failure_reason"] = failure_reason

        updated = await self.store.update(instance_id, **fields)

        record = StateTransition(
            instance_id=instance_id,
            from_state=current,
            to_state=to_state,
            trigger=event,
        )
        await self._emit(record)

        hook_failures: list[HookFailure] = []
        if to_state.is_terminal:
            hook_failures = await self._run_terminal_hooks(instance_id)

        return TransitionResult(
            True,
            instance=updated,
            from_state=current,
            to_state=to_state,
            record=record,
            hook_failures=hook_failures,
        )

    def _reject(self, instance: ConversationInstance, event: StateEvent) -> TransitionResult:
        legal = [e.value for e in valid_events(instance.state)]
        error = InvalidTransitionError(instance.id, instance.state.value, event.value, legal)
        logger.debug("transition_rejected",
                     instance_id=instance.id,
                     state=instance.state.value,
                     trigger=event.value,
                     valid_events=legal)
        return TransitionResult(False, instance=instance, from_state=instance.state, error=error)

    # ── Side effects ──────────────────────────────────────────

    async def _emit(self, record: StateTransition) -> None:
        for sink in self.audit_sinks:
            try:
                await sink.record(record)
            except Exception as e:
                logger.error("audit_sink_failed",
                             sink=type(sink).__name__,
                             instance_id=record.instance_id,
                             error=str(e))

    async def _run_terminal_hooks(self, instance_id: str) -> list[HookFailure]:
        failures = []
        for hook in self._terminal_hooks:
            name = getattr(hook, "__qualname__", repr(hook))
            try:
                await hook(instance_id)
            except Exception as e:
                failure = HookFailure(instance_id, name, e)
                failures.append(failure)
                logger.error("terminal_hook_failed",
                             instance_id=instance_id,
                             hook=name,
                             error=str(e))
        return failures

    # ── Introspection ─────────────────────────────────────────

    async def get_state_info(self, instance_id: str) -> Optional[dict[str, Any]]:
        instance = await self.store.get_by_id(instance_id)
        if instance is None:
            return None
        return {
            "instance_id": instance.id,
            "state": instance.state.value,
            "previous_state": instance.previous_state.value if instance.previous_state else None,
            "is_terminal": instance.is_terminal,
            "valid_events": [e.value for e in valid_events(instance.state)],
        }
