"""
Lifecycle errors — the failure vocabulary shared by the state machine,
heartbeat scheduler, contact queue and turn runner.

Lifecycle operations report InstanceNotFoundError / InvalidTransitionError
through TransitionResult.error rather than raising. QueueInvariantViolation
is the one lifecycle error that propagates to callers.
"""
from __future__ import annotations

from enum import Enum
from typing import Iterable, Optional


class LifecycleError(Exception):
    """Base exception for all lifecycle operations."""


class InstanceNotFoundError(LifecycleError):
    def __init__(self, instance_id: str):
        self.instance_id = instance_id
        super().__init__(f"Instance {instance_id} not found")


class InvalidTransitionError(LifecycleError):
    """The event is not legal for the instance's current state."""

    def __init__(self, instance_id: str, state: str, event: str,
                 valid_events: Iterable[str] = (), reason: str = ""):
        self.instance_id = instance_id
        self.state = state
        self.event = event
        self.valid_events = list(valid_events)
        if reason:
            message = f"Cannot apply '{event}' to instance {instance_id} in state {state}: {reason}"
        else:
            legal = ", ".join(self.valid_events) or "none (terminal state)"
            message = (
                f"Invalid transition: '{event}' from state {state} "
                f"(instance {instance_id}). Valid events: {legal}"
            )
        super().__init__(message)


class TurnFailureKind(str, Enum):
    TRANSIENT_TIMEOUT = "transient_timeout"
    RATE_LIMITED = "rate_limited"
    AUTH_FAILURE = "auth_failure"
    OTHER = "other"


class AgentTurnError(LifecycleError):
    """An agent turn failed; `kind` drives the recovery policy."""

    def __init__(self, kind: TurnFailureKind, message: str = "",
                 cause: Optional[BaseException] = None):
        self.kind = kind
        self.cause = cause
        super().__init__(message or f"Agent turn failed ({kind.value})")


class QueueInvariantViolation(LifecycleError):
    """The contact queue could not place a freshly created instance."""


class HookFailure(LifecycleError):
    """A terminal-state hook raised. Logged, never propagated."""

    def __init__(self, instance_id: str, hook_name: str, cause: BaseException):
        self.instance_id = instance_id
        self.hook_name = hook_name
        self.cause = cause
        super().__init__(f"Terminal hook {hook_name} failed for {instance_id}: {cause}")
