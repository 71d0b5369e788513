"""
Lifecycle layer — state machine, heartbeat scheduling, per-contact admission.

Quick start:
  from lifecycle import InstanceStateMachine, HeartbeatScheduler, ContactQueue
  sm = InstanceStateMachine(instance_store, audit_sinks=[LoggingAuditSink()])
  result = await sm.transition(instance_id, StateEvent.PAUSE)
"""
from lifecycle.errors import (
    LifecycleError, InstanceNotFoundError, InvalidTransitionError,
    AgentTurnError, TurnFailureKind, QueueInvariantViolation, HookFailure,
)
from lifecycle.audit import AuditSink, LoggingAuditSink, MemoryAuditSink, FileAuditSink
from lifecycle.state_machine import (
    InstanceStateMachine, TransitionResult, TransitionTarget, TRANSITION_TABLE,
    valid_events, can_transition,
)
from lifecycle.timers import TimerFactory, TimerHandle, AsyncioTimerFactory
from lifecycle.heartbeat import HeartbeatScheduler, FOLLOWUP_PROMPT
from lifecycle.contact_queue import ContactQueue

__all__ = [
    # Errors
    "LifecycleError", "InstanceNotFoundError", "InvalidTransitionError",
    "AgentTurnError", "TurnFailureKind", "QueueInvariantViolation", "HookFailure",
    # Audit
    "AuditSink", "LoggingAuditSink", "MemoryAuditSink", "FileAuditSink",
    # State machine
    "InstanceStateMachine", "TransitionResult", "TransitionTarget", "TRANSITION_TABLE",
    "valid_events", "can_transition",
    # Timers & heartbeat
    "TimerFactory", "TimerHandle", "AsyncioTimerFactory",
    "HeartbeatScheduler", "FOLLOWUP_PROMPT",
    # Admission
    "ContactQueue",
]
