"""
Turn Runner — runs one agent turn for an instance and applies the failure policy.

Used for opening turns, reply turns and heartbeat follow-ups. Turns on the
same instance are serialized; the runner never raises.

Failure policy:
  transient timeout   → one retry; a failed retry → request_intervention
  rate limit (429)    → request_intervention
  auth (401 / 403)    → request_intervention
  anything else       → unrecoverable_error (falls back to request_intervention)
"""
from __future__ import annotations

import asyncio
import structlog
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Optional

from lifecycle.errors import AgentTurnError, TurnFailureKind
from lifecycle.state_machine import InstanceStateMachine
from models.schemas import InstanceState, StateEvent

if TYPE_CHECKING:
    from core.engine import AgentRuntime
    from database.store_base import BaseInstanceStore, BaseTranscriptStore

logger = structlog.get_logger()

OPENING_PROMPT = (
    "You are starting a new conversation. Send your first message to the "
    "contact to begin working on the objective."
)


def _status_code(exc: BaseException) -> Optional[int]:
    for source in (exc, getattr(exc, "response", None)):
        if source is None:
            continue
        for attr in ("status_code", "status"):
            value = getattr(source, attr, None)
            if isinstance(value, int):
                return value
    return None


def classify_turn_error(exc: BaseException) -> TurnFailureKind:
    """Map an exception raised by the agent runtime to a failure kind."""
    if isinstance(exc, AgentTurnError):
        return exc.kind
    if isinstance(exc, asyncio.TimeoutError) or "Timeout" in type(exc).__name__:
        return TurnFailureKind.TRANSIENT_TIMEOUT
    status = _status_code(exc)
    if status == 429:
        return TurnFailureKind.RATE_LIMITED
    if status in (401, 403):
        return TurnFailureKind.AUTH_FAILURE
    return TurnFailureKind.OTHER


@dataclass
class TurnOutcome:
    instance_id: str
    ok: bool
    attempts: int = 0
    failure: Optional[TurnFailureKind] = None
    error: str = ""
    recovery_event: Optional[StateEvent] = None
    skipped: bool = False

    def __bool__(self):
        return self.ok


class TurnRunner:

    def __init__(
        self,
        store: "BaseInstanceStore",
        transcripts: "BaseTranscriptStore",
        state_machine: InstanceStateMachine,
        runtime: "AgentRuntime",
        turn_timeout_s: float = 120.0,
    ):
        self.store = store
        self.transcripts = transcripts
        self.state_machine = state_machine
        self.runtime = runtime
        self.turn_timeout_s = turn_timeout_s
        self._locks: dict[str, asyncio.Lock] = {}

    def _lock_for(self, instance_id: str) -> asyncio.Lock:
        lock = self._locks.get(instance_id)
        if lock is None:
            lock = self._locks[instance_id] = asyncio.Lock()
        return lock

    def release(self, instance_id: str) -> None:
        """Forget the instance's lock once it can no longer run turns."""
        lock = self._locks.get(instance_id)
        if lock is not None and not lock.locked():
            del self._locks[instance_id]

    async def run_followup(self, instance_id: str, prompt: str) -> TurnOutcome:
        return await self.run_turn(instance_id, prompt)

    async def run_turn(self, instance_id: str, text: str) -> TurnOutcome:
        async with self._lock_for(instance_id):
            instance = await self.store.get_by_id(instance_id)
            if instance is None or instance.is_terminal:
                logger.debug("turn_skipped", instance_id=instance_id)
                return TurnOutcome(instance_id, ok=False, skipped=True)

            if not self.runtime.has_session(instance_id):
                transcript = await self.transcripts.get_by_instance(instance_id)
                await self.runtime.create_session(instance, transcript)

            outcome = TurnOutcome(instance_id, ok=False)
            while True:
                outcome.attempts += 1
                try:
                    await asyncio.wait_for(self.runtime.submit_turn(instance_id, text), self.turn_timeout_s)
                except Exception as e:
                    kind = classify_turn_error(e)
                    outcome.failure, outcome.error = kind, str(e) or type(e).__name__
                    logger.warning("agent_turn_failed",
                                   instance_id=instance_id,
                                   kind=kind.value,
                                   attempt=outcome.attempts,
                                   error=outcome.error)
                    if kind == TurnFailureKind.TRANSIENT_TIMEOUT and outcome.attempts == 1:
                        continue
                    outcome.recovery_event = await self._recover(instance_id, outcome)
                    return outcome
                break

            outcome.ok, outcome.failure, outcome.error = True, None, ""
            current = await self.store.get_by_id(instance_id)
            if current is not None and current.state == InstanceState.WAITING_FOR_AGENT:
                await self.state_machine.transition(instance_id, StateEvent.AGENT_PROCESSES_REPLY)
            logger.debug("agent_turn_completed", instance_id=instance_id, attempts=outcome.attempts)
            return outcome

    async def _recover(self, instance_id: str, outcome: TurnOutcome) -> Optional[StateEvent]:
        # Failure events are only legal from ACTIVE
        current = await self.store.get_by_id(instance_id)
        if current is not None and current.state == InstanceState.WAITING_FOR_AGENT:
            await self.state_machine.transition(instance_id, StateEvent.AGENT_PROCESSES_REPLY)

        if outcome.failure == TurnFailureKind.OTHER:
            result = await self.state_machine.transition(
                instance_id, StateEvent.UNRECOVERABLE_ERROR, failure_reason=outcome.error,
            )
            if result:
                return StateEvent.UNRECOVERABLE_ERROR

        result = await self.state_machine.transition(instance_id, StateEvent.REQUEST_INTERVENTION)
        if result:
            logger.info("turn_failure_escalated", instance_id=instance_id, kind=outcome.failure.value)
            return StateEvent.REQUEST_INTERVENTION
        logger.warning("turn_failure_unhandled",
                       instance_id=instance_id,
                       kind=outcome.failure.value,
                       error=str(result.error))
        return None

    async def status(self) -> dict[str, Any]:
        return {"locked": sum(1 for lock in self._locks.values() if lock.locked())}
