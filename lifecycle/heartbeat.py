"""
Heartbeat Scheduler — re-engages contacts who have gone silent.

Owns the instance_id → timer registry. At most one live timer exists per
instance: schedule() always cancels the previous one first, and a firing
timer removes its own entry before any fire logic runs.

Flow (on fire):
  reload instance → ignore unless WAITING_FOR_REPLY / HEARTBEAT_SCHEDULED
    → follow_up_count >= max_followups ? drive to ABANDONED
    → heartbeat_fires → one follow-up turn → followup_sent
    → follow_up_count += 1 → re-arm (one-shot override or interval_ms)

Usage:
    scheduler = HeartbeatScheduler(store, state_machine, AsyncioTimerFactory())
    scheduler.bind_turn_runner(turns.run_followup)
    await scheduler.reconstruct()          # on startup
    scheduler.schedule(instance.id, instance.heartbeat_config.interval_ms)
    await scheduler.shutdown()
"""
from __future__ import annotations

import structlog
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Optional

from lifecycle.state_machine import InstanceStateMachine
from lifecycle.timers import TimerFactory, TimerHandle
from models.schemas import HEARTBEAT_STATES, InstanceState, StateEvent

if TYPE_CHECKING:
    from database.store_base import BaseInstanceStore

logger = structlog.get_logger()

FOLLOWUP_PROMPT = (
    "[HEARTBEAT] The contact has not replied since your last message. "
    "Send a short, polite follow-up that moves the objective forward. "
    "Do not repeat your previous message verbatim."
)

FollowupTurn = Callable[[str, str], Awaitable[Any]]


class HeartbeatScheduler:

    def __init__(
        self,
        store: "BaseInstanceStore",
        state_machine: InstanceStateMachine,
        timer_factory: TimerFactory,
        followup_turn: Optional[FollowupTurn] = None,
    ):
        self.store = store
        self.state_machine = state_machine
        self.timer_factory = timer_factory
        self._followup_turn = followup_turn
        self._timers: dict[str, tuple[object, TimerHandle]] = {}
        self._overrides: dict[str, int] = {}
        self._closed = False

    def bind_turn_runner(self, followup_turn: FollowupTurn) -> None:
        """Set the callable that runs one follow-up turn: (instance_id, prompt)."""
        self._followup_turn = followup_turn

    # ── Timer registry ────────────────────────────────────────

    def schedule(self, instance_id: str, delay_ms: int) -> None:
        """Arm (or re-arm) the instance's heartbeat, replacing any live timer."""
        if self._closed:
            logger.debug("heartbeat_schedule_after_shutdown", instance_id=instance_id)
            return
        self.cancel(instance_id)
        token = object()

        async def _fire():
            await self._on_timer(instance_id, token)

        handle = self.timer_factory.call_later(delay_ms / 1000.0, _fire)
        self._timers[instance_id] = (token, handle)
        logger.debug("heartbeat_scheduled", instance_id=instance_id, delay_ms=delay_ms)

    def cancel(self, instance_id: str) -> bool:
        entry = self._timers.pop(instance_id, None)
        if entry is None:
            return False
        entry[1].cancel()
        logger.debug("heartbeat_cancelled", instance_id=instance_id)
        return True

    async def cancel_for_terminal(self, instance_id: str) -> None:
        """Terminal hook: drop the timer and any pending override."""
        self.cancel(instance_id)
        self._overrides.pop(instance_id, None)

    def suspend(self, instance_id: str) -> None:
        """Stop the timer without touching the instance (entering PAUSED)."""
        self.cancel(instance_id)

    async def resume(self, instance_id: str) -> bool:
        """Re-arm with the full configured interval. Remaining time is not restored."""
        instance = await self.store.get_by_id(instance_id)
        if instance is None or instance.state not in HEARTBEAT_STATES:
            return False
        self.schedule(instance_id, instance.heartbeat_config.interval_ms)
        return True

    async def reconstruct(self) -> int:
        """Arm a fresh full-interval timer for every instance waiting on the contact."""
        armed = 0
        for instance in await self.store.get_all():
            if instance.state in HEARTBEAT_STATES:
                self.schedule(instance.id, instance.heartbeat_config.interval_ms)
                armed += 1
        logger.info("heartbeats_reconstructed", count=armed)
        return armed

    def has_timer(self, instance_id: str) -> bool:
        return instance_id in self._timers

    @property
    def active_count(self) -> int:
        return len(self._timers)

    # ── One-shot override ─────────────────────────────────────

    def set_override(self, instance_id: str, delay_ms: int) -> None:
        self._overrides[instance_id] = delay_ms
        logger.info("heartbeat_override_set", instance_id=instance_id, delay_ms=delay_ms)

    def consume_override(self, instance_id: str) -> Optional[int]:
        return self._overrides.pop(instance_id, None)

    def next_delay_ms(self, instance_id: str, interval_ms: int) -> int:
        override = self.consume_override(instance_id)
        return override if override is not None else interval_ms

    # ── Fire ──────────────────────────────────────────────────

    async def _on_timer(self, instance_id: str, token: object) -> None:
        entry = self._timers.get(instance_id)
        if entry is None or entry[0] is not token:
            logger.debug("heartbeat_stale_fire_ignored", instance_id=instance_id)
            return
        del self._timers[instance_id]
        try:
            await self.fire(instance_id)
        except Exception as e:
            logger.error("heartbeat_fire_failed", instance_id=instance_id, error=str(e))

    async def fire(self, instance_id: str) -> Optional[str]:
        """
        Run the heartbeat logic for one instance.

        Returns a short outcome label ("ignored", "abandoned", "followup"),
        or None when the instance no longer exists.
        """
        instance = await self.store.get_by_id(instance_id)
        if instance is None:
            return None
        if instance.state not in HEARTBEAT_STATES:
            logger.debug("heartbeat_fire_ignored", instance_id=instance_id, state=instance.state.value)
            return "ignored"

        cfg = instance.heartbeat_config
        if instance.follow_up_count >= cfg.max_followups:
            await self._abandon(instance_id, instance.state)
            return "abandoned"

        if instance.state == InstanceState.WAITING_FOR_REPLY:
            result = await self.state_machine.transition(instance_id, StateEvent.HEARTBEAT_FIRES)
            if not result:
                logger.warning("heartbeat_transition_failed", instance_id=instance_id, error=str(result.error))
                return "ignored"

        logger.info("heartbeat_followup",
                    instance_id=instance_id,
                    follow_up=instance.follow_up_count + 1,
                    max_followups=cfg.max_followups)

        if self._followup_turn is None:
            logger.warning("heartbeat_no_turn_runner", instance_id=instance_id)
        else:
            try:
                await self._followup_turn(instance_id, FOLLOWUP_PROMPT)
            except Exception as e:
                logger.error("heartbeat_followup_turn_failed", instance_id=instance_id, error=str(e))

        sent = await self.state_machine.transition(instance_id, StateEvent.FOLLOWUP_SENT)
        if not sent:
            logger.warning("heartbeat_followup_sent_rejected",
                           instance_id=instance_id, error=str(sent.error))

        current = await self.store.get_by_id(instance_id)
        if current is None:
            return None
        current = await self.store.update(instance_id, follow_up_count=current.follow_up_count + 1)

        if current.state in HEARTBEAT_STATES:
            self.schedule(instance_id, self.next_delay_ms(instance_id, current.heartbeat_config.interval_ms))
        else:
            logger.info("heartbeat_not_rearmed", instance_id=instance_id, state=current.state.value)
        return "followup"

    async def _abandon(self, instance_id: str, state: InstanceState) -> None:
        result = await self.state_machine.transition(instance_id, StateEvent.MAX_FOLLOWUPS_EXCEEDED)
        if not result and state == InstanceState.WAITING_FOR_REPLY:
            fired = await self.state_machine.transition(instance_id, StateEvent.HEARTBEAT_FIRES)
            if fired:
                result = await self.state_machine.transition(instance_id, StateEvent.MAX_FOLLOWUPS_EXCEEDED)
        if result:
            logger.info("instance_abandoned", instance_id=instance_id)
        else:
            logger.warning("heartbeat_abandon_failed", instance_id=instance_id, error=str(result.error))

    # ── Lifecycle ─────────────────────────────────────────────

    async def shutdown(self) -> None:
        """Cancel every live timer and release in-flight fire tasks."""
        self._closed = True
        for _, handle in self._timers.values():
            handle.cancel()
        count = len(self._timers)
        self._timers.clear()
        self._overrides.clear()
        await self.timer_factory.close()
        logger.info("heartbeat_scheduler_stopped", cancelled=count)
