"""
Coordinator — wires the lifecycle components together and exposes the
operations the daemon surface calls.

Architecture:
  create:    validate → persist CREATED → ContactQueue (CREATED | QUEUED)
             → CREATED: agent_sends_first_message → opening turn → heartbeat armed
             → phone:   agent_sends_first_message → outbound call → call poller
  inbound:   adapter → ChannelRouter → contact_replies → turn → heartbeat re-armed
  heartbeat: HeartbeatScheduler → follow-up turn | ABANDONED
  terminal:  hooks cancel the heartbeat, drop the agent session, stop any call
             poller and admit the next QUEUED instance for the contact

The coordinator owns every long-lived resource (timers, sessions, pollers,
adapters) and releases them in shutdown().
"""
from __future__ import annotations

import asyncio
import os
import time
import structlog
from typing import Any, Optional, Union

from config.settings import Settings
from channels.base import ChannelAdapter, ChannelError, ChannelRegistry, ChannelUnavailableError
from channels.router import ChannelRouter, ContactResolver, DirectContactResolver, normalize_phone
from channels.telegram_adapter import TelegramAdapter
from channels.voice_adapter import CallStatusPoller, VoiceCallAdapter
from channels.whatsapp_adapter import WhatsAppAdapter
from core.engine import AgentRuntime, LLMAgentRuntime
from core.tools import AgentToolbox
from core.turns import OPENING_PROMPT, TurnRunner
from database.store_base import BaseInstanceStore, BaseTranscriptStore
from database.store_factory import create_stores
from lifecycle.audit import AuditSink, FileAuditSink, LoggingAuditSink, MemoryAuditSink
from lifecycle.contact_queue import ContactQueue
from lifecycle.errors import InstanceNotFoundError
from lifecycle.heartbeat import HeartbeatScheduler
from lifecycle.state_machine import InstanceStateMachine, TransitionResult
from lifecycle.timers import AsyncioTimerFactory, TimerFactory
from models.schemas import (
    HEARTBEAT_STATES, ChannelType, ConversationInstance, CreateInstanceRequest,
    HeartbeatConfig, InstanceState, StateEvent, TodoItem, TranscriptMessage, TranscriptRole,
)

logger = structlog.get_logger()

CALL_FAILED_REASON = "ElevenLabs call failed"


class Coordinator:
    """
    Owns the lifecycle services for one daemon process.

    Collaborators may be injected (tests pass in-memory stores, a virtual
    timer factory and a scripted runtime); anything omitted is built from
    settings.
    """

    def __init__(
        self,
        settings: Settings,
        store: BaseInstanceStore,
        transcripts: BaseTranscriptStore,
        channels: Optional[ChannelRegistry] = None,
        runtime: Optional[AgentRuntime] = None,
        timer_factory: Optional[TimerFactory] = None,
        audit_sinks: Optional[list[AuditSink]] = None,
    ):
        self.settings = settings
        self.store = store
        self.transcripts = transcripts
        self.channels = channels or ChannelRegistry()
        self.audit = MemoryAuditSink()
        self._audit_log = next((s for s in audit_sinks or [] if isinstance(s, FileAuditSink)), None)

        self.state_machine = InstanceStateMachine(store, [LoggingAuditSink(), self.audit, *(audit_sinks or [])])
        self.heartbeat = HeartbeatScheduler(store, self.state_machine, timer_factory or AsyncioTimerFactory())
        self.queue = ContactQueue(store, self.state_machine, on_admitted=self._on_dequeued)
        self.toolbox = AgentToolbox(store, transcripts, self.state_machine, self.heartbeat, self.channels)
        self.runtime = runtime or LLMAgentRuntime(settings.llm, self.toolbox)
        self.turns = TurnRunner(store, transcripts, self.state_machine, self.runtime,
                                turn_timeout_s=settings.llm.turn_timeout_s)
        self.heartbeat.bind_turn_runner(self.turns.run_followup)
        self.router = ChannelRouter(store, transcripts, self.state_machine, self.heartbeat, self.turns.run_turn)

        voice = self.channels.get(ChannelType.PHONE)
        self.poller: Optional[CallStatusPoller] = (
            CallStatusPoller(voice, self._on_call_finished) if isinstance(voice, VoiceCallAdapter) else None
        )

        # Hook order: silence the instance first, then free its contact slot
        self.state_machine.on_terminal_state(self.heartbeat.cancel_for_terminal)
        self.state_machine.on_terminal_state(self._release_instance)
        self.state_machine.on_terminal_state(self.queue.on_instance_terminal)

        for adapter in self.channels.all():
            self.router.attach(adapter, self._resolver_for(adapter))

        self._background: set[asyncio.Task] = set()
        self._started_at: Optional[float] = None

    @staticmethod
    def _resolver_for(adapter: ChannelAdapter) -> ContactResolver:
        if isinstance(adapter, TelegramAdapter):
            return adapter.resolver
        return DirectContactResolver()

    # ══════════════════════════════════════════════════════════
    #  STARTUP / SHUTDOWN
    # ══════════════════════════════════════════════════════════

    async def start(self) -> None:
        await self.channels.connect_all()

        instances = await self.store.get_all()
        for inst in instances:
            adapter = self.channels.get(inst.channel)
            if adapter is not None and not inst.is_terminal:
                adapter.register_instance(inst)

        armed = await self.heartbeat.reconstruct()
        polling = 0
        if self.poller is not None and self.poller.adapter.is_connected():
            polling = await self.poller.reconstruct([
                i for i in instances
                if i.channel == ChannelType.PHONE and i.state == InstanceState.ACTIVE and i.voice_call
            ])
        self._started_at = time.monotonic()
        logger.info("coordinator_started",
                    instances=len(instances),
                    heartbeats=armed,
                    call_pollers=polling,
                    channels=[c.value for c in self.channels.get_connected()])

    async def shutdown(self) -> None:
        """Cancel timers and release sessions and adapters. Stores are left to the caller."""
        await self.heartbeat.shutdown()
        if self.poller is not None:
            await self.poller.stop_all()

        tasks = list(self._background)
        for task in tasks:
            task.cancel()
        for task in tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._background.clear()

        await self.runtime.destroy_all()
        await self.channels.shutdown_all()
        logger.info("coordinator_stopped")

    def _spawn(self, coro, name: str) -> asyncio.Task:
        task = asyncio.create_task(coro, name=name)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    async def wait_idle(self) -> None:
        """Wait until background activations (and any they spawn) have finished."""
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    # ══════════════════════════════════════════════════════════
    #  CREATE / ACTIVATE
    # ══════════════════════════════════════════════════════════

    async def create_instance(
        self, request: Union[CreateInstanceRequest, dict[str, Any]],
    ) -> ConversationInstance:
        """
        Create an instance and, when its contact is free, activate it.

        Raises:
            pydantic.ValidationError: malformed request
            ChannelUnavailableError:  the requested channel is not connected
            ChannelError:             a phone call could not be placed (instance is FAILED)
        """
        if not isinstance(request, CreateInstanceRequest):
            request = CreateInstanceRequest.model_validate(request)

        adapter = self.channels.get(request.channel)
        if adapter is None or not adapter.is_connected():
            raise ChannelUnavailableError(request.channel.value)

        defaults = self.settings.heartbeat
        hb = request.heartbeat_config
        channel_data: dict[str, Any] = {}
        if request.phone_config is not None:
            channel_data["phone_config"] = request.phone_config.model_dump(exclude_none=True)

        instance = ConversationInstance(
            objective=request.objective,
            target_contact=normalize_phone(request.target_contact) or request.target_contact,
            todos=[TodoItem(text=t.text) for t in request.todos],
            heartbeat_config=HeartbeatConfig(
                interval_ms=hb.interval_ms if hb and hb.interval_ms is not None else defaults.interval_ms,
                max_followups=hb.max_followups if hb and hb.max_followups is not None else defaults.max_followups,
            ),
            channel=request.channel,
            channel_data=channel_data,
        )

        if isinstance(adapter, TelegramAdapter):
            chat_id = request.telegram_chat_id or adapter.discover_chat_id(instance.target_contact)
            if chat_id:
                instance.channel_data["telegram_chat_id"] = chat_id
                adapter.resolver.register_mapping(instance.target_contact, chat_id)

        instance = await self.store.create(instance)
        logger.info("instance_created",
                    instance_id=instance.id,
                    contact=instance.target_contact,
                    channel=instance.channel.value,
                    todos=len(instance.todos))

        placement = await self.queue.enqueue_or_activate(instance)
        if placement == InstanceState.CREATED:
            await self.activate(instance.id)
        return await self.store.get_by_id(instance.id)

    async def activate(self, instance_id: str) -> Optional[ConversationInstance]:
        """Take a CREATED instance live: opening turn (chat) or outbound call (phone)."""
        instance = await self.store.get_by_id(instance_id)
        if instance is None:
            return None
        if instance.state != InstanceState.CREATED:
            logger.debug("activate_skipped", instance_id=instance_id, state=instance.state.value)
            return instance

        if instance.channel == ChannelType.PHONE:
            return await self._activate_phone(instance)

        result = await self.state_machine.transition(instance_id, StateEvent.AGENT_SENDS_FIRST_MESSAGE)
        if not result:
            logger.warning("activation_rejected", instance_id=instance_id, error=str(result.error))
            return result.instance

        transcript = await self.transcripts.get_by_instance(instance_id)
        await self.runtime.create_session(result.instance, transcript)
        await self.turns.run_turn(instance_id, OPENING_PROMPT)
        await self.router.rearm_heartbeat(instance_id)
        logger.info("instance_activated", instance_id=instance_id)
        return await self.store.get_by_id(instance_id)

    async def _activate_phone(self, instance: ConversationInstance) -> ConversationInstance:
        adapter = self.channels.get(ChannelType.PHONE)
        result = await self.state_machine.transition(instance.id, StateEvent.AGENT_SENDS_FIRST_MESSAGE)
        if not result:
            logger.warning("activation_rejected", instance_id=instance.id, error=str(result.error))
            return result.instance

        try:
            if not isinstance(adapter, VoiceCallAdapter) or not adapter.is_connected():
                raise ChannelUnavailableError(ChannelType.PHONE.value)
            call = await adapter.place_instance_call(instance)
        except ChannelError as e:
            logger.error("phone_activation_failed", instance_id=instance.id, error=str(e))
            await self.state_machine.transition(instance.id, StateEvent.UNRECOVERABLE_ERROR, failure_reason=str(e))
            raise

        await self.store.update(instance.id, voice_call=call)
        await self.transcripts.append(TranscriptMessage(
            instance_id=instance.id,
            role=TranscriptRole.SYSTEM,
            content=f"Call placed (conversation {call.conversation_id})",
        ))
        if self.poller is not None:
            self.poller.start(instance.id, call.conversation_id)
        logger.info("phone_instance_activated", instance_id=instance.id, conversation_id=call.conversation_id)
        return await self.store.get_by_id(instance.id)

    async def _on_dequeued(self, instance: ConversationInstance) -> None:
        if not self.settings.queue.auto_activate_dequeued:
            return
        self._spawn(self._activate_safely(instance.id), name=f"activate:{instance.id}")

    async def _activate_safely(self, instance_id: str) -> None:
        try:
            await self.activate(instance_id)
        except Exception as e:
            logger.error("dequeued_activation_failed", instance_id=instance_id, error=str(e))

    # ══════════════════════════════════════════════════════════
    #  OPERATOR CONTROLS
    # ══════════════════════════════════════════════════════════

    async def pause(self, instance_id: str) -> TransitionResult:
        result = await self.state_machine.transition(instance_id, StateEvent.PAUSE)
        if result:
            self.heartbeat.suspend(instance_id)
        return result

    async def resume(self, instance_id: str) -> TransitionResult:
        result = await self.state_machine.transition(instance_id, StateEvent.RESUME)
        if not result:
            return result

        if result.to_state in HEARTBEAT_STATES:
            await self.heartbeat.resume(instance_id)
        elif result.to_state == InstanceState.CREATED:
            self._spawn(self._activate_safely(instance_id), name=f"activate:{instance_id}")
        elif result.to_state == InstanceState.QUEUED:
            await self._admit_if_free(result.instance)
        return result

    async def _admit_if_free(self, instance: ConversationInstance) -> None:
        # The contact's slot may have freed up while this instance was paused
        if await self.store.get_active_for_contact(instance.target_contact, exclude_id=instance.id):
            return
        queue = await self.queue.get_queue_for_contact(instance.target_contact)
        if queue and queue[0].id == instance.id:
            admitted = await self.state_machine.transition(instance.id, StateEvent.PRIOR_INSTANCE_TERMINAL)
            if admitted:
                await self._on_dequeued(admitted.instance)

    async def cancel(self, instance_id: str) -> TransitionResult:
        if self.poller is not None:
            self.poller.stop(instance_id)
        return await self.state_machine.transition(instance_id, StateEvent.CANCEL)

    async def send_manual(self, instance_id: str, text: str) -> TranscriptMessage:
        """
        Deliver an operator-written message and record it as a manual entry.

        From NEEDS_HUMAN_INTERVENTION the instance is handed back to the
        conversation: manual_send, then message_sent, then the heartbeat.

        Raises InstanceNotFoundError, ValueError (phone instances),
        ChannelUnavailableError or ChannelError.
        """
        instance = await self.store.get_by_id(instance_id)
        if instance is None:
            raise InstanceNotFoundError(instance_id)
        if instance.channel == ChannelType.PHONE:
            raise ValueError("Manual messages are not supported on phone instances")
        adapter = self.channels.get(instance.channel)
        if adapter is None or not adapter.is_connected():
            raise ChannelUnavailableError(instance.channel.value)

        saved = await self.toolbox.deliver(instance, text, role=TranscriptRole.MANUAL)
        logger.info("manual_message_sent", instance_id=instance_id, message_id=saved.id)

        if instance.state == InstanceState.NEEDS_HUMAN_INTERVENTION:
            handed_back = await self.state_machine.transition(instance_id, StateEvent.MANUAL_SEND)
            if handed_back:
                await self.state_machine.transition(instance_id, StateEvent.MESSAGE_SENT)
                await self.router.rearm_heartbeat(instance_id)
        return saved

    async def place_call(self, to_number: str, prompt: str, first_message: str, **options: Any) -> dict[str, Any]:
        """Ad-hoc outbound call, not tied to any instance."""
        adapter = self.channels.get(ChannelType.PHONE)
        if not isinstance(adapter, VoiceCallAdapter) or not adapter.is_connected():
            raise ChannelUnavailableError(ChannelType.PHONE.value)
        call = await adapter.place_call(to_number, prompt, first_message, **options)
        return call.model_dump()

    # ══════════════════════════════════════════════════════════
    #  TERMINAL HOOKS & CALL RESULTS
    # ══════════════════════════════════════════════════════════

    async def _release_instance(self, instance_id: str) -> None:
        await self.runtime.destroy_session(instance_id)
        self.turns.release(instance_id)
        if self.poller is not None:
            self.poller.stop(instance_id)

    async def _on_call_finished(self, instance_id: str, status: str) -> None:
        if status == "done":
            result = await self.state_machine.transition(instance_id, StateEvent.END_CONVERSATION)
        else:
            result = await self.state_machine.transition(
                instance_id, StateEvent.UNRECOVERABLE_ERROR, failure_reason=CALL_FAILED_REASON,
            )
        if result:
            logger.info("call_finished", instance_id=instance_id, status=status, state=result.to_state.value)
        else:
            logger.warning("call_result_not_applied", instance_id=instance_id, status=status,
                           error=str(result.error))

    # ══════════════════════════════════════════════════════════
    #  QUERIES
    # ══════════════════════════════════════════════════════════

    async def get_instance(self, instance_id: str) -> ConversationInstance:
        instance = await self.store.get_by_id(instance_id)
        if instance is None:
            raise InstanceNotFoundError(instance_id)
        return instance

    async def list_instances(self, state: Optional[InstanceState] = None) -> list[ConversationInstance]:
        instances = await self.store.get_all()
        if state is not None:
            instances = [i for i in instances if i.state == state]
        return sorted(instances, key=lambda i: i.created_at)

    async def get_transcript(self, instance_id: str) -> list[TranscriptMessage]:
        await self.get_instance(instance_id)
        return await self.transcripts.get_by_instance(instance_id)

    async def get_transitions(self, instance_id: str) -> list[dict[str, Any]]:
        await self.get_instance(instance_id)
        records = (self._audit_log.read_all(instance_id) if self._audit_log is not None
                   else self.audit.for_instance(instance_id))
        return [r.model_dump(mode="json") for r in records]

    async def get_status(self) -> dict[str, Any]:
        instances = await self.store.get_all()
        uptime = int(time.monotonic() - self._started_at) if self._started_at is not None else 0
        status: dict[str, Any] = {
            "pid": os.getpid(),
            "uptime_seconds": uptime,
            "active_instance_count": sum(1 for i in instances if not i.is_terminal),
            "total_instance_count": len(instances),
            "active_timer_count": self.heartbeat.active_count,
            "session_count": self.runtime.session_count,
            "call_poller_count": self.poller.active_count if self.poller is not None else 0,
            "channels": await self.channels.health_check_all(),
        }
        for ch in ChannelType:
            status[f"{ch.value}_connected"] = ch in self.channels.get_connected()
        return status


# ══════════════════════════════════════════════════════════════
#  FACTORY
# ══════════════════════════════════════════════════════════════

async def build_channels(settings: Settings) -> ChannelRegistry:
    """Instantiate and initialize every enabled channel adapter."""
    registry = ChannelRegistry()
    adapters: dict[str, type[ChannelAdapter]] = {
        ChannelType.WHATSAPP.value: WhatsAppAdapter,
        ChannelType.TELEGRAM.value: TelegramAdapter,
        ChannelType.PHONE.value: VoiceCallAdapter,
    }
    for name, cls in adapters.items():
        if not settings.channel_enabled(name):
            continue
        adapter = cls()
        await adapter.initialize(settings.channel_credentials(name))
        registry.register(adapter)
        logger.info("channel_registered", channel=name)
    return registry


async def build_coordinator(settings: Settings) -> Coordinator:
    store, transcripts = create_stores({
        "backend": settings.store.backend,
        "data_dir": settings.store.data_dir,
    })
    sinks: list[AuditSink] = []
    if settings.store.audit_log and settings.store.backend == "file":
        sinks.append(FileAuditSink(os.path.join(settings.store.data_dir, "transitions.jsonl")))
    channels = await build_channels(settings)
    return Coordinator(settings, store, transcripts, channels=channels, audit_sinks=sinks)
