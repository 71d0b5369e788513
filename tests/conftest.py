"""Shared test fixtures for Relay Agent."""
import pytest
from typing import Any, Awaitable, Callable, Optional, Union

from channels.base import ChannelAdapter, ChannelRegistry, InboundMessage
from config.settings import HeartbeatDefaults, Settings, StoreConfig
from core.engine import AgentRuntime
from core.orchestrator import Coordinator
from database.store_memory import InMemoryInstanceStore, InMemoryTranscriptStore
from lifecycle.audit import MemoryAuditSink
from lifecycle.state_machine import InstanceStateMachine
from lifecycle.timers import TimerCallback, TimerFactory, TimerHandle
from models.schemas import (
    ChannelType, ConversationInstance, HeartbeatConfig, InstanceState, TodoItem,
)


# ──────────────────────────────────────────────────────────────
#  Virtual clock
# ──────────────────────────────────────────────────────────────

class _VirtualHandle(TimerHandle):
    def __init__(self, due: float, callback: TimerCallback):
        self.due = due
        self.callback = callback
        self.cancelled = False
        self.fired = False

    def cancel(self) -> None:
        self.cancelled = True


class VirtualTimers(TimerFactory):
    """Deterministic TimerFactory: nothing fires until advance() is awaited."""

    def __init__(self):
        self.now = 0.0
        self._handles: list[_VirtualHandle] = []
        self.closed = False

    def call_later(self, delay_s: float, callback: TimerCallback) -> TimerHandle:
        handle = _VirtualHandle(self.now + max(delay_s, 0), callback)
        self._handles.append(handle)
        return handle

    @property
    def live(self) -> list[_VirtualHandle]:
        return [h for h in self._handles if not h.cancelled and not h.fired]

    async def advance(self, seconds: float) -> int:
        """Move the clock forward, awaiting every callback that comes due. Returns the fire count."""
        target = self.now + seconds
        fired = 0
        while True:
            due = sorted((h for h in self.live if h.due <= target), key=lambda h: h.due)
            if not due:
                break
            handle = due[0]
            self.now = handle.due
            handle.fired = True
            fired += 1
            await handle.callback()
        self.now = target
        return fired

    async def close(self) -> None:
        self.closed = True
        self._handles.clear()


# ──────────────────────────────────────────────────────────────
#  Fake agent runtime
# ──────────────────────────────────────────────────────────────

TurnBehaviour = Union[BaseException, Callable[[str, str], Awaitable[Any]]]


class FakeRuntime(AgentRuntime):
    """
    Scripted AgentRuntime. Each submit_turn consumes the next behaviour:
    an exception instance is raised, a coroutine function is awaited with
    (instance_id, text). With nothing scripted the turn succeeds silently.
    """

    def __init__(self):
        self.sessions: dict[str, ConversationInstance] = {}
        self.turns: list[tuple[str, str]] = []
        self.script: list[TurnBehaviour] = []
        self.destroyed: list[str] = []

    async def create_session(self, instance, transcript) -> None:
        self.sessions[instance.id] = instance

    async def submit_turn(self, instance_id: str, text: str) -> None:
        self.turns.append((instance_id, text))
        if not self.script:
            return
        behaviour = self.script.pop(0)
        if isinstance(behaviour, BaseException):
            raise behaviour
        await behaviour(instance_id, text)

    async def destroy_session(self, instance_id: str) -> None:
        if self.sessions.pop(instance_id, None) is not None:
            self.destroyed.append(instance_id)

    def has_session(self, instance_id: str) -> bool:
        return instance_id in self.sessions

    async def destroy_all(self) -> None:
        self.sessions.clear()

    @property
    def session_count(self) -> int:
        return len(self.sessions)


# ──────────────────────────────────────────────────────────────
#  Fake channel
# ──────────────────────────────────────────────────────────────

class FakeAdapter(ChannelAdapter):
    """Chat-style adapter that records sends instead of delivering them."""

    def __init__(self, channel_type: ChannelType = ChannelType.WHATSAPP,
                 reply_states: Optional[frozenset] = None, fail_connect: bool = False):
        super().__init__()
        self.channel_type = channel_type
        if reply_states is not None:
            self.reply_states = reply_states
        self.fail_connect = fail_connect
        self.sent: list[tuple[str, str]] = []

    async def connect(self) -> None:
        if self.fail_connect:
            raise RuntimeError("connect refused")
        self._connected = True

    async def send(self, contact_key: str, text: str) -> dict[str, Any]:
        self._require_connected()
        self.sent.append((contact_key, text))
        return {"status": "sent", "channel_message_id": f"fake-{len(self.sent)}"}

    async def receive(self, sender: str, text: str, **kwargs) -> bool:
        return await self.dispatch_inbound(InboundMessage(sender=sender, text=text, **kwargs))


# ──────────────────────────────────────────────────────────────
#  Fixtures
# ──────────────────────────────────────────────────────────────

@pytest.fixture
def settings() -> Settings:
    return Settings(
        store=StoreConfig(backend="memory", audit_log=False),
        heartbeat=HeartbeatDefaults(interval_ms=1000, max_followups=2),
    )


@pytest.fixture
def store() -> InMemoryInstanceStore:
    return InMemoryInstanceStore()


@pytest.fixture
def transcripts() -> InMemoryTranscriptStore:
    return InMemoryTranscriptStore()


@pytest.fixture
def audit() -> MemoryAuditSink:
    return MemoryAuditSink()


@pytest.fixture
def state_machine(store, audit) -> InstanceStateMachine:
    return InstanceStateMachine(store, [audit])


@pytest.fixture
def timers() -> VirtualTimers:
    return VirtualTimers()


@pytest.fixture
def runtime() -> FakeRuntime:
    return FakeRuntime()


@pytest.fixture
def whatsapp() -> FakeAdapter:
    return FakeAdapter(ChannelType.WHATSAPP)


@pytest.fixture
def channels(whatsapp) -> ChannelRegistry:
    registry = ChannelRegistry()
    registry.register(whatsapp)
    return registry


@pytest.fixture
def coordinator(settings, store, transcripts, channels, runtime, timers) -> Coordinator:
    return Coordinator(settings, store, transcripts, channels=channels,
                       runtime=runtime, timer_factory=timers)


@pytest.fixture
def make_instance(store):
    """Persist an instance directly in a given state, bypassing the coordinator."""
    async def _make(state: InstanceState = InstanceState.CREATED, contact: str = "+100",
                    interval_ms: int = 1000, max_followups: int = 2, **fields) -> ConversationInstance:
        instance = ConversationInstance(
            objective=fields.pop("objective", "Confirm the delivery address"),
            target_contact=contact,
            todos=fields.pop("todos", [TodoItem(text="Ask for the street address")]),
            state=state,
            heartbeat_config=HeartbeatConfig(interval_ms=interval_ms, max_followups=max_followups),
            **fields,
        )
        return await store.create(instance)
    return _make


@pytest.fixture
def make_request():
    """Body for a create-instance request."""
    def _body(contact: str = "+100", **overrides) -> dict[str, Any]:
        body = {
            "objective": "Confirm the delivery address",
            "target_contact": contact,
            "todos": [{"text": "Ask for the street address"}, {"text": "Confirm delivery window"}],
        }
        body.update(overrides)
        return body
    return _body


@pytest.fixture
def make_adapter():
    """Factory for extra fake channels (Telegram-like reply states, failing connects)."""
    def _make(channel_type: ChannelType = ChannelType.WHATSAPP, **kwargs) -> FakeAdapter:
        return FakeAdapter(channel_type, **kwargs)
    return _make
