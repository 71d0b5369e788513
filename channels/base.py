"""
Channel Adapters — shared base infrastructure for all channels.

Provides:
- ChannelError: structured error hierarchy
- InboundMessage: normalized inbound traffic handed to the router
- MessageDeduplicator: TTL seen-set so webhook redeliveries are ignored
- InputSanitizer: strips control characters and bounds inbound text
- ChannelAdapter: abstract capability (connect / send / on_message / is_connected)
  with two variants, chat-style and voice-call-style
- ChannelRegistry: adapter lookup, bulk connect and shutdown
"""
from __future__ import annotations

import abc
import time
import structlog
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Optional

from models.schemas import ChannelType, ConversationInstance, InstanceState, TranscriptRole, utc_now_iso

logger = structlog.get_logger()


# ══════════════════════════════════════════════════════════════
#  ERRORS
# ══════════════════════════════════════════════════════════════

class ChannelError(Exception):
    """Base exception for all channel operations."""

    def __init__(self, message: str, channel: str = "", retryable: bool = False):
        self.channel = channel
        self.retryable = retryable
        super().__init__(message)


class ChannelUnavailableError(ChannelError):
    def __init__(self, channel: str = ""):
        super().__init__(f"Channel {channel} is not connected", channel, retryable=True)


# ══════════════════════════════════════════════════════════════
#  INBOUND MESSAGE
# ══════════════════════════════════════════════════════════════

@dataclass
class InboundMessage:
    sender: str                                   # raw sender identity as the channel reports it
    text: str
    chat_id: Optional[str] = None                 # secondary identifier (Telegram chat id)
    is_group: bool = False
    role: TranscriptRole = TranscriptRole.CONTACT
    message_id: str = ""
    sender_name: str = ""
    instance_id: Optional[str] = None             # set when the channel already knows the owner (voice calls)
    timestamp: str = field(default_factory=utc_now_iso)
    metadata: dict[str, Any] = field(default_factory=dict)


MessageCallback = Callable[[InboundMessage], Awaitable[Any]]


# ══════════════════════════════════════════════════════════════
#  MESSAGE DEDUPLICATOR
# ══════════════════════════════════════════════════════════════

class MessageDeduplicator:
    """TTL-based seen-set for deduplicating inbound messages."""

    def __init__(self, ttl_seconds: float = 300.0, max_size: int = 5000):
        self.ttl = ttl_seconds
        self.max_size = max_size
        self._seen: dict[str, float] = {}

    def is_duplicate(self, key: str) -> bool:
        self._prune()
        if key in self._seen:
            return True
        self._seen[key] = time.monotonic()
        return False

    def _prune(self):
        cutoff = time.monotonic() - self.ttl
        expired = [k for k, t in self._seen.items() if t < cutoff]
        for k in expired:
            del self._seen[k]
        if len(self._seen) > self.max_size:
            oldest = sorted(self._seen, key=self._seen.get)[: len(self._seen) - self.max_size]
            for k in oldest:
                del self._seen[k]


# ══════════════════════════════════════════════════════════════
#  INPUT SANITIZER
# ══════════════════════════════════════════════════════════════

class InputSanitizer:
    def __init__(self, max_length: int = 10000):
        self.max_length = max_length

    def sanitize(self, content: str) -> str:
        if not content:
            return ""
        content = "".join(
            c for c in content if c in ("\n", "\t", "\r") or (ord(c) >= 32)
        )
        if len(content) > self.max_length:
            content = content[: self.max_length] + "... [truncated]"
        return content.strip()


# ══════════════════════════════════════════════════════════════
#  CHANNEL ADAPTER (abstract base)
# ══════════════════════════════════════════════════════════════

class ChannelKind(str, Enum):
    CHAT = "chat"
    VOICE = "voice"


class ChannelAdapter(abc.ABC):
    """
    Base class for all channel adapters.

    Subclasses implement connect() and send(). Inbound traffic enters through
    dispatch_inbound(), which deduplicates, sanitizes and fans the message out
    to every callback registered with on_message() (normally the ChannelRouter).

    `reply_states` lists the instance states in which inbound text counts as
    a reply that advances the conversation.
    """

    channel_type: ChannelType
    kind: ChannelKind = ChannelKind.CHAT
    reply_states: frozenset[InstanceState] = frozenset({InstanceState.WAITING_FOR_REPLY})

    def __init__(self):
        self._config: dict[str, Any] = {}
        self._connected = False
        self._callbacks: list[MessageCallback] = []
        self._deduplicator = MessageDeduplicator()
        self._sanitizer = InputSanitizer()

    async def initialize(self, config: dict[str, Any]) -> None:
        self._config = dict(config or {})

    def _credential(self, key: str, default: Any = "") -> Any:
        value = self._config.get(key, default)
        # Unset ${VAR} placeholders survive substitution verbatim
        if isinstance(value, str) and value.startswith("${"):
            return default
        return value if value is not None else default

    # ── Abstract hooks ────────────────────────────────────────

    @abc.abstractmethod
    async def connect(self) -> None:
        ...

    @abc.abstractmethod
    async def send(self, contact_key: str, text: str) -> dict[str, Any]:
        """Deliver `text` to the contact. Raises ChannelError on failure."""
        ...

    # ── Capability ────────────────────────────────────────────

    def is_connected(self) -> bool:
        return self._connected

    def on_message(self, callback: MessageCallback) -> None:
        self._callbacks.append(callback)

    def register_instance(self, instance: ConversationInstance) -> None:
        """Learn whatever addressing the instance carries before a send."""

    def _require_connected(self) -> None:
        if not self._connected:
            raise ChannelUnavailableError(self.channel_type.value)

    # ── Inbound ───────────────────────────────────────────────

    async def dispatch_inbound(self, message: InboundMessage) -> bool:
        """Hand a parsed inbound message to every registered callback.

        Returns False when the message was dropped as a duplicate or empty.
        """
        if message.message_id and self._deduplicator.is_duplicate(message.message_id):
            logger.debug("inbound_duplicate_dropped",
                         channel=self.channel_type.value, message_id=message.message_id)
            return False

        message.text = self._sanitizer.sanitize(message.text)
        if not message.text:
            return False

        for callback in self._callbacks:
            try:
                await callback(message)
            except Exception as e:
                logger.error("inbound_callback_failed",
                             channel=self.channel_type.value, error=str(e))
        return True

    # ── Health ────────────────────────────────────────────────

    async def health_check(self) -> dict[str, Any]:
        return {
            "channel": self.channel_type.value,
            "kind": self.kind.value,
            "connected": self._connected,
        }

    async def shutdown(self) -> None:
        self._connected = False
        self._callbacks.clear()


# ══════════════════════════════════════════════════════════════
#  CHANNEL REGISTRY
# ══════════════════════════════════════════════════════════════

class ChannelRegistry:
    def __init__(self):
        self._adapters: dict[ChannelType, ChannelAdapter] = {}

    def register(self, adapter: ChannelAdapter):
        self._adapters[adapter.channel_type] = adapter

    def get(self, channel_type: ChannelType) -> Optional[ChannelAdapter]:
        return self._adapters.get(channel_type)

    def all(self) -> list[ChannelAdapter]:
        return list(self._adapters.values())

    def get_available(self) -> list[ChannelType]:
        return list(self._adapters.keys())

    def get_connected(self) -> list[ChannelType]:
        return [ch for ch, a in self._adapters.items() if a.is_connected()]

    async def health_check_all(self) -> dict[str, Any]:
        return {ch.value: await a.health_check() for ch, a in self._adapters.items()}

    async def connect_all(self):
        for ch, adapter in self._adapters.items():
            try:
                await adapter.connect()
            except Exception as e:
                logger.error("channel_connect_failed", channel=ch.value, error=str(e))

    async def shutdown_all(self):
        for ch, adapter in self._adapters.items():
            try:
                await adapter.shutdown()
            except Exception as e:
                logger.warning("channel_shutdown_failed", channel=ch.value, error=str(e))
