"""
Channel Router — one inbound-message algorithm shared by every channel.

Each adapter is attached with a ContactResolver that knows how that channel
identifies people: a direct phone-style identity (WhatsApp, voice) or a
chat-id ↔ contact mapping learned over time (Telegram).

Flow:
  InboundMessage
    → resolver maps sender to a canonical contact key (group traffic discarded)
    → find the contact's live instance (secondary-identifier fallback)
    → no instance: drop. Otherwise append to the transcript, always
    → state in adapter.reply_states ?
        yes: cancel heartbeat → contact_replies → one agent turn → re-arm heartbeat
        no:  recorded only, no transition
"""
from __future__ import annotations

import abc
import re
import structlog
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Optional

from channels.base import ChannelAdapter, InboundMessage
from lifecycle.heartbeat import HeartbeatScheduler
from lifecycle.state_machine import InstanceStateMachine
from models.schemas import (
    HEARTBEAT_STATES, ChannelType, ConversationInstance, StateEvent,
    TranscriptMessage,
)

if TYPE_CHECKING:
    from database.store_base import BaseInstanceStore, BaseTranscriptStore

logger = structlog.get_logger()

TurnRunner = Callable[[str, str], Awaitable[Any]]

_GROUP_SUFFIXES = ("@g.us", "@broadcast", "@newsletter")
_JID_SUFFIX = re.compile(r"@.*$")

def normalize_phone(raw: str) -> str:
    """'56912345678@s.whatsapp.net' / '+56 9 1234-5678' → '+56912345678'."""
    digits = re.sub(r"[^\d]", "", _JID_SUFFIX.sub("", raw or ""))
    return f"+{digits}" if digits else ""


# ──────────────────────────────────────────────────────────────
#  Contact resolution strategies
# ──────────────────────────────────────────────────────────────

class ContactResolver(abc.ABC):

    @abc.abstractmethod
    def contact_key(self, message: InboundMessage) -> Optional[str]:
        """Canonical contact key, or None when the traffic must be discarded."""

    async def find_instance(
        self, contact_key: str, message: InboundMessage, store: "BaseInstanceStore",
    ) -> Optional[ConversationInstance]:
        return await store.get_active_for_contact(contact_key)

    async def learn(
        self, instance: ConversationInstance, message: InboundMessage, store: "BaseInstanceStore",
    ) -> None:
        """Record whatever the message reveals about the contact's identity."""


class DirectContactResolver(ContactResolver):
    """Sender identity is the phone number (WhatsApp JIDs, caller ids)."""

    def contact_key(self, message: InboundMessage) -> Optional[str]:
        if message.is_group or message.sender.endswith(_GROUP_SUFFIXES):
            return None
        return normalize_phone(message.sender) or None


class ChatIdContactResolver(ContactResolver):
    """
    For channels whose first contact arrives as an opaque chat id.

    Keeps a bidirectional chat_id ↔ contact map, populated when a contact
    shares their phone number or when a chat is matched to an instance.
    """

    def __init__(self, channel: ChannelType = ChannelType.TELEGRAM):
        self.channel = channel
        self._chat_to_contact: dict[str, str] = {}
        self._contact_to_chat: dict[str, str] = {}

    def register_mapping(self, contact: str, chat_id: str) -> None:
        contact = normalize_phone(contact) or contact
        self._contact_to_chat[contact] = str(chat_id)
        self._chat_to_contact[str(chat_id)] = contact
        logger.debug("chat_mapping_registered", contact=contact, chat_id=chat_id)

    def chat_for_contact(self, contact: str) -> Optional[str]:
        return self._contact_to_chat.get(normalize_phone(contact) or contact)

    def contact_for_chat(self, chat_id: str) -> Optional[str]:
        return self._chat_to_contact.get(str(chat_id))

    def contact_key(self, message: InboundMessage) -> Optional[str]:
        if message.is_group:
            return None
        if message.chat_id is not None:
            mapped = self.contact_for_chat(message.chat_id)
            if mapped:
                return mapped
        return normalize_phone(message.sender) or None

    async def find_instance(
        self, contact_key: str, message: InboundMessage, store: "BaseInstanceStore",
    ) -> Optional[ConversationInstance]:
        instance = await store.get_active_for_contact(contact_key)
        if instance is not None or message.chat_id is None:
            return instance
        for candidate in await store.find_by_channel_data("telegram_chat_id", str(message.chat_id)):
            if candidate.channel == self.channel and candidate.is_active:
                return candidate
        return None

    async def learn(
        self, instance: ConversationInstance, message: InboundMessage, store: "BaseInstanceStore",
    ) -> None:
        if message.chat_id is None:
            return
        chat_id = str(message.chat_id)
        self.register_mapping(instance.target_contact, chat_id)
        if instance.telegram_chat_id != chat_id:
            await store.update(instance.id, channel_data={**instance.channel_data, "telegram_chat_id": chat_id})


# ──────────────────────────────────────────────────────────────
#  Router
# ──────────────────────────────────────────────────────────────

class ChannelRouter:

    def __init__(
        self,
        store: "BaseInstanceStore",
        transcripts: "BaseTranscriptStore",
        state_machine: InstanceStateMachine,
        heartbeat: HeartbeatScheduler,
        turn_runner: TurnRunner,
    ):
        self.store = store
        self.transcripts = transcripts
        self.state_machine = state_machine
        self.heartbeat = heartbeat
        self._run_turn = turn_runner

    def attach(self, adapter: ChannelAdapter, resolver: ContactResolver) -> None:
        """Route everything the adapter receives through this router."""
        async def _on_message(message: InboundMessage):
            await self.route(adapter, resolver, message)

        adapter.on_message(_on_message)
        logger.info("channel_router_attached",
                    channel=adapter.channel_type.value,
                    resolver=type(resolver).__name__)

    async def route(
        self, adapter: ChannelAdapter, resolver: ContactResolver, message: InboundMessage,
    ) -> str:
        """
        Apply the routing algorithm to one inbound message.

        Returns an outcome label: "discarded", "dropped", "recorded",
        "rejected" or "routed".
        """
        channel = adapter.channel_type.value

        if message.instance_id:
            instance = await self.store.get_by_id(message.instance_id)
            contact_key = instance.target_contact if instance else None
        else:
            contact_key = resolver.contact_key(message)
            if contact_key is None:
                logger.debug("inbound_discarded", channel=channel, sender=message.sender)
                return "discarded"
            instance = await resolver.find_instance(contact_key, message, self.store)

        if instance is None or not instance.is_active:
            logger.info("inbound_no_active_instance", channel=channel, contact=contact_key)
            return "dropped"

        await resolver.learn(instance, message, self.store)
        await self.transcripts.append(TranscriptMessage(
            instance_id=instance.id,
            role=message.role,
            content=message.text,
            timestamp=message.timestamp,
        ))

        if instance.state not in adapter.reply_states:
            logger.debug("inbound_recorded_without_transition",
                         instance_id=instance.id, state=instance.state.value, channel=channel)
            return "recorded"

        self.heartbeat.cancel(instance.id)
        result = await self.state_machine.transition(instance.id, StateEvent.CONTACT_REPLIES)
        if not result:
            logger.warning("contact_reply_transition_failed",
                           instance_id=instance.id, error=str(result.error))
            current = await self.store.get_by_id(instance.id)
            if current is not None and current.state in HEARTBEAT_STATES:
                self.heartbeat.schedule(current.id, current.heartbeat_config.interval_ms)
            return "rejected"

        logger.info("inbound_routed", instance_id=instance.id, channel=channel)
        try:
            await self._run_turn(instance.id, message.text)
        except Exception as e:
            logger.error("reply_turn_failed", instance_id=instance.id, error=str(e))

        await self.rearm_heartbeat(instance.id, use_override=False)
        return "routed"

    async def rearm_heartbeat(self, instance_id: str, use_override: bool = True) -> bool:
        """
        Arm the heartbeat if the instance now waits on the contact.

        After a reply turn the configured interval is used and any pending
        override is left for the next fire.
        """
        instance = await self.store.get_by_id(instance_id)
        if instance is None or instance.state not in HEARTBEAT_STATES:
            return False
        interval_ms = instance.heartbeat_config.interval_ms
        delay = self.heartbeat.next_delay_ms(instance_id, interval_ms) if use_override else interval_ms
        self.heartbeat.schedule(instance_id, delay)
        return True
