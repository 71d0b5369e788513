"""
Telegram Channel Adapter — Telegram Bot API over webhooks.

Provides:
- Outbound sendMessage to the chat mapped to a contact
- Inbound webhook updates: text messages and contact shares
- Chat id ↔ contact mapping via the shared ChatIdContactResolver
- Recent chat ids, so an instance created without a chat id can adopt the
  only chat that has messaged the bot
"""
from __future__ import annotations

import structlog
from datetime import datetime, timezone
from typing import Any, Optional

import httpx
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from channels.base import ChannelAdapter, ChannelError, InboundMessage
from channels.router import ChatIdContactResolver, normalize_phone
from models.schemas import ChannelType, ConversationInstance, InstanceState

logger = structlog.get_logger()

TELEGRAM_API_BASE = "https://api.telegram.org"
_GROUP_CHAT_TYPES = ("group", "supergroup", "channel")


class TelegramAdapter(ChannelAdapter):
    """Telegram bot adapter (chat-style). Replies are accepted mid-turn."""

    channel_type = ChannelType.TELEGRAM
    reply_states = frozenset({InstanceState.WAITING_FOR_REPLY, InstanceState.ACTIVE})

    def __init__(self, resolver: Optional[ChatIdContactResolver] = None,
                 client: Optional[httpx.AsyncClient] = None):
        super().__init__()
        self.resolver = resolver or ChatIdContactResolver(ChannelType.TELEGRAM)
        self._client = client
        self._bot_token: str = ""
        self._bot_info: dict[str, Any] = {}
        self._recent_chat_ids: list[str] = []

    async def initialize(self, config: dict[str, Any]) -> None:
        await super().initialize(config)
        self._bot_token = self._credential("bot_token", "")

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                base_url=f"{TELEGRAM_API_BASE}/bot{self._bot_token}",
                timeout=30.0,
            )
        return self._client

    @retry(
        stop=stop_after_attempt(2),
        wait=wait_exponential(multiplier=1, min=1, max=5),
        retry=retry_if_exception_type(httpx.TransportError),
        reraise=True,
    )
    async def _call(self, method: str, payload: dict[str, Any] = None) -> dict[str, Any]:
        client = await self._get_client()
        response = await client.post(f"/{method}", json=payload or {})
        response.raise_for_status()
        data = response.json()
        if not data.get("ok", False):
            raise ChannelError(f"Telegram {method} failed: {data.get('description', 'unknown')}", "telegram")
        return data.get("result", {})

    async def connect(self) -> None:
        if not self._bot_token:
            raise ChannelError("No Telegram bot token configured", "telegram")
        try:
            self._bot_info = await self._call("getMe")
        except httpx.HTTPError as e:
            raise ChannelError(f"Telegram getMe failed: {e}", "telegram", retryable=True) from e
        self._connected = True
        logger.info("telegram_connected", username=self._bot_info.get("username", ""))

    @property
    def bot_info(self) -> dict[str, Any]:
        return dict(self._bot_info)

    # ── Chat ids ──────────────────────────────────────────────

    def recent_chat_ids(self) -> list[str]:
        return list(self._recent_chat_ids)

    def _remember_chat(self, chat_id: str) -> None:
        if chat_id not in self._recent_chat_ids:
            self._recent_chat_ids.append(chat_id)

    def register_instance(self, instance: ConversationInstance) -> None:
        if instance.telegram_chat_id:
            self.resolver.register_mapping(instance.target_contact, instance.telegram_chat_id)

    def discover_chat_id(self, contact: str) -> Optional[str]:
        """Mapped chat for the contact, else the only chat that has messaged the bot."""
        mapped = self.resolver.chat_for_contact(contact)
        if mapped:
            return mapped
        if len(self._recent_chat_ids) == 1:
            logger.info("telegram_chat_id_discovered", chat_id=self._recent_chat_ids[0])
            return self._recent_chat_ids[0]
        return None

    # ── Send ──────────────────────────────────────────────────

    async def send(self, contact_key: str, text: str) -> dict[str, Any]:
        self._require_connected()
        chat_id = self.resolver.chat_for_contact(contact_key)
        if chat_id is None:
            raise ChannelError(
                f"No Telegram chat id for {contact_key}; the contact must message the bot first",
                "telegram",
            )
        try:
            result = await self._call("sendMessage", {"chat_id": int(chat_id), "text": text})
        except httpx.HTTPError as e:
            raise ChannelError(f"Telegram send failed: {e}", "telegram", retryable=True) from e
        logger.debug("telegram_message_sent", chat_id=chat_id, length=len(text))
        return {"status": "sent", "channel_message_id": str(result.get("message_id", ""))}

    # ── Inbound ───────────────────────────────────────────────

    def parse_update(self, update: dict[str, Any]) -> Optional[InboundMessage]:
        msg = update.get("message") or {}
        chat = msg.get("chat") or {}
        if not chat:
            return None
        chat_id = str(chat.get("id", ""))
        is_group = chat.get("type") in _GROUP_CHAT_TYPES

        contact = msg.get("contact")
        if contact and contact.get("phone_number") and not is_group:
            phone = normalize_phone(contact["phone_number"])
            self.resolver.register_mapping(phone, chat_id)
            logger.info("telegram_contact_shared", phone=phone, chat_id=chat_id)
            return None

        text = msg.get("text")
        if not text:
            return None

        if not is_group:
            self._remember_chat(chat_id)
        ts = msg.get("date")
        sender = msg.get("from") or {}
        return InboundMessage(
            sender=self.resolver.contact_for_chat(chat_id) or chat_id,
            text=text,
            chat_id=chat_id,
            is_group=is_group,
            message_id=f"tg:{chat_id}:{msg.get('message_id', '')}",
            sender_name=" ".join(filter(None, [sender.get("first_name"), sender.get("last_name")])),
            timestamp=(datetime.fromtimestamp(ts, tz=timezone.utc).isoformat() if ts
                       else datetime.now(timezone.utc).isoformat()),
        )

    async def handle_update(self, update: dict[str, Any]) -> bool:
        message = self.parse_update(update)
        if message is None:
            return False
        return await self.dispatch_inbound(message)

    # ── Lifecycle ─────────────────────────────────────────────

    async def health_check(self) -> dict[str, Any]:
        base = await super().health_check()
        return {**base, "bot": self._bot_info.get("username", ""), "recent_chats": len(self._recent_chat_ids)}

    async def shutdown(self) -> None:
        await super().shutdown()
        if self._client is not None and not self._client.is_closed:
            await self._client.aclose()
