"""
WhatsApp Channel Adapter — WhatsApp Business Cloud API integration.

Provides:
- Phone number normalization (contact keys are +E.164)
- Webhook verification (hub.verify_token challenge + X-Hub-Signature-256)
- Outbound: free-form text via the Graph API messages endpoint
- Inbound: text, interactive replies, captions and placeholders for media
- Group traffic flagged so the router can discard it

Without an access token the adapter runs in dry-run mode: sends are logged
and reported as "mock_sent" instead of calling the Graph API.
"""
from __future__ import annotations

import hashlib
import hmac
import uuid
import structlog
from typing import Any, Optional

import httpx
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from channels.base import ChannelAdapter, ChannelError, InboundMessage
from channels.router import normalize_phone
from models.schemas import ChannelType, InstanceState

logger = structlog.get_logger()

GRAPH_API_BASE = "https://graph.facebook.com/v18.0"


class WhatsAppAdapter(ChannelAdapter):
    """WhatsApp Business Cloud API adapter (chat-style)."""

    channel_type = ChannelType.WHATSAPP
    reply_states = frozenset({InstanceState.WAITING_FOR_REPLY})

    def __init__(self, client: Optional[httpx.AsyncClient] = None):
        super().__init__()
        self._phone_number_id: str = ""
        self._access_token: str = ""
        self._verify_token: str = ""
        self._app_secret: str = ""
        self._client = client

    async def initialize(self, config: dict[str, Any]) -> None:
        await super().initialize(config)
        self._phone_number_id = self._credential("phone_number_id", "")
        self._access_token = self._credential("access_token", "")
        self._verify_token = self._credential("verify_token", "")
        self._app_secret = self._credential("app_secret", "")

    @property
    def dry_run(self) -> bool:
        return not (self._access_token and self._phone_number_id)

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                base_url=GRAPH_API_BASE,
                headers={"Authorization": f"Bearer {self._access_token}"},
                timeout=30.0,
            )
        return self._client

    async def connect(self) -> None:
        if self.dry_run:
            logger.warning("whatsapp_dry_run", reason="missing phone_number_id or access_token")
        self._connected = True
        logger.info("whatsapp_connected", phone_number_id=self._phone_number_id or None)

    # ── Webhook verification ──────────────────────────────────

    def verify_webhook(self, params: dict[str, Any]) -> Optional[str]:
        """
        Verify the WhatsApp webhook subscription.
        Returns the challenge string on success, None on failure.
        """
        mode = params.get("hub.mode", "")
        token = params.get("hub.verify_token", "")
        challenge = params.get("hub.challenge", "")

        if mode == "subscribe" and token and token == self._verify_token:
            return challenge
        return None

    def verify_webhook_signature(self, body: bytes, signature: str) -> bool:
        if not self._app_secret:
            return True
        expected = "sha256=" + hmac.new(self._app_secret.encode(), body, hashlib.sha256).hexdigest()
        return hmac.compare_digest(expected, signature or "")

    # ── Send ──────────────────────────────────────────────────

    async def send(self, contact_key: str, text: str) -> dict[str, Any]:
        self._require_connected()
        to = normalize_phone(contact_key).lstrip("+")
        if not to:
            raise ChannelError(f"Invalid WhatsApp contact '{contact_key}'", "whatsapp")

        if self.dry_run:
            msg_id = f"wamid.{uuid.uuid4().hex[:20]}"
            logger.info("whatsapp_text_sent", to=to, msg_id=msg_id, dry_run=True)
            return {"status": "mock_sent", "channel_message_id": msg_id}

        try:
            data = await self._post_message({
                "messaging_product": "whatsapp",
                "to": to,
                "type": "text",
                "text": {"body": text},
            })
        except httpx.HTTPError as e:
            raise ChannelError(f"WhatsApp send failed: {e}", "whatsapp", retryable=True) from e

        msg_id = (data.get("messages") or [{}])[0].get("id", "")
        logger.info("whatsapp_text_sent", to=to, msg_id=msg_id)
        return {"status": "sent", "channel_message_id": msg_id}

    @retry(
        stop=stop_after_attempt(2),
        wait=wait_exponential(multiplier=1, min=1, max=5),
        retry=retry_if_exception_type(httpx.TransportError),
        reraise=True,
    )
    async def _post_message(self, payload: dict[str, Any]) -> dict[str, Any]:
        client = await self._get_client()
        response = await client.post(f"/{self._phone_number_id}/messages", json=payload)
        response.raise_for_status()
        return response.json()

    # ── Inbound parsing ───────────────────────────────────────

    def parse_webhook(self, raw_payload: dict[str, Any]) -> list[InboundMessage]:
        """Parse a WhatsApp Cloud API webhook payload into inbound messages."""
        parsed: list[InboundMessage] = []
        for entry in raw_payload.get("entry", []) or []:
            for change in entry.get("changes", []) or []:
                value = change.get("value", {}) or {}
                # Status updates (delivered/read) carry no messages
                names = {
                    c.get("wa_id", ""): c.get("profile", {}).get("name", "")
                    for c in value.get("contacts", []) or []
                }
                for msg in value.get("messages", []) or []:
                    message = self._parse_message(msg, names)
                    if message is not None:
                        parsed.append(message)
        return parsed

    def _parse_message(self, msg: dict[str, Any], names: dict[str, str]) -> Optional[InboundMessage]:
        sender = msg.get("from", "")
        if not sender:
            return None
        msg_type = msg.get("type", "text")

        if msg_type == "text":
            content = msg.get("text", {}).get("body", "")
        elif msg_type == "interactive":
            interactive = msg.get("interactive", {})
            reply = interactive.get("button_reply") or interactive.get("list_reply") or {}
            content = reply.get("title", "")
        elif msg_type == "button":
            content = msg.get("button", {}).get("text", "")
        elif msg_type in ("image", "video", "document"):
            media = msg.get(msg_type, {})
            content = media.get("caption") or media.get("filename") or f"[{msg_type.title()}]"
        elif msg_type == "location":
            loc = msg.get("location", {})
            content = f"Location: {loc.get('latitude', 0)}, {loc.get('longitude', 0)}"
        elif msg_type == "audio":
            content = "[Voice message]"
        else:
            content = f"[{msg_type}]"

        return InboundMessage(
            sender=sender,
            text=content,
            is_group=bool(msg.get("group_id")),
            message_id=msg.get("id", ""),
            sender_name=names.get(sender, ""),
            metadata={"message_type": msg_type},
        )

    async def handle_webhook(self, raw_payload: dict[str, Any]) -> int:
        """Parse and dispatch a webhook body. Returns the number of messages dispatched."""
        dispatched = 0
        for message in self.parse_webhook(raw_payload):
            if await self.dispatch_inbound(message):
                dispatched += 1
        return dispatched

    # ── Lifecycle ─────────────────────────────────────────────

    async def health_check(self) -> dict[str, Any]:
        base = await super().health_check()
        return {**base, "dry_run": self.dry_run}

    async def shutdown(self) -> None:
        await super().shutdown()
        if self._client is not None and not self._client.is_closed:
            await self._client.aclose()
