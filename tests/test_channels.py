"""
Tests for the channel adapters:
- Base infrastructure (deduplication, sanitizing, registry)
- WhatsApp webhook parsing, verification and sends
- Telegram updates, chat-id mapping and sends
- ElevenLabs voice calls and the call status poller
"""
import hashlib
import hmac
import pytest
import pytest_asyncio
from unittest.mock import AsyncMock, patch

import httpx

from channels.base import (
    ChannelError, ChannelRegistry, ChannelUnavailableError, InputSanitizer, MessageDeduplicator,
)
from channels.telegram_adapter import TelegramAdapter
from channels.voice_adapter import CallStatusPoller, ElevenLabsClient, VoiceCallAdapter, build_call_prompt
from channels.whatsapp_adapter import WhatsAppAdapter
from models.schemas import (
    ChannelType, ConversationInstance, InstanceState, TodoItem, TranscriptRole, VoiceCallData,
)


def _wa_payload(sender="56912345678", text="hola", msg_id="wamid.1", **msg_fields):
    msg = {"from": sender, "id": msg_id, "type": "text", "text": {"body": text}, **msg_fields}
    return {"entry": [{"changes": [{"value": {
        "contacts": [{"wa_id": sender, "profile": {"name": "Ana"}}],
        "messages": [msg],
    }}]}]}


# ══════════════════════════════════════════════════════════════
#  Base infrastructure
# ══════════════════════════════════════════════════════════════

class TestBaseInfrastructure:
    def test_deduplicator(self):
        dedup = MessageDeduplicator(ttl_seconds=60)
        assert not dedup.is_duplicate("a")
        assert dedup.is_duplicate("a")

    def test_sanitizer(self):
        s = InputSanitizer(max_length=10)
        assert s.sanitize("  hi\x00there\x07 ") == "hithere"
        assert s.sanitize("x" * 20).endswith("... [truncated]")
        assert s.sanitize("") == ""

    @pytest.mark.asyncio
    async def test_credential_ignores_unresolved_placeholders(self):
        adapter = WhatsAppAdapter()
        await adapter.initialize({"access_token": "${WHATSAPP_ACCESS_TOKEN}", "phone_number_id": "123"})
        assert adapter._credential("access_token") == ""
        assert adapter._credential("phone_number_id") == "123"
        assert adapter.dry_run

    @pytest.mark.asyncio
    async def test_registry(self, make_adapter):
        registry = ChannelRegistry()
        wa = make_adapter(ChannelType.WHATSAPP)
        tg = make_adapter(ChannelType.TELEGRAM, fail_connect=True)
        registry.register(wa)
        registry.register(tg)

        await registry.connect_all()
        assert registry.get_connected() == [ChannelType.WHATSAPP]
        health = await registry.health_check_all()
        assert health["telegram"]["connected"] is False

        await registry.shutdown_all()
        assert registry.get_connected() == []


# ══════════════════════════════════════════════════════════════
#  WhatsApp
# ══════════════════════════════════════════════════════════════

class TestWhatsApp:
    @pytest_asyncio.fixture
    async def adapter(self):
        wa = WhatsAppAdapter()
        await wa.initialize({
            "phone_number_id": "pn_1", "access_token": "tok",
            "verify_token": "verify-me", "app_secret": "s3cret",
        })
        await wa.connect()
        return wa

    def test_parse_text(self):
        wa = WhatsAppAdapter()
        [msg] = wa.parse_webhook(_wa_payload())
        assert msg.sender == "56912345678"
        assert msg.text == "hola"
        assert msg.sender_name == "Ana"
        assert msg.message_id == "wamid.1"
        assert not msg.is_group

    def test_parse_message_types(self):
        wa = WhatsAppAdapter()
        interactive = _wa_payload()
        interactive["entry"][0]["changes"][0]["value"]["messages"] = [
            {"from": "1", "id": "a", "type": "interactive",
             "interactive": {"button_reply": {"title": "Yes"}}},
            {"from": "1", "id": "b", "type": "image", "image": {"caption": "invoice"}},
            {"from": "1", "id": "c", "type": "audio", "audio": {}},
            {"from": "1", "id": "d", "type": "location", "location": {"latitude": 1.5, "longitude": 2}},
        ]
        texts = [m.text for m in wa.parse_webhook(interactive)]
        assert texts == ["Yes", "invoice", "[Voice message]", "Location: 1.5, 2"]

    def test_group_messages_flagged(self):
        wa = WhatsAppAdapter()
        [msg] = wa.parse_webhook(_wa_payload(group_id="120363@g.us"))
        assert msg.is_group

    def test_status_updates_yield_nothing(self):
        wa = WhatsAppAdapter()
        payload = {"entry": [{"changes": [{"value": {"statuses": [{"status": "read"}]}}]}]}
        assert wa.parse_webhook(payload) == []

    @pytest.mark.asyncio
    async def test_verify_webhook(self, adapter):
        params = {"hub.mode": "subscribe", "hub.verify_token": "verify-me", "hub.challenge": "42"}
        assert adapter.verify_webhook(params) == "42"
        assert adapter.verify_webhook({**params, "hub.verify_token": "wrong"}) is None

    @pytest.mark.asyncio
    async def test_signature(self, adapter):
        body = b'{"entry": []}'
        good = "sha256=" + hmac.new(b"s3cret", body, hashlib.sha256).hexdigest()
        assert adapter.verify_webhook_signature(body, good)
        assert not adapter.verify_webhook_signature(body, "sha256=deadbeef")
        assert not adapter.verify_webhook_signature(body, "")

    @pytest.mark.asyncio
    async def test_send(self, adapter):
        with patch.object(adapter, "_post_message", AsyncMock(return_value={"messages": [{"id": "wamid.X"}]})) as post:
            result = await adapter.send("+56 9 1234 5678", "Hola!")
        assert result == {"status": "sent", "channel_message_id": "wamid.X"}
        payload = post.await_args.args[0]
        assert payload["to"] == "56912345678"
        assert payload["text"] == {"body": "Hola!"}

    @pytest.mark.asyncio
    async def test_send_http_error_becomes_channel_error(self, adapter):
        with patch.object(adapter, "_post_message", AsyncMock(side_effect=httpx.ConnectError("down"))):
            with pytest.raises(ChannelError) as exc:
                await adapter.send("+1", "hi")
        assert exc.value.retryable

    @pytest.mark.asyncio
    async def test_dry_run_send(self):
        wa = WhatsAppAdapter()
        await wa.initialize({})
        await wa.connect()
        result = await wa.send("+1", "hi")
        assert result["status"] == "mock_sent"

    @pytest.mark.asyncio
    async def test_send_requires_connection(self):
        wa = WhatsAppAdapter()
        with pytest.raises(ChannelUnavailableError):
            await wa.send("+1", "hi")

    @pytest.mark.asyncio
    async def test_handle_webhook_dispatches_once(self, adapter):
        received = []

        async def on_message(msg):
            received.append(msg)

        adapter.on_message(on_message)
        assert await adapter.handle_webhook(_wa_payload()) == 1
        assert await adapter.handle_webhook(_wa_payload()) == 0
        assert len(received) == 1


# ══════════════════════════════════════════════════════════════
#  Telegram
# ══════════════════════════════════════════════════════════════

def _tg_update(chat_id=777, text="hola", chat_type="private", message_id=1, **msg_fields):
    msg = {"message_id": message_id, "chat": {"id": chat_id, "type": chat_type},
           "from": {"first_name": "Ana", "last_name": "Rojas"}, "date": 1700000000, **msg_fields}
    if text is not None:
        msg["text"] = text
    return {"update_id": 1, "message": msg}


class TestTelegram:
    @pytest_asyncio.fixture
    async def adapter(self):
        tg = TelegramAdapter()
        await tg.initialize({"bot_token": "123:abc"})
        with patch.object(tg, "_call", AsyncMock(return_value={"username": "relay_bot"})):
            await tg.connect()
        return tg

    @pytest.mark.asyncio
    async def test_connect_requires_token(self):
        tg = TelegramAdapter()
        await tg.initialize({"bot_token": "${TELEGRAM_BOT_TOKEN}"})
        with pytest.raises(ChannelError):
            await tg.connect()

    @pytest.mark.asyncio
    async def test_connect_reads_bot_info(self, adapter):
        assert adapter.is_connected()
        assert adapter.bot_info["username"] == "relay_bot"

    def test_parse_text_message(self):
        tg = TelegramAdapter()
        msg = tg.parse_update(_tg_update())
        assert msg.chat_id == "777"
        assert msg.sender == "777"
        assert msg.sender_name == "Ana Rojas"
        assert msg.message_id == "tg:777:1"
        assert msg.timestamp.startswith("2023-11-14")
        assert tg.recent_chat_ids() == ["777"]

    def test_contact_share_registers_mapping(self):
        tg = TelegramAdapter()
        share = _tg_update(text=None, contact={"phone_number": "56912345678"})
        assert tg.parse_update(share) is None
        assert tg.resolver.chat_for_contact("+56912345678") == "777"
        assert tg.parse_update(_tg_update()).sender == "+56912345678"

    def test_group_chat_flagged_and_not_remembered(self):
        tg = TelegramAdapter()
        msg = tg.parse_update(_tg_update(chat_id=-100, chat_type="supergroup"))
        assert msg.is_group
        assert tg.recent_chat_ids() == []

    def test_discover_chat_id(self):
        tg = TelegramAdapter()
        assert tg.discover_chat_id("+100") is None
        tg.parse_update(_tg_update(chat_id=1))
        assert tg.discover_chat_id("+100") == "1"
        tg.parse_update(_tg_update(chat_id=2))
        assert tg.discover_chat_id("+100") is None
        tg.resolver.register_mapping("+100", "2")
        assert tg.discover_chat_id("+100") == "2"

    def test_register_instance(self):
        tg = TelegramAdapter()
        inst = ConversationInstance(objective="x", target_contact="+100", channel=ChannelType.TELEGRAM,
                                    channel_data={"telegram_chat_id": "555"})
        tg.register_instance(inst)
        assert tg.resolver.chat_for_contact("+100") == "555"

    @pytest.mark.asyncio
    async def test_send_uses_mapped_chat(self, adapter):
        adapter.resolver.register_mapping("+100", "555")
        with patch.object(adapter, "_call", AsyncMock(return_value={"message_id": 9})) as call:
            result = await adapter.send("+100", "Hola!")
        call.assert_awaited_once_with("sendMessage", {"chat_id": 555, "text": "Hola!"})
        assert result["channel_message_id"] == "9"

    @pytest.mark.asyncio
    async def test_send_without_chat_fails(self, adapter):
        with pytest.raises(ChannelError, match="must message the bot first"):
            await adapter.send("+999", "hi")

    @pytest.mark.asyncio
    async def test_handle_update(self, adapter):
        received = []

        async def on_message(msg):
            received.append(msg)

        adapter.on_message(on_message)
        assert await adapter.handle_update(_tg_update())
        assert not await adapter.handle_update(_tg_update())
        assert not await adapter.handle_update({"update_id": 5, "edited_message": {}})
        assert len(received) == 1


# ══════════════════════════════════════════════════════════════
#  Voice
# ══════════════════════════════════════════════════════════════

def _instance(**fields):
    return ConversationInstance(
        objective="Confirm the delivery address",
        target_contact="+100",
        channel=ChannelType.PHONE,
        todos=[TodoItem(text="Ask for the street address")],
        **fields,
    )


class TestElevenLabsClient:
    @pytest.mark.asyncio
    async def test_create_agent_payload(self):
        client = ElevenLabsClient("key")
        with patch.object(client, "_request", AsyncMock(return_value={"agent_id": "agent_1"})) as req:
            agent_id = await client.create_agent("prompt", "Hola", language="es")
        assert agent_id == "agent_1"
        method, path = req.await_args.args
        body = req.await_args.kwargs["json"]
        assert (method, path) == ("POST", "/v1/convai/agents/create")
        assert body["conversation_config"]["tts"]["model_id"] == "eleven_turbo_v2_5"
        assert body["conversation_config"]["agent"]["first_message"] == "Hola"

    @pytest.mark.asyncio
    async def test_english_uses_turbo_v2(self):
        client = ElevenLabsClient("key")
        with patch.object(client, "_request", AsyncMock(return_value={"agent_id": "a"})) as req:
            await client.create_agent("prompt", "Hi")
        assert req.await_args.kwargs["json"]["conversation_config"]["tts"]["model_id"] == "eleven_turbo_v2"


class TestVoiceCallAdapter:
    def test_call_prompt(self):
        prompt = build_call_prompt(_instance(), context="[Contact]: hi")
        assert "Confirm the delivery address" in prompt
        assert "- Ask for the street address" in prompt
        assert "[Contact]: hi" in prompt

    @pytest.mark.asyncio
    async def test_connect_requires_api_key(self):
        voice = VoiceCallAdapter()
        await voice.initialize({"api_key": "${ELEVENLABS_API_KEY}"})
        with pytest.raises(ChannelError):
            await voice.connect()

    @pytest.mark.asyncio
    async def test_place_call_requires_phone_number_id(self):
        voice = VoiceCallAdapter(client=AsyncMock())
        await voice.initialize({})
        await voice.connect()
        with pytest.raises(ChannelError, match="phone number id"):
            await voice.place_call("+100", "prompt", "Hi")

    @pytest.mark.asyncio
    async def test_place_instance_call_uses_phone_config(self):
        client = AsyncMock()
        client.create_agent.return_value = "agent_1"
        client.outbound_call.return_value = {"conversation_id": "conv_1", "callSid": "CA1"}
        voice = VoiceCallAdapter(client=client)
        await voice.initialize({"agent_phone_number_id": "pn_default"})
        await voice.connect()

        call = await voice.place_instance_call(_instance(channel_data={"phone_config": {
            "first_message": "Hola", "language": "es", "phone_number_id": "pn_override",
        }}))

        assert call.conversation_id == "conv_1"
        assert call.call_sid == "CA1"
        kwargs = client.create_agent.await_args.kwargs
        assert kwargs["first_message"] == "Hola"
        assert kwargs["language"] == "es"
        client.outbound_call.assert_awaited_once_with("agent_1", "pn_override", "+100")

    def test_reply_states_empty(self):
        assert VoiceCallAdapter.reply_states == frozenset()


class TestCallStatusPoller:
    @pytest_asyncio.fixture
    async def voice(self):
        client = AsyncMock()
        voice = VoiceCallAdapter(client=client)
        await voice.initialize({"agent_phone_number_id": "pn"})
        await voice.connect()
        return voice

    @pytest.mark.asyncio
    async def test_in_progress_keeps_polling(self, voice):
        voice._client.get_conversation.return_value = {"status": "in-progress"}
        finished = AsyncMock()
        poller = CallStatusPoller(voice, finished, poll_interval_s=0)
        assert not await poller.poll_once("i1", "conv_1")
        finished.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_done_replays_transcript_then_reports(self, voice):
        voice._client.get_conversation.return_value = {"status": "done", "transcript": [
            {"role": "agent", "message": "Hi!"},
            {"role": "user", "message": "Hello"},
            {"role": "user", "message": None},
        ]}
        received = []

        async def on_message(msg):
            received.append(msg)

        voice.on_message(on_message)
        finished = AsyncMock()
        poller = CallStatusPoller(voice, finished, poll_interval_s=0)

        assert await poller.poll_once("i1", "conv_1")
        assert [(m.role, m.text, m.instance_id) for m in received] == [
            (TranscriptRole.AGENT, "Hi!", "i1"),
            (TranscriptRole.CONTACT, "Hello", "i1"),
        ]
        finished.assert_awaited_once_with("i1", "done")

    @pytest.mark.asyncio
    async def test_poll_loop_finishes_and_forgets_task(self, voice):
        voice._client.get_conversation.side_effect = [
            httpx.ConnectError("blip"),
            {"status": "processing"},
            {"status": "failed"},
        ]
        finished = AsyncMock()
        poller = CallStatusPoller(voice, finished, poll_interval_s=0)
        poller.start("i1", "conv_1")
        await poller._tasks["i1"]
        finished.assert_awaited_once_with("i1", "failed")
        assert poller.active_count == 0

    @pytest.mark.asyncio
    async def test_reconstruct_and_stop_all(self, voice):
        voice._client.get_conversation.return_value = {"status": "in-progress"}
        poller = CallStatusPoller(voice, AsyncMock(), poll_interval_s=60)
        started = await poller.reconstruct([
            _instance(state=InstanceState.ACTIVE, voice_call=VoiceCallData(conversation_id="c1")),
            _instance(state=InstanceState.ACTIVE),
        ])
        assert started == 1
        await poller.stop_all()
        assert poller.active_count == 0
