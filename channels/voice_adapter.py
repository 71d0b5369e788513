"""
Voice Channel Adapter — outbound phone calls through ElevenLabs Conversational AI.

Provides:
- ElevenLabsClient: agent creation, Twilio outbound call, conversation lookup
- VoiceCallAdapter: voice-call-style ChannelAdapter. A call is one long agent
  turn run by the provider, so the adapter never advances the lifecycle on
  inbound traffic (reply_states is empty); transcripts are recorded only.
- CallStatusPoller: per-call background task that waits for the provider to
  report the call finished, replays the transcript into the router and hands
  the final status to the coordinator.

Flow:
  place_call(instance) → create agent → outbound call → VoiceCallData
  poller: status initiated / in-progress / processing → keep polling
          status done | failed → transcript lines → on_call_finished(id, status)
"""
from __future__ import annotations

import asyncio
import structlog
from typing import Any, Awaitable, Callable, Optional

import httpx
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from channels.base import ChannelAdapter, ChannelError, ChannelKind, InboundMessage
from channels.router import normalize_phone
from models.schemas import ChannelType, ConversationInstance, TranscriptRole, VoiceCallData

logger = structlog.get_logger()

ELEVENLABS_API_BASE = "https://api.elevenlabs.io"
DEFAULT_VOICE_ID = "cjVigY5qzO86Huf0OWal"
CALL_TERMINAL_STATUSES = frozenset({"done", "failed"})


# ══════════════════════════════════════════════════════════════
#  ELEVENLABS CLIENT
# ══════════════════════════════════════════════════════════════

class ElevenLabsClient:
    """Thin async wrapper over the three ElevenLabs endpoints the daemon needs."""

    def __init__(self, api_key: str, client: Optional[httpx.AsyncClient] = None):
        self.api_key = api_key
        self._client = client

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                base_url=ELEVENLABS_API_BASE,
                headers={"xi-api-key": self.api_key},
                timeout=30.0,
            )
        return self._client

    @retry(
        stop=stop_after_attempt(2),
        wait=wait_exponential(multiplier=1, min=1, max=5),
        retry=retry_if_exception_type(httpx.TransportError),
        reraise=True,
    )
    async def _request(self, method: str, path: str, **kwargs) -> dict[str, Any]:
        client = await self._get_client()
        response = await client.request(method, path, **kwargs)
        if response.status_code >= 400:
            logger.error("elevenlabs_api_error", status=response.status_code, path=path,
                         body=response.text[:500])
        response.raise_for_status()
        return response.json()

    async def create_agent(self, prompt: str, first_message: str, voice_id: str = DEFAULT_VOICE_ID,
                           language: str = "en", name: str = "") -> str:
        # Non-English languages need the multilingual turbo model
        tts_model = "eleven_turbo_v2" if language == "en" else "eleven_turbo_v2_5"
        data = await self._request("POST", "/v1/convai/agents/create", json={
            "name": name or "relay-call",
            "conversation_config": {
                "tts": {"model_id": tts_model, "voice_id": voice_id},
                "agent": {
                    "first_message": first_message,
                    "language": language,
                    "prompt": {"prompt": prompt, "llm": "claude-sonnet-4-5", "temperature": 0},
                },
                "conversation": {"max_duration_seconds": 600},
            },
        })
        return data["agent_id"]

    async def outbound_call(self, agent_id: str, phone_number_id: str, to_number: str) -> dict[str, Any]:
        return await self._request("POST", "/v1/convai/twilio/outbound-call", json={
            "agent_id": agent_id,
            "agent_phone_number_id": phone_number_id,
            "to_number": to_number,
        })

    async def get_conversation(self, conversation_id: str) -> dict[str, Any]:
        return await self._request("GET", f"/v1/convai/conversations/{conversation_id}")

    async def aclose(self) -> None:
        if self._client is not None and not self._client.is_closed:
            await self._client.aclose()


# ══════════════════════════════════════════════════════════════
#  VOICE CALL ADAPTER
# ══════════════════════════════════════════════════════════════

def build_call_prompt(instance: ConversationInstance, context: str = "") -> str:
    todos = "\n".join(f"- {t.text}" for t in instance.todos)
    prompt = (
        f"You are a voice agent calling on behalf of relay. Your objective: {instance.objective}\n\n"
        f"Todo items to address:\n{todos}\n\n"
        "Be professional and concise. Work through the todo items during the conversation."
    )
    if context:
        prompt += f"\n\nContext from the earlier chat conversation:\n{context}"
    return prompt


class VoiceCallAdapter(ChannelAdapter):
    """Voice-call-style adapter: outbound calls, transcript-only inbound."""

    channel_type = ChannelType.PHONE
    kind = ChannelKind.VOICE
    reply_states = frozenset()

    def __init__(self, client: Optional[ElevenLabsClient] = None):
        super().__init__()
        self._client = client
        self._phone_number_id: str = ""
        self._default_voice_id: str = DEFAULT_VOICE_ID
        self._default_language: str = "en"

    async def initialize(self, config: dict[str, Any]) -> None:
        await super().initialize(config)
        self._phone_number_id = self._credential("agent_phone_number_id", "")
        self._default_voice_id = self._credential("voice_id", DEFAULT_VOICE_ID)
        self._default_language = self._credential("language", "en")
        if self._client is None and self._credential("api_key"):
            self._client = ElevenLabsClient(self._credential("api_key"))

    @property
    def poll_interval_s(self) -> float:
        return float(self._credential("poll_interval_s", 5))

    async def connect(self) -> None:
        if self._client is None:
            raise ChannelError("ElevenLabs api_key is not configured", "phone")
        self._connected = True
        logger.info("voice_channel_connected", phone_number_id=self._phone_number_id or None)

    @property
    def client(self) -> ElevenLabsClient:
        self._require_connected()
        return self._client

    # ── Calls ─────────────────────────────────────────────────

    async def place_call(
        self,
        to_number: str,
        prompt: str,
        first_message: str,
        voice_id: str = "",
        language: str = "",
        phone_number_id: str = "",
        agent_name: str = "",
    ) -> VoiceCallData:
        client = self.client
        number_id = phone_number_id or self._phone_number_id
        if not number_id:
            raise ChannelError("No agent phone number id configured for outbound calls", "phone")
        try:
            agent_id = await client.create_agent(
                prompt=prompt,
                first_message=first_message,
                voice_id=voice_id or self._default_voice_id,
                language=language or self._default_language,
                name=agent_name,
            )
            result = await client.outbound_call(agent_id, number_id, normalize_phone(to_number))
        except httpx.HTTPError as e:
            raise ChannelError(f"ElevenLabs call failed: {e}", "phone") from e

        call = VoiceCallData(
            agent_id=agent_id,
            conversation_id=result.get("conversation_id", ""),
            call_sid=result.get("callSid") or "",
        )
        logger.info("voice_call_placed", to=to_number, agent_id=agent_id,
                    conversation_id=call.conversation_id)
        return call

    async def place_instance_call(
        self, instance: ConversationInstance, first_message: str = "", context: str = "",
    ) -> VoiceCallData:
        phone_config = instance.channel_data.get("phone_config", {}) or {}
        return await self.place_call(
            to_number=instance.target_contact,
            prompt=build_call_prompt(instance, context),
            first_message=first_message or phone_config.get("first_message")
            or "Hi, I'm calling to follow up on something for you.",
            voice_id=phone_config.get("voice_id", ""),
            language=phone_config.get("language", ""),
            phone_number_id=phone_config.get("phone_number_id", ""),
            agent_name=f"relay-{instance.id[:8]}",
        )

    async def send(self, contact_key: str, text: str) -> dict[str, Any]:
        """Voice has no text send; `text` becomes the opening line of a new call."""
        call = await self.place_call(
            to_number=contact_key,
            prompt="Deliver the opening message, answer briefly, then end the call politely.",
            first_message=text,
        )
        return {"status": "call_placed", **call.model_dump()}

    async def get_call(self, conversation_id: str) -> dict[str, Any]:
        try:
            return await self.client.get_conversation(conversation_id)
        except httpx.HTTPError as e:
            raise ChannelError(f"ElevenLabs lookup failed: {e}", "phone", retryable=True) from e

    async def shutdown(self) -> None:
        await super().shutdown()
        if self._client is not None:
            await self._client.aclose()


# ══════════════════════════════════════════════════════════════
#  CALL STATUS POLLER
# ══════════════════════════════════════════════════════════════

CallFinished = Callable[[str, str], Awaitable[Any]]


class CallStatusPoller:
    """
    Polls each live call until the provider reports it finished.

    One asyncio task per instance; start() replaces any existing poller
    for the same instance.
    """

    def __init__(
        self,
        adapter: VoiceCallAdapter,
        on_call_finished: CallFinished,
        poll_interval_s: Optional[float] = None,
    ):
        self.adapter = adapter
        self._on_call_finished = on_call_finished
        self._poll_interval_s = poll_interval_s
        self._tasks: dict[str, asyncio.Task] = {}

    @property
    def poll_interval_s(self) -> float:
        if self._poll_interval_s is not None:
            return self._poll_interval_s
        return self.adapter.poll_interval_s

    def start(self, instance_id: str, conversation_id: str) -> None:
        self.stop(instance_id)
        self._tasks[instance_id] = asyncio.create_task(
            self._poll_loop(instance_id, conversation_id), name=f"call_poller:{instance_id}",
        )
        logger.info("call_poller_started", instance_id=instance_id, conversation_id=conversation_id)

    def stop(self, instance_id: str) -> bool:
        task = self._tasks.pop(instance_id, None)
        if task is None:
            return False
        if task is not asyncio.current_task() and not task.done():
            task.cancel()
        logger.debug("call_poller_stopped", instance_id=instance_id)
        return True

    async def stop_for_terminal(self, instance_id: str) -> None:
        """Terminal hook."""
        self.stop(instance_id)

    @property
    def active_count(self) -> int:
        return len(self._tasks)

    async def stop_all(self) -> None:
        tasks = list(self._tasks.values())
        self._tasks.clear()
        for task in tasks:
            task.cancel()
        for task in tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
        logger.info("call_pollers_stopped", count=len(tasks))

    async def reconstruct(self, instances: list[ConversationInstance]) -> int:
        started = 0
        for inst in instances:
            if inst.voice_call and inst.voice_call.conversation_id:
                self.start(inst.id, inst.voice_call.conversation_id)
                started += 1
        logger.info("call_pollers_reconstructed", count=started)
        return started

    async def _poll_loop(self, instance_id: str, conversation_id: str) -> None:
        while True:
            try:
                if await self.poll_once(instance_id, conversation_id):
                    break
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error("call_poll_error", instance_id=instance_id, error=str(e))
            await asyncio.sleep(self.poll_interval_s)
        self._tasks.pop(instance_id, None)

    async def poll_once(self, instance_id: str, conversation_id: str) -> bool:
        """Returns True once the call has finished and been handed off."""
        conv = await self.adapter.get_call(conversation_id)
        status = conv.get("status", "")
        logger.debug("call_polled", instance_id=instance_id, status=status)
        if status not in CALL_TERMINAL_STATUSES:
            return False

        for entry in conv.get("transcript") or []:
            text = entry.get("message")
            if not text:
                continue
            await self.adapter.dispatch_inbound(InboundMessage(
                sender=conversation_id,
                text=text,
                role=TranscriptRole.AGENT if entry.get("role") == "agent" else TranscriptRole.CONTACT,
                instance_id=instance_id,
            ))

        await self._on_call_finished(instance_id, status)
        return True
