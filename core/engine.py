"""
Agent Runtime — LLM-backed sessions that drive one instance each.

A session holds the system prompt (objective, todos, channel rules and the
transcript so far) plus the running message history. submit_turn() feeds one
user-side text into the session and runs the tool loop until the model stops
calling tools or the round limit is reached. The model talks to the contact
only through the send_message tool.

Supports both Anthropic and OpenAI, chosen by settings.llm.provider.
Errors from the provider propagate to the caller (TurnRunner) unchanged so
they can be classified.
"""
from __future__ import annotations

import abc
import json
import structlog
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

from config.settings import LLMConfig
from core.tools import AgentToolbox
from lifecycle.errors import AgentTurnError, TurnFailureKind
from models.schemas import ChannelType, ConversationInstance, TranscriptMessage, TranscriptRole

logger = structlog.get_logger()


class AgentRuntime(abc.ABC):
    """Contract the coordinator relies on. Implementations may be swapped in tests."""

    @abc.abstractmethod
    async def create_session(self, instance: ConversationInstance,
                             transcript: list[TranscriptMessage]) -> None:
        ...

    @abc.abstractmethod
    async def submit_turn(self, instance_id: str, text: str) -> None:
        """Run one turn. Raises on failure."""
        ...

    @abc.abstractmethod
    async def destroy_session(self, instance_id: str) -> None:
        ...

    @abc.abstractmethod
    def has_session(self, instance_id: str) -> bool:
        ...

    async def destroy_all(self) -> None:
        ...

    @property
    def session_count(self) -> int:
        return 0


# ──────────────────────────────────────────────────────────────
#  Prompt construction
# ──────────────────────────────────────────────────────────────

_CHANNEL_NAMES = {
    ChannelType.WHATSAPP: "WhatsApp",
    ChannelType.TELEGRAM: "Telegram",
    ChannelType.PHONE: "phone",
}


def _load_file(path: str) -> str:
    if not path:
        return ""
    try:
        return Path(path).read_text(encoding="utf-8").strip()
    except OSError as e:
        logger.warning("prompt_file_unreadable", path=path, error=str(e))
        return ""


def build_system_prompt(instance: ConversationInstance, template: str = "", preamble: str = "") -> str:
    todos = "\n".join(f"- [{t.status.value}] {t.text} (id: {t.id})" for t in instance.todos)
    channel = _CHANNEL_NAMES.get(instance.channel, instance.channel.value)
    body = template or """You are a conversation agent executing a specific objective via {{channel}}.

OBJECTIVE: {{objective}}

TODO LIST:
{{todos}}

RULES:
- Only discuss topics related to the objective
- Never reveal you are an AI agent unless asked directly
- Be professional and concise
- Use send_message to send messages to the contact
- Use mark_todo_item to update todo statuses when information is gathered
- Use end_conversation when all todos are complete or the objective is fulfilled
- If you cannot proceed, use request_human_intervention
- If a phone call would be more effective and escalate_to_call is available, use it
- Always call send_message to communicate. Plain text output never reaches the contact"""

    prompt = body.replace(
        "{{channel}}", channel
    ).replace(
        "{{objective}}", instance.objective
    ).replace(
        "{{todos}}", todos or "(no todo items)"
    )
    return f"{preamble}\n\n{prompt}" if preamble else prompt


def build_transcript_context(transcript: list[TranscriptMessage]) -> str:
    if not transcript:
        return ""
    labels = {TranscriptRole.AGENT: "You", TranscriptRole.CONTACT: "Contact"}
    lines = [f"[{labels.get(m.role, m.role.value)}]: {m.content}" for m in transcript]
    return "\nCONVERSATION HISTORY:\n" + "\n".join(lines)


# ──────────────────────────────────────────────────────────────
#  LLM runtime
# ──────────────────────────────────────────────────────────────

@dataclass
class AgentSession:
    instance_id: str
    system_prompt: str
    messages: list[dict[str, Any]] = field(default_factory=list)
    turns: int = 0


class LLMAgentRuntime(AgentRuntime):

    def __init__(self, config: LLMConfig, toolbox: AgentToolbox, client: Any = None):
        self.config = config
        self.toolbox = toolbox
        self._client = client
        self._provider = config.provider or "anthropic"
        self._sessions: dict[str, AgentSession] = {}

    @property
    def is_openai(self) -> bool:
        return self._provider == "openai"

    def _get_client(self):
        if self._client is None:
            if not self.config.api_key:
                raise AgentTurnError(TurnFailureKind.AUTH_FAILURE, f"No API key configured for {self._provider}")
            if self.is_openai:
                from openai import AsyncOpenAI
                self._client = AsyncOpenAI(api_key=self.config.api_key)
            else:
                import anthropic
                self._client = anthropic.AsyncAnthropic(api_key=self.config.api_key)
            logger.info("llm_client_initialized", provider=self._provider, model=self.config.model)
        return self._client

    # ── Sessions ──────────────────────────────────────────────

    async def create_session(self, instance: ConversationInstance,
                             transcript: list[TranscriptMessage]) -> None:
        preamble = "\n\n".join(filter(None, [
            _load_file(self.config.identity_file),
            _load_file(self.config.soul_file),
        ]))
        prompt = build_system_prompt(instance, self.config.system_prompt_template, preamble)
        prompt += build_transcript_context(transcript)
        self._sessions[instance.id] = AgentSession(instance_id=instance.id, system_prompt=prompt)
        logger.info("agent_session_created",
                    instance_id=instance.id,
                    provider=self._provider,
                    prompt_length=len(prompt))

    def has_session(self, instance_id: str) -> bool:
        return instance_id in self._sessions

    async def destroy_session(self, instance_id: str) -> None:
        if self._sessions.pop(instance_id, None) is not None:
            logger.debug("agent_session_destroyed", instance_id=instance_id)

    async def destroy_all(self) -> None:
        count = len(self._sessions)
        self._sessions.clear()
        logger.info("agent_sessions_destroyed", count=count)

    @property
    def session_count(self) -> int:
        return len(self._sessions)

    # ── Turns ─────────────────────────────────────────────────

    async def submit_turn(self, instance_id: str, text: str) -> None:
        session = self._sessions.get(instance_id)
        if session is None:
            raise AgentTurnError(TurnFailureKind.OTHER, f"No agent session for instance {instance_id}")
        session.turns += 1
        mark = len(session.messages)
        session.messages.append({"role": "user", "content": text})
        try:
            if self.is_openai:
                await self._run_openai_loop(session)
            else:
                await self._run_anthropic_loop(session)
        except BaseException:
            # Drop the partial exchange so a retry starts from a clean history
            del session.messages[mark:]
            raise

    async def _run_anthropic_loop(self, session: AgentSession) -> None:
        client = self._get_client()
        for round_no in range(self.config.max_tool_rounds):
            response = await client.messages.create(
                model=self.config.model,
                max_tokens=self.config.max_tokens,
                temperature=self.config.temperature,
                system=session.system_prompt,
                tools=self.toolbox.anthropic_tools(),
                messages=session.messages,
            )
            content = []
            tool_uses = []
            for block in response.content:
                if block.type == "text":
                    content.append({"type": "text", "text": block.text})
                elif block.type == "tool_use":
                    content.append({"type": "tool_use", "id": block.id, "name": block.name, "input": block.input})
                    tool_uses.append(block)
            session.messages.append({"role": "assistant", "content": content})

            logger.debug("agent_round", instance_id=session.instance_id, round=round_no,
                         stop_reason=response.stop_reason, tool_calls=len(tool_uses))
            if response.stop_reason != "tool_use" or not tool_uses:
                return

            results = []
            for block in tool_uses:
                output = await self.toolbox.execute(session.instance_id, block.name, block.input)
                results.append({"type": "tool_result", "tool_use_id": block.id, "content": output})
            session.messages.append({"role": "user", "content": results})

        logger.warning("agent_max_tool_rounds", instance_id=session.instance_id,
                       rounds=self.config.max_tool_rounds)

    async def _run_openai_loop(self, session: AgentSession) -> None:
        client = self._get_client()
        for round_no in range(self.config.max_tool_rounds):
            response = await client.chat.completions.create(
                model=self.config.model,
                max_tokens=self.config.max_tokens,
                temperature=self.config.temperature,
                tools=self.toolbox.openai_tools(),
                messages=[{"role": "system", "content": session.system_prompt}] + session.messages,
            )
            message = response.choices[0].message
            tool_calls = message.tool_calls or []
            entry: dict[str, Any] = {"role": "assistant", "content": message.content}
            if tool_calls:
                entry["tool_calls"] = [
                    {"id": tc.id, "type": "function",
                     "function": {"name": tc.function.name, "arguments": tc.function.arguments}}
                    for tc in tool_calls
                ]
            session.messages.append(entry)

            logger.debug("agent_round", instance_id=session.instance_id, round=round_no,
                         tool_calls=len(tool_calls))
            if not tool_calls:
                return

            for tc in tool_calls:
                try:
                    args = json.loads(tc.function.arguments or "{}")
                except json.JSONDecodeError:
                    args = {}
                output = await self.toolbox.execute(session.instance_id, tc.function.name, args)
                session.messages.append({"role": "tool", "tool_call_id": tc.id, "content": output})

        logger.warning("agent_max_tool_rounds", instance_id=session.instance_id,
                       rounds=self.config.max_tool_rounds)
