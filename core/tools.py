"""
Agent Toolbox — the callbacks an agent session uses to act on its instance.

Every tool is scoped to one instance id and reports back a JSON string the
model can read ({"success": true, ...} or {"success": false, "error": ...}).
Tools never raise into the agent loop.

Tools:
  send_message               → channel send, agent transcript entry, message_sent
  mark_todo_item             → update one todo's status
  end_conversation           → end_conversation
  request_human_intervention → request_intervention
  schedule_next_heartbeat    → one-shot heartbeat delay override
  escalate_to_call           → voice call carrying the chat context (voice channel only)
"""
from __future__ import annotations

import json
import structlog
from typing import TYPE_CHECKING, Any, Optional

from pydantic import BaseModel

from channels.base import ChannelAdapter, ChannelError, ChannelRegistry
from lifecycle.heartbeat import HeartbeatScheduler
from lifecycle.state_machine import InstanceStateMachine, can_transition
from models.schemas import (
    ChannelType, ConversationInstance, StateEvent, TodoStatus, TranscriptMessage,
    TranscriptRole,
)

if TYPE_CHECKING:
    from database.store_base import BaseInstanceStore, BaseTranscriptStore

logger = structlog.get_logger()


class ToolSchema(BaseModel):
    """Describes one callable tool for the model."""
    name: str
    description: str
    input_schema: dict[str, Any] = {}
    requires_voice: bool = False                  # only offered when a voice channel is connected


TOOL_SCHEMAS: list[ToolSchema] = [
    ToolSchema(
        name="send_message",
        description="Send a text message to the contact on the conversation's channel.",
        input_schema={
            "type": "object",
            "properties": {
                "text": {"type": "string", "description": "The text message to send to the contact"},
            },
            "required": ["text"],
        },
    ),
    ToolSchema(
        name="mark_todo_item",
        description="Update the status of a todo item. Valid statuses: pending, in_progress, completed, skipped.",
        input_schema={
            "type": "object",
            "properties": {
                "todo_id": {"type": "string", "description": "The ID of the todo item to update"},
                "status": {"type": "string", "enum": [s.value for s in TodoStatus],
                           "description": "The new status"},
            },
            "required": ["todo_id", "status"],
        },
    ),
    ToolSchema(
        name="end_conversation",
        description="Mark the conversation as completed.",
        input_schema={
            "type": "object",
            "properties": {
                "reason": {"type": "string", "description": "The reason for ending the conversation"},
            },
            "required": ["reason"],
        },
    ),
    ToolSchema(
        name="request_human_intervention",
        description="Flag the conversation for human review.",
        input_schema={
            "type": "object",
            "properties": {
                "reason": {"type": "string", "description": "The reason human intervention is needed"},
            },
            "required": ["reason"],
        },
    ),
    ToolSchema(
        name="schedule_next_heartbeat",
        description="Override the delay before the next heartbeat fires. Applies once.",
        input_schema={
            "type": "object",
            "properties": {
                "delay_ms": {"type": "number", "description": "Delay in milliseconds before the next heartbeat"},
            },
            "required": ["delay_ms"],
        },
    ),
    ToolSchema(
        name="escalate_to_call",
        description=(
            "Escalate the current chat conversation to a live phone call. A voice agent "
            "receives the full conversation context and calls the contact. Use when a call "
            "would be more effective than texting."
        ),
        input_schema={
            "type": "object",
            "properties": {
                "reason": {"type": "string", "description": "Why you are escalating to a phone call"},
                "extra_context": {"type": "string",
                                  "description": "Additional instructions for the voice agent"},
                "first_message": {"type": "string",
                                  "description": "What the voice agent says when the contact picks up"},
                "language": {"type": "string", "description": "Language code, e.g. 'en' or 'es'. Defaults to 'en'"},
            },
            "required": ["reason", "first_message"],
        },
        requires_voice=True,
    ),
]


def _ok(**data) -> str:
    return json.dumps({"success": True, **data})


def _fail(error: str) -> str:
    return json.dumps({"success": False, "error": error})


class AgentToolbox:
    """Executes tool calls against the stores, the state machine and the channels."""

    def __init__(
        self,
        store: "BaseInstanceStore",
        transcripts: "BaseTranscriptStore",
        state_machine: InstanceStateMachine,
        heartbeat: HeartbeatScheduler,
        channels: ChannelRegistry,
    ):
        self.store = store
        self.transcripts = transcripts
        self.state_machine = state_machine
        self.heartbeat = heartbeat
        self.channels = channels
        self._handlers = {
            "send_message": self._send_message,
            "mark_todo_item": self._mark_todo_item,
            "end_conversation": self._end_conversation,
            "request_human_intervention": self._request_human_intervention,
            "schedule_next_heartbeat": self._schedule_next_heartbeat,
            "escalate_to_call": self._escalate_to_call,
        }

    # ── Catalog ───────────────────────────────────────────────

    def _voice_adapter(self) -> Optional[ChannelAdapter]:
        adapter = self.channels.get(ChannelType.PHONE)
        return adapter if adapter is not None and adapter.is_connected() else None

    def available(self) -> list[ToolSchema]:
        has_voice = self._voice_adapter() is not None
        return [t for t in TOOL_SCHEMAS if has_voice or not t.requires_voice]

    def anthropic_tools(self) -> list[dict[str, Any]]:
        return [
            {"name": t.name, "description": t.description, "input_schema": t.input_schema}
            for t in self.available()
        ]

    def openai_tools(self) -> list[dict[str, Any]]:
        return [
            {"type": "function",
             "function": {"name": t.name, "description": t.description, "parameters": t.input_schema}}
            for t in self.available()
        ]

    # ── Execution ─────────────────────────────────────────────

    async def execute(self, instance_id: str, name: str, args: dict[str, Any]) -> str:
        handler = self._handlers.get(name)
        if handler is None:
            return _fail(f"Unknown tool: {name}")
        instance = await self.store.get_by_id(instance_id)
        if instance is None:
            return _fail("Instance not found")
        try:
            return await handler(instance, args or {})
        except ChannelError as e:
            logger.error("tool_channel_error", instance_id=instance_id, tool=name, error=str(e))
            return _fail(str(e))
        except (KeyError, TypeError, ValueError) as e:
            logger.warning("tool_bad_arguments", instance_id=instance_id, tool=name, error=str(e))
            return _fail(f"Invalid arguments for {name}: {e}")

    async def deliver(self, instance: ConversationInstance, text: str,
                      role: TranscriptRole = TranscriptRole.AGENT) -> TranscriptMessage:
        """Send `text` on the instance's channel and record it in the transcript."""
        adapter = self.channels.get(instance.channel)
        if adapter is None:
            raise ChannelError(f"Channel {instance.channel.value} is not configured", instance.channel.value)
        adapter.register_instance(instance)
        await adapter.send(instance.target_contact, text)
        return await self.transcripts.append(TranscriptMessage(
            instance_id=instance.id, role=role, content=text,
        ))

    async def _send_message(self, instance: ConversationInstance, args: dict[str, Any]) -> str:
        text = args["text"]
        await self.deliver(instance, text)

        current = await self.store.get_by_id(instance.id)
        if current is not None and can_transition(current.state, StateEvent.MESSAGE_SENT):
            result = await self.state_machine.transition(instance.id, StateEvent.MESSAGE_SENT)
            if not result:
                logger.warning("send_message_transition_failed", instance_id=instance.id, error=str(result.error))
        logger.info("agent_message_sent", instance_id=instance.id, length=len(text))
        return _ok()

    async def _mark_todo_item(self, instance: ConversationInstance, args: dict[str, Any]) -> str:
        todo_id, status = args["todo_id"], TodoStatus(args["status"])
        todos = [t.model_copy() for t in instance.todos]
        todo = next((t for t in todos if t.id == todo_id), None)
        if todo is None:
            return _fail(f"Todo not found: {todo_id}")
        todo.status = status
        await self.store.update(instance.id, todos=todos)
        logger.info("todo_item_updated", instance_id=instance.id, todo_id=todo_id, status=status.value)
        return _ok(todo_id=todo_id, new_status=status.value)

    async def _end_conversation(self, instance: ConversationInstance, args: dict[str, Any]) -> str:
        result = await self.state_machine.transition(instance.id, StateEvent.END_CONVERSATION)
        if not result:
            return _fail(str(result.error))
        logger.info("conversation_ended", instance_id=instance.id, reason=args.get("reason", ""))
        return _ok(reason=args.get("reason", ""))

    async def _request_human_intervention(self, instance: ConversationInstance, args: dict[str, Any]) -> str:
        result = await self.state_machine.transition(instance.id, StateEvent.REQUEST_INTERVENTION)
        if not result:
            return _fail(str(result.error))
        logger.info("human_intervention_requested", instance_id=instance.id, reason=args.get("reason", ""))
        return _ok(reason=args.get("reason", ""))

    async def _schedule_next_heartbeat(self, instance: ConversationInstance, args: dict[str, Any]) -> str:
        delay_ms = int(args["delay_ms"])
        if delay_ms <= 0:
            return _fail("delay_ms must be positive")
        self.heartbeat.set_override(instance.id, delay_ms)
        return _ok(delay_ms=delay_ms)

    async def _escalate_to_call(self, instance: ConversationInstance, args: dict[str, Any]) -> str:
        adapter = self._voice_adapter()
        if adapter is None:
            return _fail("Voice calling is not configured")

        transcript = await self.transcripts.get_by_instance(instance.id)
        history = "\n".join(
            f"[{'You' if m.role == TranscriptRole.AGENT else 'Contact'}]: {m.content}" for m in transcript
        ) or "(no messages yet)"
        todos = "\n".join(f"- [{t.status.value}] {t.text}" for t in instance.todos) or "(no items)"
        prompt = "\n".join([
            f"You are a voice agent continuing a conversation that was happening over {instance.channel.value}.",
            "You are now calling the contact to continue the conversation by phone.",
            "",
            f"OBJECTIVE: {instance.objective}",
            "",
            "TODO LIST:",
            todos,
            "",
            f"REASON FOR CALLING: {args['reason']}",
            "",
            "PREVIOUS CONVERSATION:",
            history,
            f"\nADDITIONAL CONTEXT:\n{args['extra_context']}" if args.get("extra_context") else "",
            "",
            "RULES:",
            "- Continue naturally from where the chat left off",
            "- Be professional and concise",
            "- Focus on completing the objective and outstanding todo items",
        ])

        call = await adapter.place_call(
            to_number=instance.target_contact,
            prompt=prompt,
            first_message=args["first_message"],
            language=args.get("language") or "en",
            agent_name=f"relay-escalation-{instance.id[:8]}",
        )
        await self.store.update(instance.id, voice_call=call)
        await self.transcripts.append(TranscriptMessage(
            instance_id=instance.id,
            role=TranscriptRole.SYSTEM,
            content=f"Escalated to phone call ({args['reason']})",
        ))
        logger.info("escalated_to_call", instance_id=instance.id, conversation_id=call.conversation_id)
        return _ok(agent_id=call.agent_id, conversation_id=call.conversation_id)
