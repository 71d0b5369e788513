"""
Core data models for the Relay Agent system.
These are the universal types shared across all modules.
"""
from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def new_id() -> str:
    return str(uuid.uuid4())


# ──────────────────────────────────────────────────────────────
#  Enums
# ──────────────────────────────────────────────────────────────

class ChannelType(str, Enum):
    WHATSAPP = "whatsapp"
    TELEGRAM = "telegram"
    PHONE = "phone"


class InstanceState(str, Enum):
    CREATED = "CREATED"
    QUEUED = "QUEUED"
    ACTIVE = "ACTIVE"
    WAITING_FOR_REPLY = "WAITING_FOR_REPLY"
    WAITING_FOR_AGENT = "WAITING_FOR_AGENT"
    HEARTBEAT_SCHEDULED = "HEARTBEAT_SCHEDULED"
    PAUSED = "PAUSED"
    NEEDS_HUMAN_INTERVENTION = "NEEDS_HUMAN_INTERVENTION"
    COMPLETED = "COMPLETED"
    ABANDONED = "ABANDONED"
    FAILED = "FAILED"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATES


class StateEvent(str, Enum):
    AGENT_SENDS_FIRST_MESSAGE = "agent_sends_first_message"
    CONTACT_HAS_ACTIVE_INSTANCE = "contact_has_active_instance"
    PAUSE = "pause"
    CANCEL = "cancel"
    PRIOR_INSTANCE_TERMINAL = "prior_instance_terminal"
    MESSAGE_SENT = "message_sent"
    END_CONVERSATION = "end_conversation"
    REQUEST_INTERVENTION = "request_intervention"
    UNRECOVERABLE_ERROR = "unrecoverable_error"
    CONTACT_REPLIES = "contact_replies"
    HEARTBEAT_FIRES = "heartbeat_fires"
    AGENT_PROCESSES_REPLY = "agent_processes_reply"
    FOLLOWUP_SENT = "followup_sent"
    MAX_FOLLOWUPS_EXCEEDED = "max_followups_exceeded"
    RESUME = "resume"
    MANUAL_SEND = "manual_send"


class TodoStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    SKIPPED = "skipped"


class TranscriptRole(str, Enum):
    AGENT = "agent"
    CONTACT = "contact"
    SYSTEM = "system"
    MANUAL = "manual"


TERMINAL_STATES = frozenset({
    InstanceState.COMPLETED,
    InstanceState.ABANDONED,
    InstanceState.FAILED,
})

# States in which a heartbeat timer may be armed
HEARTBEAT_STATES = frozenset({
    InstanceState.WAITING_FOR_REPLY,
    InstanceState.HEARTBEAT_SCHEDULED,
})


# ──────────────────────────────────────────────────────────────
#  Instance: one objective pursued with one contact
# ──────────────────────────────────────────────────────────────

class TodoItem(BaseModel):
    id: str = Field(default_factory=lambda: uuid.uuid4().hex[:8])
    text: str
    status: TodoStatus = TodoStatus.PENDING


class HeartbeatConfig(BaseModel):
    interval_ms: int = Field(default=1_800_000, gt=0)
    max_followups: int = Field(default=5, ge=0)


class VoiceCallData(BaseModel):
    """Provider-side identifiers for a phone instance."""
    agent_id: str = ""
    conversation_id: str = ""
    call_sid: str = ""


class ConversationInstance(BaseModel):
    id: str = Field(default_factory=new_id)
    objective: str
    target_contact: str                       # canonical contact key, e.g. +56912345678
    todos: list[TodoItem] = []
    state: InstanceState = InstanceState.CREATED
    previous_state: Optional[InstanceState] = None
    heartbeat_config: HeartbeatConfig = Field(default_factory=HeartbeatConfig)
    follow_up_count: int = Field(default=0, ge=0)
    failure_reason: Optional[str] = None
    channel: ChannelType = ChannelType.WHATSAPP
    channel_data: dict[str, Any] = {}         # e.g. {"telegram_chat_id": "12345"}
    voice_call: Optional[VoiceCallData] = None
    created_at: str = Field(default_factory=utc_now_iso)
    updated_at: str = Field(default_factory=utc_now_iso)

    @property
    def is_terminal(self) -> bool:
        return self.state.is_terminal

    @property
    def is_active(self) -> bool:
        """Holds the contact's single live slot (neither terminal nor queued)."""
        if self.state == InstanceState.PAUSED and self.previous_state == InstanceState.QUEUED:
            return False
        return not self.is_terminal and self.state != InstanceState.QUEUED

    @property
    def telegram_chat_id(self) -> Optional[str]:
        return self.channel_data.get("telegram_chat_id")


# ──────────────────────────────────────────────────────────────
#  Transcript & Audit
# ──────────────────────────────────────────────────────────────

class TranscriptMessage(BaseModel):
    id: str = Field(default_factory=new_id)
    instance_id: str
    role: TranscriptRole
    content: str
    timestamp: str = Field(default_factory=utc_now_iso)


class StateTransition(BaseModel):
    """Audit record emitted once per successful transition."""
    model_config = ConfigDict(frozen=True)

    instance_id: str
    from_state: InstanceState
    to_state: InstanceState
    trigger: StateEvent
    timestamp: str = Field(default_factory=utc_now_iso)


# ──────────────────────────────────────────────────────────────
#  Requests
# ──────────────────────────────────────────────────────────────

class TodoInput(BaseModel):
    text: str = Field(min_length=1)


class HeartbeatInput(BaseModel):
    interval_ms: Optional[int] = Field(default=None, gt=0)
    max_followups: Optional[int] = Field(default=None, ge=0)


class PhoneConfig(BaseModel):
    first_message: str = Field(min_length=1)
    voice_id: Optional[str] = None
    language: Optional[str] = None
    phone_number_id: Optional[str] = None     # overrides the configured agent phone number


class CreateInstanceRequest(BaseModel):
    objective: str = Field(min_length=1)
    target_contact: str = Field(min_length=1)
    todos: list[TodoInput] = Field(min_length=1)
    heartbeat_config: Optional[HeartbeatInput] = None
    channel: ChannelType = ChannelType.WHATSAPP
    phone_config: Optional[PhoneConfig] = None
    telegram_chat_id: Optional[str] = None

    @field_validator("objective", "target_contact")
    @classmethod
    def _not_blank(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("must not be blank")
        return v.strip()

    @field_validator("telegram_chat_id", mode="before")
    @classmethod
    def _chat_id_to_str(cls, v: Any) -> Any:
        return str(v) if isinstance(v, int) else v

    @model_validator(mode="after")
    def _phone_needs_config(self) -> "CreateInstanceRequest":
        if self.channel == ChannelType.PHONE and self.phone_config is None:
            raise ValueError("phone_config with first_message is required for phone channel")
        return self


class SendMessageRequest(BaseModel):
    message: str = Field(min_length=1)

    @field_validator("message")
    @classmethod
    def _not_blank(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("must not be blank")
        return v


class CallRequest(BaseModel):
    to_number: str = Field(min_length=1)
    prompt: str = Field(min_length=1)
    first_message: str = Field(min_length=1)
    phone_number_id: Optional[str] = None
    voice_id: Optional[str] = None
    language: Optional[str] = None
