"""Channel adapters for all supported communication channels."""
from channels.base import (
    ChannelAdapter,
    ChannelError,
    ChannelKind,
    ChannelRegistry,
    ChannelUnavailableError,
    InboundMessage,
    InputSanitizer,
    MessageDeduplicator,
)
from channels.router import (
    ChannelRouter,
    ChatIdContactResolver,
    ContactResolver,
    DirectContactResolver,
    normalize_phone,
)
from channels.whatsapp_adapter import WhatsAppAdapter
from channels.telegram_adapter import TelegramAdapter
from channels.voice_adapter import CallStatusPoller, ElevenLabsClient, VoiceCallAdapter

__all__ = [
    "ChannelAdapter", "ChannelError", "ChannelKind", "ChannelRegistry", "ChannelUnavailableError",
    "InboundMessage", "InputSanitizer", "MessageDeduplicator",
    "ChannelRouter", "ContactResolver", "DirectContactResolver", "ChatIdContactResolver",
    "normalize_phone",
    "WhatsAppAdapter", "TelegramAdapter", "VoiceCallAdapter", "ElevenLabsClient", "CallStatusPoller",
]
