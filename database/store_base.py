"""
Abstract Stores — Interfaces for instance and transcript storage backends.

Implementations:
  - InMemoryInstanceStore / InMemoryTranscriptStore (dict-based, no persistence)
  - FileInstanceStore / FileTranscriptStore         (JSON files on disk, durable)

Instances are never deleted; terminal instances stay for audit. There is no
optimistic concurrency control: concurrent read-modify-write sequences on the
same instance can lose an update.
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, Optional

from models.schemas import ConversationInstance, TranscriptMessage


class BaseInstanceStore(ABC):
    """Interface that all instance store backends must implement."""

    @abstractmethod
    async def create(self, instance: ConversationInstance) -> ConversationInstance:
        ...

    @abstractmethod
    async def get_by_id(self, instance_id: str) -> Optional[ConversationInstance]:
        ...

    @abstractmethod
    async def get_all(self) -> list[ConversationInstance]:
        ...

    @abstractmethod
    async def get_by_contact(self, contact: str) -> list[ConversationInstance]:
        ...

    @abstractmethod
    async def update(self, instance_id: str, **fields: Any) -> ConversationInstance:
        """Merge `fields` into the instance and bump updated_at.

        Raises InstanceNotFoundError for an unknown id.
        """
        ...

    async def get_active_for_contact(
        self, contact: str, exclude_id: Optional[str] = None,
    ) -> Optional[ConversationInstance]:
        """The contact's live instance (neither terminal nor QUEUED), if any."""
        for instance in await self.get_by_contact(contact):
            if instance.id != exclude_id and instance.is_active:
                return instance
        return None

    async def find_by_channel_data(self, key: str, value: Any) -> list[ConversationInstance]:
        return [i for i in await self.get_all() if i.channel_data.get(key) == value]


class BaseTranscriptStore(ABC):
    """Interface that all transcript store backends must implement."""

    @abstractmethod
    async def append(self, message: TranscriptMessage) -> TranscriptMessage:
        ...

    @abstractmethod
    async def get_by_instance(self, instance_id: str) -> list[TranscriptMessage]:
        """Messages for the instance, timestamp ascending."""
        ...
