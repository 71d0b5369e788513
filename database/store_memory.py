"""
In-memory stores — Dict-backed instance and transcript stores.

Features:
  - Zero dependencies (no database, no files)
  - Records kept as JSON-mode dicts and validated back into models on read,
    so callers never hold a reference into the store
  - All data lost on process restart

Best for: local development, unit tests, quick prototyping.
"""
from __future__ import annotations

import structlog
from collections import defaultdict
from typing import Any, Optional

from database.store_base import BaseInstanceStore, BaseTranscriptStore
from lifecycle.errors import InstanceNotFoundError
from models.schemas import ConversationInstance, TranscriptMessage, utc_now_iso

logger = structlog.get_logger()


class InMemoryInstanceStore(BaseInstanceStore):

    def __init__(self):
        self._instances: dict[str, dict] = {}           # id → instance dict
        self._contact_index: dict[str, list[str]] = defaultdict(list)  # contact → [ids]
        logger.info("inmemory_instance_store_initialized")

    @staticmethod
    def _to_model(data: dict) -> ConversationInstance:
        return ConversationInstance.model_validate(data)

    def _reindex(self):
        self._contact_index.clear()
        for iid, data in self._instances.items():
            self._contact_index[data["target_contact"]].append(iid)

    async def create(self, instance: ConversationInstance) -> ConversationInstance:
        if instance.id in self._instances:
            raise ValueError(f"Instance {instance.id} already exists")
        self._instances[instance.id] = instance.model_dump(mode="json")
        self._contact_index[instance.target_contact].append(instance.id)
        logger.debug("instance_created", instance_id=instance.id, contact=instance.target_contact)
        return self._to_model(self._instances[instance.id])

    async def get_by_id(self, instance_id: str) -> Optional[ConversationInstance]:
        data = self._instances.get(instance_id)
        return self._to_model(data) if data else None

    async def get_all(self) -> list[ConversationInstance]:
        return [self._to_model(d) for d in self._instances.values()]

    async def get_by_contact(self, contact: str) -> list[ConversationInstance]:
        return [
            self._to_model(self._instances[iid])
            for iid in self._contact_index.get(contact, [])
            if iid in self._instances
        ]

    async def update(self, instance_id: str, **fields: Any) -> ConversationInstance:
        data = self._instances.get(instance_id)
        if data is None:
            raise InstanceNotFoundError(instance_id)
        merged = self._to_model({**data, **fields, "updated_at": utc_now_iso()})
        self._instances[instance_id] = merged.model_dump(mode="json")
        return merged

    @property
    def count(self) -> int:
        return len(self._instances)


class InMemoryTranscriptStore(BaseTranscriptStore):

    def __init__(self):
        self._messages: dict[str, list[dict]] = defaultdict(list)  # instance_id → [msg dicts]

    async def append(self, message: TranscriptMessage) -> TranscriptMessage:
        self._messages[message.instance_id].append(message.model_dump(mode="json"))
        return message

    async def get_by_instance(self, instance_id: str) -> list[TranscriptMessage]:
        msgs = [TranscriptMessage.model_validate(m) for m in self._messages.get(instance_id, [])]
        return sorted(msgs, key=lambda m: m.timestamp)
