"""
Audit Sinks — receive one StateTransition record per successful transition.

Implementations:
  - LoggingAuditSink  (structlog event per transition, default)
  - MemoryAuditSink   (list in memory, used by tests and /transitions endpoint)
  - FileAuditSink     (append-only JSONL file under the store data dir)

A sink that raises is logged and skipped by the state machine; it never
fails the transition that produced the record.
"""
from __future__ import annotations

import abc
import json
import structlog
from pathlib import Path
from typing import Optional

from models.schemas import StateTransition

logger = structlog.get_logger()


class AuditSink(abc.ABC):
    @abc.abstractmethod
    async def record(self, transition: StateTransition) -> None:
        ...


class LoggingAuditSink(AuditSink):
    async def record(self, transition: StateTransition) -> None:
        logger.info("state_transition",
                    instance_id=transition.instance_id,
                    transition=f"{transition.from_state.value} → {transition.to_state.value}",
                    trigger=transition.trigger.value)


class MemoryAuditSink(AuditSink):
    def __init__(self, max_records: int = 10000):
        self.max_records = max_records
        self.records: list[StateTransition] = []

    async def record(self, transition: StateTransition) -> None:
        self.records.append(transition)
        if len(self.records) > self.max_records:
            self.records = self.records[-self.max_records:]

    def for_instance(self, instance_id: str) -> list[StateTransition]:
        return [r for r in self.records if r.instance_id == instance_id]


class FileAuditSink(AuditSink):
    """Appends each record as one JSON line."""

    def __init__(self, path: str):
        self._path = Path(path)
        self._path.parent.mkdir(parents=True, exist_ok=True)

    async def record(self, transition: StateTransition) -> None:
        with open(self._path, "a") as f:
            f.write(json.dumps(transition.model_dump(mode="json")) + "\n")

    def read_all(self, instance_id: Optional[str] = None) -> list[StateTransition]:
        if not self._path.exists():
            return []
        records = []
        with open(self._path) as f:
            for line in f:
                line = line.strip()
                if not line:
                    continue
                rec = StateTransition(**json.loads(line))
                if instance_id is None or rec.instance_id == instance_id:
                    records.append(rec)
        return records
