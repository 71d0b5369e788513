"""
File stores — JSON file-backed stores with persistence across restarts.

Data layout:
  {data_dir}/
    instances.json      {instance_id: instance}
    transcripts.json    {instance_id: [message, ...]}

Features:
  - Survives process restarts, so heartbeats can be reconstructed on boot
  - No external dependencies (no database server)
  - Every mutation rewrites the collection via tmp file + rename
  - Single-process only (no concurrent write safety)
"""
from __future__ import annotations

import json
import structlog
from collections import defaultdict
from pathlib import Path
from typing import Any

from database.store_memory import InMemoryInstanceStore, InMemoryTranscriptStore
from models.schemas import ConversationInstance, TranscriptMessage

logger = structlog.get_logger()


def _load_json(path: Path) -> dict:
    if not path.exists():
        return {}
    try:
        with open(path, "r") as f:
            data = json.load(f)
        return data if isinstance(data, dict) else {}
    except (json.JSONDecodeError, OSError) as e:
        logger.warning("file_store_load_error", path=str(path), error=str(e))
        return {}


def _write_json(path: Path, data: Any) -> None:
    tmp_path = path.with_suffix(".tmp")
    with open(tmp_path, "w") as f:
        json.dump(data, f, indent=2, default=str)
    tmp_path.replace(path)  # atomic on POSIX


class FileInstanceStore(InMemoryInstanceStore):
    """
    Extends InMemoryInstanceStore with JSON file persistence.

    On init: loads instances.json into memory.
    On every write: flushes the whole collection to disk.
    """

    def __init__(self, data_dir: str = "./.relay-agent"):
        super().__init__()
        self._data_dir = Path(data_dir)
        self._data_dir.mkdir(parents=True, exist_ok=True)
        self._path = self._data_dir / "instances.json"
        self._instances = _load_json(self._path)
        self._reindex()
        logger.info("file_instance_store_initialized",
                    data_dir=str(self._data_dir), records=len(self._instances))

    def flush(self) -> None:
        _write_json(self._path, self._instances)

    async def create(self, instance: ConversationInstance) -> ConversationInstance:
        result = await super().create(instance)
        self.flush()
        return result

    async def update(self, instance_id: str, **fields: Any) -> ConversationInstance:
        result = await super().update(instance_id, **fields)
        self.flush()
        return result


class FileTranscriptStore(InMemoryTranscriptStore):

    def __init__(self, data_dir: str = "./.relay-agent"):
        super().__init__()
        self._data_dir = Path(data_dir)
        self._data_dir.mkdir(parents=True, exist_ok=True)
        self._path = self._data_dir / "transcripts.json"
        self._messages = defaultdict(list, _load_json(self._path))
        logger.info("file_transcript_store_initialized", data_dir=str(self._data_dir))

    def flush(self) -> None:
        _write_json(self._path, dict(self._messages))

    async def append(self, message: TranscriptMessage) -> TranscriptMessage:
        result = await super().append(message)
        self.flush()
        return result
