"""
Store Factory — Create the right store backends from configuration.

Configuration in settings.yaml:
    store:
      # "memory": in-memory dicts (development, testing)
      # "file":   JSON files on disk (default; survives restarts)
      backend: "file"
      data_dir: "./.relay-agent"

Usage:
    from database.store_factory import create_stores, get_stores
    instances, transcripts = create_stores({"backend": "memory"})
    instances, transcripts = get_stores()     # singleton pair
"""
from __future__ import annotations

import structlog
from typing import Optional

from database.store_base import BaseInstanceStore, BaseTranscriptStore

logger = structlog.get_logger()

StorePair = tuple[BaseInstanceStore, BaseTranscriptStore]

_instance: Optional[StorePair] = None


def create_stores(config: dict = None) -> StorePair:
    """
    Factory: create the instance + transcript store pair.

    Args:
        config: dict with keys:
            backend:  "memory" | "file"  (default: "memory")
            data_dir: str (for file backend, default: "./.relay-agent")
    """
    global _instance
    if _instance is not None:
        return _instance

    config = config or {}
    backend = config.get("backend", "memory")

    if backend == "file":
        from database.store_file import FileInstanceStore, FileTranscriptStore
        data_dir = config.get("data_dir", "./.relay-agent")
        _instance = (FileInstanceStore(data_dir=data_dir), FileTranscriptStore(data_dir=data_dir))
        logger.info("store_created", backend="file", data_dir=data_dir)

    elif backend == "memory":
        from database.store_memory import InMemoryInstanceStore, InMemoryTranscriptStore
        _instance = (InMemoryInstanceStore(), InMemoryTranscriptStore())
        logger.info("store_created", backend="memory")

    else:
        raise ValueError(f"Unknown store backend '{backend}' (expected 'memory' or 'file')")

    return _instance


def get_stores() -> StorePair:
    """Return the singleton store pair, creating memory stores if none exist."""
    global _instance
    if _instance is None:
        _instance = create_stores()
    return _instance


def reset_stores() -> None:
    """Reset the singleton (for testing)."""
    global _instance
    _instance = None
