"""
Database layer — Instance and transcript persistence.

Backends:
  - In-memory (dict-based, for development/testing)
  - File (JSON files on disk, default for the daemon)

Quick start:
  from database import create_stores
  instances, transcripts = create_stores({"backend": "memory"})
  instance = await instances.get_by_id("...")
"""
from database.store_base import BaseInstanceStore, BaseTranscriptStore
from database.store_memory import InMemoryInstanceStore, InMemoryTranscriptStore
from database.store_file import FileInstanceStore, FileTranscriptStore
from database.store_factory import create_stores, get_stores, reset_stores

__all__ = [
    # Store interfaces
    "BaseInstanceStore", "BaseTranscriptStore",
    # Store backends
    "InMemoryInstanceStore", "InMemoryTranscriptStore",
    "FileInstanceStore", "FileTranscriptStore",
    # Factory
    "create_stores", "get_stores", "reset_stores",
]
