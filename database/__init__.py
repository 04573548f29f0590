"""
Database layer — Multi-backend persistence for the waiting-queue state.

Backends:
  - SQL (PostgreSQL / MySQL / SQLite via SQLAlchemy async)
  - In-memory (dict-based, for development/testing)
  - File (JSON files on disk, for small deployments)

Quick start:
  from database import create_store
  store = create_store({"store_backend": "memory"})
  if await store.reserve_tag(entity.key, MessageKind.WAIT):
      ...
"""
from database.models import Base, ActiveEntityRow, ProcessedEntityRow, MessageTagRow
from database.session import get_engine, get_session, init_db, close_db
from database.store_base import BasePatientStore, ReservationPolicy, StorageError, snapshot_diff
from database.store import SqlPatientStore
from database.store_memory import InMemoryPatientStore
from database.store_file import FilePatientStore
from database.store_factory import create_store, get_store, reset_store

__all__ = [
    # ORM models
    "Base", "ActiveEntityRow", "ProcessedEntityRow", "MessageTagRow",
    # Session management
    "get_engine", "get_session", "init_db", "close_db",
    # Store interface
    "BasePatientStore", "ReservationPolicy", "StorageError", "snapshot_diff",
    # Store backends
    "SqlPatientStore", "InMemoryPatientStore", "FilePatientStore",
    # Factory
    "create_store", "get_store", "reset_store",
]
