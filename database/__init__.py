"""
Database layer — Multi-backend persistence for workflows and call history.

Backends:
  - SQL (PostgreSQL / MySQL / SQLite via SQLAlchemy async)
  - In-memory (dict-based, for development/testing)
  - File (JSON files on disk, for small deployments)

Quick start:
  from database import create_store, get_store
  store = create_store({"store_backend": "memory"})
  workflow = await store.get_workflow("wf1")
"""
from database.models import (
    Base, WorkflowRow, WorkflowVersionRow, ExecutionLogRow, LeadRow, ScheduledCallbackRow,
)
from database.session import get_engine, get_session, init_db, close_db, configure_engine
from database.store_base import BaseIvrStore
from database.store import SqlIvrStore
from database.store_memory import InMemoryIvrStore
from database.store_file import FileIvrStore
from database.store_factory import create_store, create_configured_store, get_store, reset_store

__all__ = [
    # ORM models
    "Base", "WorkflowRow", "WorkflowVersionRow", "ExecutionLogRow",
    "LeadRow", "ScheduledCallbackRow",
    # Session management
    "get_engine", "get_session", "init_db", "close_db", "configure_engine",
    # Store interface
    "BaseIvrStore",
    # Store backends
    "SqlIvrStore", "InMemoryIvrStore", "FileIvrStore",
    # Factory
    "create_store", "create_configured_store", "get_store", "reset_store",
]
