"""
Database layer — Multi-backend persistence for workflow state.

Backends:
  - SQL (PostgreSQL / SQLite via SQLAlchemy async)
  - In-memory (dict-based, for development/testing)

Quick start:
  from database import create_workflow_store
  store, db = create_workflow_store(settings.database)
  job = await store.claim_job(job_id, worker_id, now)
"""
from database.models import (
    Base, ReminderJobRow, EscalationRow, ActionEffectRow, SlaBreachRow,
)
from database.session import Database
from database.store_base import EntityStore, WorkflowStore
from database.store import SqlWorkflowStore
from database.store_memory import InMemoryEntityStore, InMemoryWorkflowStore
from database.store_factory import create_workflow_store

__all__ = [
    # ORM models
    "Base", "ReminderJobRow", "EscalationRow", "ActionEffectRow", "SlaBreachRow",
    # Session management
    "Database",
    # Store interfaces
    "EntityStore", "WorkflowStore",
    # Store backends
    "SqlWorkflowStore", "InMemoryEntityStore", "InMemoryWorkflowStore",
    # Factory
    "create_workflow_store",
]
