"""
Abstract stores — interfaces for all storage backends.

EntityStore
    Adapter over the CRM's entity records (leads, cases, bank applications)
    and their stage-history log. The CRM owns this data; the workflow core
    reads snapshots and writes stages through a compare-and-set call.

WorkflowStore
    State owned by the workflow core: reminder jobs, escalations, action
    effect keys and SLA breach-episode keys. Every claim-style method is an
    atomic conditional write so concurrent workers never double-process.

Implementations:
  - InMemoryEntityStore / InMemoryWorkflowStore  (database/store_memory.py)
  - SqlWorkflowStore                             (database/store.py)
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, AsyncIterator, Optional

from models.schemas import (
    EntityType, Escalation, JobStatus, ReminderJob, StageHistoryRecord, WorkflowEntity,
)


class EntityStore(ABC):
    """Interface the entity-record backend must implement."""

    @abstractmethod
    async def get_entity(self, entity_id: str) -> Optional[WorkflowEntity]:
        ...

    @abstractmethod
    def list_non_terminal(self, entity_type: EntityType) -> AsyncIterator[WorkflowEntity]:
        ...

    @abstractmethod
    async def create_entity(self, entity: WorkflowEntity) -> WorkflowEntity:
        ...

    @abstractmethod
    async def apply_transition(self, entity_id: str, expected_stage: str, new_stage: str,
                               at: datetime) -> Optional[WorkflowEntity]:
        """Set stage and reset stage_entered_at. Returns None if the stage moved on."""
        ...

    @abstractmethod
    async def append_history(self, entity_id: str,
                             record: StageHistoryRecord) -> StageHistoryRecord:
        """Append with the next per-entity sequence number."""
        ...

    @abstractmethod
    async def get_history(self, entity_id: str) -> list[StageHistoryRecord]:
        ...

    @abstractmethod
    async def update_metadata(self, entity_id: str, patch: dict[str, Any]) -> WorkflowEntity:
        ...


class WorkflowStore(ABC):
    """Interface for core-owned persisted state."""

    # ── Reminder jobs ─────────────────────────────────────────

    @abstractmethod
    async def create_job(self, job: ReminderJob) -> Optional[ReminderJob]:
        """Insert; returns None when a job with the same dedupe_key exists."""
        ...

    @abstractmethod
    async def get_job(self, job_id: str) -> Optional[ReminderJob]:
        ...

    @abstractmethod
    async def list_jobs(self, entity_id: str = None,
                        status: JobStatus = None) -> list[ReminderJob]:
        ...

    @abstractmethod
    async def list_due_jobs(self, now: datetime, limit: int = 100) -> list[ReminderJob]:
        """QUEUED jobs with scheduled_at <= now, oldest first."""
        ...

    @abstractmethod
    async def claim_job(self, job_id: str, worker_id: str,
                        now: datetime) -> Optional[ReminderJob]:
        """Atomic QUEUED → SENDING. Returns None when another worker won."""
        ...

    @abstractmethod
    async def finalize_job(self, job_id: str, worker_id: str, status: JobStatus,
                           attempts: int, last_error: str, scheduled_at: datetime,
                           now: datetime) -> bool:
        """Write the outcome of a leased job. Only the worker holding the lease may."""
        ...

    @abstractmethod
    async def cancel_pending_jobs(self, entity_id: str, after: datetime,
                                  now: datetime) -> int:
        """Mark QUEUED jobs scheduled after `after` as CANCELLED."""
        ...

    @abstractmethod
    async def release_stale_leases(self, leased_before: datetime, now: datetime) -> int:
        ...

    # ── Escalations ───────────────────────────────────────────

    @abstractmethod
    async def create_escalation(self, escalation: Escalation) -> Escalation:
        ...

    @abstractmethod
    async def get_escalation(self, escalation_id: str) -> Optional[Escalation]:
        ...

    @abstractmethod
    async def list_escalations(self, entity_id: str, reason: str = None,
                               open_only: bool = False) -> list[Escalation]:
        ...

    @abstractmethod
    async def resolve_escalation(self, escalation_id: str, resolved_by: str,
                                 at: datetime) -> bool:
        """Close an open escalation. Returns False when it was already resolved."""
        ...

    # ── Idempotency keys ──────────────────────────────────────

    @abstractmethod
    async def claim_effect(self, effect_key: str, entity_id: str, rule_id: str,
                           at: datetime) -> bool:
        """Insert-if-absent. True only for the first caller."""
        ...

    @abstractmethod
    async def claim_sla_breach(self, entity_id: str, episode_key: str,
                               at: datetime) -> bool:
        """Insert-if-absent. True only for the first caller."""
        ...

    @abstractmethod
    async def release_sla_breach(self, entity_id: str, episode_key: str) -> None:
        """Drop a claimed breach episode so the next scan handles it again."""
        ...
