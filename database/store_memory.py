"""
In-memory stores — dict-backed backends for development and testing.

Features:
  - Zero dependencies (no database)
  - Same interface as the SQL backend
  - Check-and-set sections run under a lock, so claims are atomic across
    coroutines and threads within one process
  - All data lost on process restart

Best for: local development, unit tests, single-process deployments.
"""
from __future__ import annotations

import threading
import structlog
from collections import defaultdict
from datetime import datetime
from typing import Any, AsyncIterator, Optional

from database.store_base import EntityStore, WorkflowStore
from models.errors import EntityNotFoundError
from models.schemas import (
    EntityType, Escalation, JobStatus, ReminderJob, StageHistoryRecord, WorkflowEntity,
)
from utils.metrics import as_utc

logger = structlog.get_logger()


class InMemoryEntityStore(EntityStore):
    """
    Entity records keyed by id. `terminal_stages` tells list_non_terminal
    which stages to skip; bootstrap fills it from the transition maps.
    """

    def __init__(self, terminal_stages: dict[EntityType, frozenset[str]] = None):
        self._entities: dict[str, WorkflowEntity] = {}
        self._history: dict[str, list[StageHistoryRecord]] = defaultdict(list)
        self._terminal = dict(terminal_stages or {})
        self._lock = threading.Lock()
        logger.info("inmemory_entity_store_initialized")

    def set_terminal_stages(self, entity_type: EntityType, stages: frozenset[str]) -> None:
        self._terminal[entity_type] = frozenset(stages)

    async def get_entity(self, entity_id: str) -> Optional[WorkflowEntity]:
        entity = self._entities.get(entity_id)
        return entity.model_copy(deep=True) if entity else None

    async def list_non_terminal(self, entity_type: EntityType) -> AsyncIterator[WorkflowEntity]:
        terminal = self._terminal.get(entity_type, frozenset())
        for entity in list(self._entities.values()):
            if entity.type == entity_type and entity.stage not in terminal:
                yield entity.model_copy(deep=True)

    async def create_entity(self, entity: WorkflowEntity) -> WorkflowEntity:
        with self._lock:
            self._entities[entity.id] = entity.model_copy(deep=True)
        return entity

    async def apply_transition(self, entity_id: str, expected_stage: str, new_stage: str,
                               at: datetime) -> Optional[WorkflowEntity]:
        with self._lock:
            entity = self._entities.get(entity_id)
            if entity is None:
                raise EntityNotFoundError(entity_id)
            if entity.stage != expected_stage:
                return None
            entity.stage = new_stage
            entity.stage_entered_at = at
            return entity.model_copy(deep=True)

    async def append_history(self, entity_id: str,
                             record: StageHistoryRecord) -> StageHistoryRecord:
        with self._lock:
            log = self._history[entity_id]
            stored = record.model_copy(update={"entity_id": entity_id, "seq": len(log) + 1})
            log.append(stored)
        return stored

    async def get_history(self, entity_id: str) -> list[StageHistoryRecord]:
        return list(self._history.get(entity_id, []))

    async def update_metadata(self, entity_id: str, patch: dict[str, Any]) -> WorkflowEntity:
        with self._lock:
            entity = self._entities.get(entity_id)
            if entity is None:
                raise EntityNotFoundError(entity_id)
            entity.metadata.update(patch)
            return entity.model_copy(deep=True)


class InMemoryWorkflowStore(WorkflowStore):

    def __init__(self):
        self._jobs: dict[str, ReminderJob] = {}
        self._escalations: dict[str, Escalation] = {}
        self._effects: dict[str, dict[str, Any]] = {}
        self._breaches: dict[str, datetime] = {}

        # Indexes
        self._dedupe_index: dict[str, str] = {}       # dedupe_key → job_id
        self._lock = threading.Lock()
        logger.info("inmemory_workflow_store_initialized")

    # ── Reminder jobs ─────────────────────────────────────

    async def create_job(self, job: ReminderJob) -> Optional[ReminderJob]:
        stored = job.model_copy(deep=True, update={
            "scheduled_at": as_utc(job.scheduled_at),
            "created_at": as_utc(job.created_at),
            "updated_at": as_utc(job.updated_at),
        })
        with self._lock:
            if job.dedupe_key and job.dedupe_key in self._dedupe_index:
                return None
            self._jobs[job.id] = stored
            if job.dedupe_key:
                self._dedupe_index[job.dedupe_key] = job.id
        return stored.model_copy(deep=True)

    async def get_job(self, job_id: str) -> Optional[ReminderJob]:
        job = self._jobs.get(job_id)
        return job.model_copy(deep=True) if job else None

    async def list_jobs(self, entity_id: str = None,
                        status: JobStatus = None) -> list[ReminderJob]:
        jobs = [
            j for j in self._jobs.values()
            if (entity_id is None or j.entity_id == entity_id)
            and (status is None or j.status == status)
        ]
        jobs.sort(key=lambda j: (j.scheduled_at, j.id))
        return [j.model_copy(deep=True) for j in jobs]

    async def list_due_jobs(self, now: datetime, limit: int = 100) -> list[ReminderJob]:
        now = as_utc(now)
        due = [
            j for j in self._jobs.values()
            if j.status == JobStatus.QUEUED and j.scheduled_at <= now
        ]
        due.sort(key=lambda j: (j.scheduled_at, j.id))
        return [j.model_copy(deep=True) for j in due[:limit]]

    async def claim_job(self, job_id: str, worker_id: str,
                        now: datetime) -> Optional[ReminderJob]:
        now = as_utc(now)
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None or job.status != JobStatus.QUEUED:
                return None
            job.status = JobStatus.SENDING
            job.leased_by = worker_id
            job.leased_at = now
            job.updated_at = now
            return job.model_copy(deep=True)

    async def finalize_job(self, job_id: str, worker_id: str, status: JobStatus,
                           attempts: int, last_error: str, scheduled_at: datetime,
                           now: datetime) -> bool:
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None or job.status != JobStatus.SENDING or job.leased_by != worker_id:
                return False
            job.status = status
            job.attempts = attempts
            job.last_error = last_error
            job.scheduled_at = as_utc(scheduled_at)
            job.leased_by = ""
            job.leased_at = None
            job.updated_at = as_utc(now)
            return True

    async def cancel_pending_jobs(self, entity_id: str, after: datetime,
                                  now: datetime) -> int:
        after = as_utc(after)
        cancelled = 0
        with self._lock:
            for job in self._jobs.values():
                if (job.entity_id == entity_id and job.status == JobStatus.QUEUED
                        and job.scheduled_at > after):
                    job.status = JobStatus.CANCELLED
                    job.updated_at = as_utc(now)
                    cancelled += 1
        return cancelled

    async def release_stale_leases(self, leased_before: datetime, now: datetime) -> int:
        leased_before = as_utc(leased_before)
        released = 0
        with self._lock:
            for job in self._jobs.values():
                if (job.status == JobStatus.SENDING and job.leased_at is not None
                        and job.leased_at < leased_before):
                    job.status = JobStatus.QUEUED
                    job.leased_by = ""
                    job.leased_at = None
                    job.updated_at = as_utc(now)
                    released += 1
        return released

    # ── Escalations ───────────────────────────────────────

    async def create_escalation(self, escalation: Escalation) -> Escalation:
        with self._lock:
            self._escalations[escalation.id] = escalation.model_copy(deep=True)
        return escalation

    async def get_escalation(self, escalation_id: str) -> Optional[Escalation]:
        esc = self._escalations.get(escalation_id)
        return esc.model_copy(deep=True) if esc else None

    async def list_escalations(self, entity_id: str, reason: str = None,
                               open_only: bool = False) -> list[Escalation]:
        found = [
            e for e in self._escalations.values()
            if e.entity_id == entity_id
            and (reason is None or e.reason == reason)
            and (not open_only or e.is_open)
        ]
        found.sort(key=lambda e: (e.opened_at, e.level))
        return [e.model_copy(deep=True) for e in found]

    async def resolve_escalation(self, escalation_id: str, resolved_by: str,
                                 at: datetime) -> bool:
        with self._lock:
            esc = self._escalations.get(escalation_id)
            if esc is None or not esc.is_open:
                return False
            esc.resolved_at = at
            esc.resolved_by = resolved_by
            return True

    # ── Idempotency keys ──────────────────────────────────

    async def claim_effect(self, effect_key: str, entity_id: str, rule_id: str,
                           at: datetime) -> bool:
        with self._lock:
            if effect_key in self._effects:
                return False
            self._effects[effect_key] = {"entity_id": entity_id, "rule_id": rule_id, "at": at}
            return True

    async def claim_sla_breach(self, entity_id: str, episode_key: str,
                               at: datetime) -> bool:
        key = f"{entity_id}:{episode_key}"
        with self._lock:
            if key in self._breaches:
                return False
            self._breaches[key] = at
            return True

    async def release_sla_breach(self, entity_id: str, episode_key: str) -> None:
        with self._lock:
            self._breaches.pop(f"{entity_id}:{episode_key}", None)
