"""
SqlWorkflowStore — Portable SQL persistence for PostgreSQL and SQLite.

Atomicity relies only on features every dialect has:
  - Job leasing is a conditional UPDATE ... WHERE status = 'QUEUED'; the
    worker whose statement reports one affected row owns the job.
  - Insert-if-absent keys are primary keys (or UNIQUE); a conflicting INSERT
    raises IntegrityError, which means "already claimed".
"""
from __future__ import annotations

import structlog
from datetime import datetime
from typing import Optional

from sqlalchemy import delete, select, update, and_
from sqlalchemy.exc import IntegrityError

from database.models import ActionEffectRow, EscalationRow, ReminderJobRow, SlaBreachRow
from database.session import Database
from database.store_base import WorkflowStore
from models.schemas import ChannelType, Escalation, JobStatus, ReminderJob
from utils.metrics import as_utc

logger = structlog.get_logger()


class SqlWorkflowStore(WorkflowStore):
    """
    Persistent workflow state backed by any SQLAlchemy-supported database.
    """

    def __init__(self, database: Database):
        self.db = database

    # ── Reminder jobs ──────────────────────────────────────

    async def create_job(self, job: ReminderJob) -> Optional[ReminderJob]:
        try:
            async with self.db.session() as s:
                s.add(ReminderJobRow(
                    id=job.id,
                    entity_id=job.entity_id,
                    rule_id=job.rule_id,
                    channel=job.channel.value,
                    recipient=job.recipient,
                    template_name=job.template_name,
                    payload=job.payload,
                    scheduled_at=as_utc(job.scheduled_at),
                    status=job.status.value,
                    attempts=job.attempts,
                    max_retries=job.max_retries,
                    last_error=job.last_error,
                    dedupe_key=job.dedupe_key,
                    created_at=as_utc(job.created_at),
                    updated_at=as_utc(job.updated_at),
                ))
        except IntegrityError:
            logger.debug("job_dedupe_conflict", dedupe_key=job.dedupe_key)
            return None
        return job.model_copy(update={
            "scheduled_at": as_utc(job.scheduled_at),
            "created_at": as_utc(job.created_at),
            "updated_at": as_utc(job.updated_at),
        })

    async def get_job(self, job_id: str) -> Optional[ReminderJob]:
        async with self.db.session() as s:
            row = await s.get(ReminderJobRow, job_id)
            return self._row_to_job(row) if row else None

    async def list_jobs(self, entity_id: str = None,
                        status: JobStatus = None) -> list[ReminderJob]:
        async with self.db.session() as s:
            stmt = select(ReminderJobRow)
            if entity_id is not None:
                stmt = stmt.where(ReminderJobRow.entity_id == entity_id)
            if status is not None:
                stmt = stmt.where(ReminderJobRow.status == status.value)
            stmt = stmt.order_by(ReminderJobRow.scheduled_at, ReminderJobRow.id)
            result = await s.execute(stmt)
            return [self._row_to_job(r) for r in result.scalars().all()]

    async def list_due_jobs(self, now: datetime, limit: int = 100) -> list[ReminderJob]:
        async with self.db.session() as s:
            stmt = (
                select(ReminderJobRow)
                .where(and_(
                    ReminderJobRow.status == JobStatus.QUEUED.value,
                    ReminderJobRow.scheduled_at <= as_utc(now),
                ))
                .order_by(ReminderJobRow.scheduled_at, ReminderJobRow.id)
                .limit(limit)
            )
            result = await s.execute(stmt)
            return [self._row_to_job(r) for r in result.scalars().all()]

    async def claim_job(self, job_id: str, worker_id: str,
                        now: datetime) -> Optional[ReminderJob]:
        now = as_utc(now)
        async with self.db.session() as s:
            stmt = (
                update(ReminderJobRow)
                .where(and_(
                    ReminderJobRow.id == job_id,
                    ReminderJobRow.status == JobStatus.QUEUED.value,
                ))
                .values(status=JobStatus.SENDING.value, leased_by=worker_id,
                        leased_at=now, updated_at=now)
            )
            result = await s.execute(stmt)
            if result.rowcount != 1:
                return None
            row = await s.get(ReminderJobRow, job_id, populate_existing=True)
            return self._row_to_job(row)

    async def finalize_job(self, job_id: str, worker_id: str, status: JobStatus,
                           attempts: int, last_error: str, scheduled_at: datetime,
                           now: datetime) -> bool:
        async with self.db.session() as s:
            stmt = (
                update(ReminderJobRow)
                .where(and_(
                    ReminderJobRow.id == job_id,
                    ReminderJobRow.status == JobStatus.SENDING.value,
                    ReminderJobRow.leased_by == worker_id,
                ))
                .values(status=status.value, attempts=attempts, last_error=last_error,
                        scheduled_at=as_utc(scheduled_at), leased_by="", leased_at=None,
                        updated_at=as_utc(now))
            )
            result = await s.execute(stmt)
            return result.rowcount == 1

    async def cancel_pending_jobs(self, entity_id: str, after: datetime,
                                  now: datetime) -> int:
        async with self.db.session() as s:
            stmt = (
                update(ReminderJobRow)
                .where(and_(
                    ReminderJobRow.entity_id == entity_id,
                    ReminderJobRow.status == JobStatus.QUEUED.value,
                    ReminderJobRow.scheduled_at > as_utc(after),
                ))
                .values(status=JobStatus.CANCELLED.value, updated_at=as_utc(now))
            )
            result = await s.execute(stmt)
            return result.rowcount

    async def release_stale_leases(self, leased_before: datetime, now: datetime) -> int:
        async with self.db.session() as s:
            stmt = (
                update(ReminderJobRow)
                .where(and_(
                    ReminderJobRow.status == JobStatus.SENDING.value,
                    ReminderJobRow.leased_at < as_utc(leased_before),
                ))
                .values(status=JobStatus.QUEUED.value, leased_by="", leased_at=None,
                        updated_at=as_utc(now))
            )
            result = await s.execute(stmt)
            return result.rowcount

    # ── Escalations ────────────────────────────────────────

    async def create_escalation(self, escalation: Escalation) -> Escalation:
        async with self.db.session() as s:
            s.add(EscalationRow(
                id=escalation.id,
                entity_id=escalation.entity_id,
                level=escalation.level,
                reason=escalation.reason,
                opened_at=as_utc(escalation.opened_at),
                resolved_at=as_utc(escalation.resolved_at) if escalation.resolved_at else None,
                resolved_by=escalation.resolved_by,
            ))
        return escalation

    async def get_escalation(self, escalation_id: str) -> Optional[Escalation]:
        async with self.db.session() as s:
            row = await s.get(EscalationRow, escalation_id)
            return self._row_to_escalation(row) if row else None

    async def list_escalations(self, entity_id: str, reason: str = None,
                               open_only: bool = False) -> list[Escalation]:
        async with self.db.session() as s:
            stmt = select(EscalationRow).where(EscalationRow.entity_id == entity_id)
            if reason is not None:
                stmt = stmt.where(EscalationRow.reason == reason)
            if open_only:
                stmt = stmt.where(EscalationRow.resolved_at.is_(None))
            stmt = stmt.order_by(EscalationRow.opened_at, EscalationRow.level)
            result = await s.execute(stmt)
            return [self._row_to_escalation(r) for r in result.scalars().all()]

    async def resolve_escalation(self, escalation_id: str, resolved_by: str,
                                 at: datetime) -> bool:
        async with self.db.session() as s:
            stmt = (
                update(EscalationRow)
                .where(and_(
                    EscalationRow.id == escalation_id,
                    EscalationRow.resolved_at.is_(None),
                ))
                .values(resolved_at=as_utc(at), resolved_by=resolved_by)
            )
            result = await s.execute(stmt)
            return result.rowcount == 1

    # ── Idempotency keys ───────────────────────────────────

    async def claim_effect(self, effect_key: str, entity_id: str, rule_id: str,
                           at: datetime) -> bool:
        try:
            async with self.db.session() as s:
                s.add(ActionEffectRow(effect_key=effect_key, entity_id=entity_id,
                                      rule_id=rule_id, created_at=as_utc(at)))
        except IntegrityError:
            return False
        return True

    async def claim_sla_breach(self, entity_id: str, episode_key: str,
                               at: datetime) -> bool:
        try:
            async with self.db.session() as s:
                s.add(SlaBreachRow(entity_id=entity_id, episode_key=episode_key,
                                   breached_at=as_utc(at)))
        except IntegrityError:
            return False
        return True

    async def release_sla_breach(self, entity_id: str, episode_key: str) -> None:
        async with self.db.session() as s:
            await s.execute(
                delete(SlaBreachRow).where(and_(
                    SlaBreachRow.entity_id == entity_id,
                    SlaBreachRow.episode_key == episode_key,
                ))
            )

    # ── Converters ─────────────────────────────────────────

    @staticmethod
    def _row_to_job(row: ReminderJobRow) -> ReminderJob:
        return ReminderJob(
            id=row.id,
            entity_id=row.entity_id,
            rule_id=row.rule_id or "",
            channel=ChannelType(row.channel),
            recipient=row.recipient or "",
            template_name=row.template_name,
            payload=row.payload or {},
            scheduled_at=as_utc(row.scheduled_at),
            status=JobStatus(row.status),
            attempts=row.attempts or 0,
            max_retries=row.max_retries,
            last_error=row.last_error or "",
            dedupe_key=row.dedupe_key,
            leased_by=row.leased_by or "",
            leased_at=as_utc(row.leased_at) if row.leased_at else None,
            created_at=as_utc(row.created_at),
            updated_at=as_utc(row.updated_at),
        )

    @staticmethod
    def _row_to_escalation(row: EscalationRow) -> Escalation:
        return Escalation(
            id=row.id,
            entity_id=row.entity_id,
            level=row.level,
            reason=row.reason,
            opened_at=as_utc(row.opened_at),
            resolved_at=as_utc(row.resolved_at) if row.resolved_at else None,
            resolved_by=row.resolved_by or "",
        )
