"""
Reminder Scheduler — leases due reminder jobs and dispatches them.

Job lifecycle:

    QUEUED ──claim──▶ SENDING ──delivered──▶ SENT
      ▲                  │
      │   retryable,     ├──non-retryable──▶ FAILED
      └── attempts <     │
          max_retries    └──attempts ≥ max_retries──▶ EXHAUSTED

    QUEUED ──entity reached a terminal stage──▶ CANCELLED

Claiming is an atomic conditional update in the store, so any number of
workers can tick concurrently without double-sending. Each gateway call is
bounded by a timeout, and a failing job never affects the rest of the tick.
Leases held longer than `lease_timeout_seconds` (a crashed worker) go back
to QUEUED at the start of the next tick.
"""
from __future__ import annotations

import asyncio
import os
import socket
import uuid
import structlog
from datetime import datetime, timedelta
from typing import Any, Optional

from channels.base import DispatchGateway, DispatchOutcome
from config.settings import SchedulerConfig
from database.store_base import WorkflowStore
from models.schemas import ChannelType, JobStatus, ReminderJob
from utils.metrics import as_utc

logger = structlog.get_logger()


def _default_worker_id() -> str:
    return f"{socket.gethostname()}:{os.getpid()}:{uuid.uuid4().hex[:6]}"


class ReminderScheduler:

    def __init__(
        self,
        store: WorkflowStore,
        gateway: DispatchGateway,
        config: SchedulerConfig = None,
        worker_id: str = "",
    ):
        self.store = store
        self.gateway = gateway
        self.config = config or SchedulerConfig()
        self.worker_id = worker_id or self.config.worker_id or _default_worker_id()

    # ── Enqueue ───────────────────────────────────────────────

    async def enqueue(
        self,
        entity_id: str,
        channel: ChannelType,
        template_name: str,
        recipient: str,
        payload: dict[str, Any],
        scheduled_at: datetime,
        now: datetime,
        max_retries: Optional[int] = None,
        rule_id: str = "",
        dedupe_key: Optional[str] = None,
    ) -> Optional[ReminderJob]:
        scheduled_at, now = as_utc(scheduled_at), as_utc(now)
        job = ReminderJob(
            entity_id=entity_id,
            rule_id=rule_id,
            channel=channel,
            recipient=recipient,
            template_name=template_name,
            payload=payload,
            scheduled_at=scheduled_at,
            max_retries=max_retries or self.config.default_max_retries,
            dedupe_key=dedupe_key,
            created_at=now,
            updated_at=now,
        )
        created = await self.store.create_job(job)
        if created is not None:
            logger.info("reminder_job_enqueued",
                        job_id=job.id, entity_id=entity_id, template=template_name,
                        channel=channel.value, scheduled_at=scheduled_at.isoformat())
        return created

    async def cancel_for_entity(self, entity_id: str, now: datetime) -> int:
        """Cancel queued jobs for the entity that are not yet due."""
        now = as_utc(now)
        cancelled = await self.store.cancel_pending_jobs(entity_id, after=now, now=now)
        if cancelled:
            logger.info("reminder_jobs_cancelled", entity_id=entity_id, count=cancelled)
        return cancelled

    # ── Tick ──────────────────────────────────────────────────

    def backoff_seconds(self, attempts: int) -> int:
        return min(self.config.retry_backoff_base * (2 ** attempts), self.config.retry_backoff_cap)

    async def tick(self, now: datetime) -> dict[str, int]:
        """
        Single dispatch pass:
        1. Re-queue stale leases
        2. List due QUEUED jobs
        3. Claim, send and finalize each one (bounded concurrency)

        Returns counts: {"due", "sent", "retried", "exhausted", "failed", "skipped", "errors", "released"}
        """
        now = as_utc(now)
        stats = {"due": 0, "sent": 0, "retried": 0, "exhausted": 0,
                 "failed": 0, "skipped": 0, "errors": 0, "released": 0}

        stale_before = now - timedelta(seconds=self.config.lease_timeout_seconds)
        stats["released"] = await self.store.release_stale_leases(stale_before, now)
        if stats["released"]:
            logger.warning("stale_leases_released", count=stats["released"])

        due = await self.store.list_due_jobs(now, limit=self.config.batch_size)
        stats["due"] = len(due)
        semaphore = asyncio.Semaphore(max(1, self.config.concurrency))

        async def run(job: ReminderJob) -> str:
            async with semaphore:
                try:
                    return await self._process(job, now)
                except Exception as e:
                    logger.error("job_processing_error", job_id=job.id,
                                 entity_id=job.entity_id, error=str(e), exc_info=True)
                    return "errors"

        for outcome in await asyncio.gather(*(run(job) for job in due)):
            stats[outcome] += 1

        if stats["due"]:
            logger.info("reminder_tick_complete", worker_id=self.worker_id, **stats)
        return stats

    async def _process(self, job: ReminderJob, now: datetime) -> str:
        claimed = await self.store.claim_job(job.id, self.worker_id, now)
        if claimed is None:
            logger.debug("job_claim_lost", job_id=job.id, worker_id=self.worker_id)
            return "skipped"

        try:
            outcome = await self._dispatch(claimed)
        except Exception as e:
            logger.error("dispatch_error", job_id=job.id, error=str(e), exc_info=True)
            outcome = DispatchOutcome.failed("DISPATCH_ERROR", str(e))

        return await self._finalize(claimed, outcome, now)

    async def _dispatch(self, job: ReminderJob) -> DispatchOutcome:
        timeout = self.config.dispatch_timeout_seconds
        try:
            return await asyncio.wait_for(
                self.gateway.send(job.channel, job.template_name, job.recipient, job.payload),
                timeout=timeout,
            )
        except asyncio.TimeoutError:
            return DispatchOutcome.failed("DISPATCH_TIMEOUT", f"no response within {timeout}s")

    async def _finalize(self, job: ReminderJob, outcome: DispatchOutcome, now: datetime) -> str:
        if outcome.delivered:
            status, attempts, error, scheduled_at = (
                JobStatus.SENT, job.attempts, job.last_error, job.scheduled_at)
        else:
            attempts, error, scheduled_at = job.attempts + 1, outcome.error, job.scheduled_at
            if not outcome.retryable:
                status = JobStatus.FAILED
            elif attempts >= job.max_retries:
                status = JobStatus.EXHAUSTED
            else:
                status = JobStatus.QUEUED
                scheduled_at = now + timedelta(seconds=self.backoff_seconds(attempts))

        if not await self.store.finalize_job(job.id, job.leased_by, status, attempts,
                                             error, scheduled_at, now):
            # Lease was released and re-claimed while this worker was sending
            logger.warning("job_lease_lost", job_id=job.id, worker_id=job.leased_by,
                           outcome=status.value)
            return "skipped"

        if status == JobStatus.SENT:
            logger.info("reminder_sent", job_id=job.id, entity_id=job.entity_id,
                        template=job.template_name, channel=job.channel.value)
            return "sent"
        if status == JobStatus.FAILED:
            logger.error("reminder_failed_permanently", job_id=job.id,
                         entity_id=job.entity_id, error=error)
            return "failed"
        if status == JobStatus.EXHAUSTED:
            logger.error("reminder_exhausted", job_id=job.id, entity_id=job.entity_id,
                         attempts=attempts, error=error)
            return "exhausted"
        logger.warning("reminder_retry_scheduled", job_id=job.id, attempt=attempts,
                       max_retries=job.max_retries, retry_at=scheduled_at.isoformat(), error=error)
        return "retried"
