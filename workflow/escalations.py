"""
Escalation Manager — ordered escalation ladder per entity and reason.

Levels only go up while an episode is open: opening level N for a reason that
already has an open escalation at level ≥ N returns the existing one;
opening above it resolves the lower one as "superseded" and opens the new
level. Once everything for the reason is resolved, the ladder restarts.

Resolution is idempotent. A terminal-stage transition resolves every open
escalation of the entity (see core/orchestrator.py).
"""
from __future__ import annotations

import asyncio
import structlog
import zlib
from datetime import datetime
from typing import Optional

from database.store_base import WorkflowStore
from job_queue.generator import build_payload
from job_queue.scheduler import ReminderScheduler
from models.errors import EscalationNotFoundError
from models.schemas import ChannelType, Escalation, WorkflowEntity

logger = structlog.get_logger()

SUPERSEDED = "superseded"

# Per-entity serialization of open() over a fixed pool of locks
LOCK_STRIPES = 64


class EscalationManager:

    def __init__(self, store: WorkflowStore, max_level: int = 3,
                 contacts: dict[int, str] = None, scheduler: ReminderScheduler = None):
        self.store = store
        self.max_level = max(1, max_level)
        self.contacts = dict(contacts or {})
        self.scheduler = scheduler
        self._locks = [asyncio.Lock() for _ in range(LOCK_STRIPES)]

    def _lock_for(self, entity_id: str) -> asyncio.Lock:
        return self._locks[zlib.crc32(entity_id.encode()) % LOCK_STRIPES]

    async def open(self, entity: WorkflowEntity, reason: str, level: int,
                   now: datetime) -> tuple[Escalation, bool]:
        """
        Open (or keep) an escalation. Returns (escalation, created); created is
        False when an equal or higher level was already open.
        """
        level = min(max(1, level), self.max_level)

        async with self._lock_for(entity.id):
            open_now = await self.store.list_escalations(entity.id, reason=reason, open_only=True)
            highest = max(open_now, key=lambda e: e.level, default=None)

            if highest is not None and highest.level >= level:
                logger.info("escalation_already_open",
                            entity_id=entity.id, reason=reason,
                            open_level=highest.level, requested_level=level)
                return highest, False

            for lower in open_now:
                await self.store.resolve_escalation(lower.id, SUPERSEDED, now)

            escalation = await self.store.create_escalation(Escalation(
                entity_id=entity.id, level=level, reason=reason, opened_at=now,
            ))

        logger.warning("escalation_opened",
                       escalation_id=escalation.id,
                       entity_id=entity.id,
                       reason=reason,
                       level=level,
                       superseded=[e.id for e in open_now])
        await self._notify_contact(entity, escalation, now)
        return escalation, True

    async def _notify_contact(self, entity: WorkflowEntity, escalation: Escalation,
                              now: datetime) -> None:
        """Queue an email to the contact configured for the escalation level."""
        contact = self.contacts.get(escalation.level)
        if not contact or self.scheduler is None:
            return
        try:
            await self.scheduler.enqueue(
                entity_id=entity.id,
                channel=ChannelType.EMAIL,
                template_name="escalation_opened",
                recipient=contact,
                payload=build_payload(entity, escalation_id=escalation.id,
                                      level=escalation.level, reason=escalation.reason),
                scheduled_at=now,
                now=now,
                dedupe_key=f"escalation:{escalation.id}",
            )
        except Exception as e:
            logger.error("escalation_notify_failed", escalation_id=escalation.id,
                         entity_id=entity.id, error=str(e))

    async def escalate(self, entity: WorkflowEntity, reason: str,
                       now: datetime) -> tuple[Escalation, bool]:
        """Open one level above the highest open escalation for the reason."""
        open_now = await self.store.list_escalations(entity.id, reason=reason, open_only=True)
        current = max((e.level for e in open_now), default=0)
        return await self.open(entity, reason, current + 1, now)

    async def resolve(self, escalation_id: str, resolved_by: str,
                      now: datetime) -> Escalation:
        escalation = await self.store.get_escalation(escalation_id)
        if escalation is None:
            raise EscalationNotFoundError(escalation_id)
        if await self.store.resolve_escalation(escalation_id, resolved_by, now):
            logger.info("escalation_resolved", escalation_id=escalation_id,
                        entity_id=escalation.entity_id, resolved_by=resolved_by)
        return await self.store.get_escalation(escalation_id)

    async def resolve_all(self, entity_id: str, resolved_by: str, now: datetime) -> int:
        resolved = 0
        for esc in await self.store.list_escalations(entity_id, open_only=True):
            if await self.store.resolve_escalation(esc.id, resolved_by, now):
                resolved += 1
        if resolved:
            logger.info("escalations_auto_resolved", entity_id=entity_id,
                        count=resolved, resolved_by=resolved_by)
        return resolved

    async def current(self, entity_id: str, reason: str = None) -> Optional[Escalation]:
        """Highest open escalation, optionally for one reason."""
        open_now = await self.store.list_escalations(entity_id, reason=reason, open_only=True)
        return max(open_now, key=lambda e: e.level, default=None)
