"""
SLA Tracker — classifies stage dwell time against stage expectations.

    dwell < min          → ON_TRACK
    min ≤ dwell ≤ max    → WARNING
    dwell > max          → BREACHED

Breach detection is episode-based: the first check that observes BREACHED
for a given stage entry claims the key "<stage>:<stage_entered_at>" in the
workflow store. Only that claim reports `newly_breached`, so the SLA_BREACH
trigger fires once per breach no matter how many scans or workers see it.
A stage change resets stage_entered_at and therefore starts a new episode.
When handling a breach fails, the claim is released and a later scan retries.
"""
from __future__ import annotations

import structlog
from datetime import datetime
from typing import Optional

from database.store_base import WorkflowStore
from models.schemas import EntityType, SlaCheck, SlaStatus, StageExpectation, WorkflowEntity
from utils.metrics import dwell_seconds

logger = structlog.get_logger()


def classify(entity: WorkflowEntity, expectation: StageExpectation, now: datetime) -> SlaStatus:
    dwell_days = dwell_seconds(entity, now) / 86400
    if dwell_days < expectation.expected_min_days:
        return SlaStatus.ON_TRACK
    if dwell_days <= expectation.expected_max_days:
        return SlaStatus.WARNING
    return SlaStatus.BREACHED


def breach_episode_key(entity: WorkflowEntity) -> str:
    return f"{entity.stage}:{entity.stage_entered_at.isoformat()}"


class SlaTracker:

    def __init__(self, store: WorkflowStore, expectations: list[StageExpectation] = None):
        self.store = store
        self._expectations: dict[tuple[EntityType, str], StageExpectation] = {}
        for exp in expectations or []:
            self.register(exp)

    def register(self, expectation: StageExpectation) -> None:
        if not expectation.active:
            return
        self._expectations[(expectation.scope, expectation.stage)] = expectation

    def expectation_for(self, entity: WorkflowEntity) -> Optional[StageExpectation]:
        return self._expectations.get((entity.type, entity.stage))

    def status(self, entity: WorkflowEntity, now: datetime) -> SlaStatus:
        """Classification without claiming a breach episode."""
        expectation = self.expectation_for(entity)
        if expectation is None:
            return SlaStatus.ON_TRACK
        return classify(entity, expectation, now)

    async def check(self, entity: WorkflowEntity, now: datetime) -> SlaCheck:
        expectation = self.expectation_for(entity)
        dwell_days = dwell_seconds(entity, now) / 86400
        status = classify(entity, expectation, now) if expectation else SlaStatus.ON_TRACK

        newly_breached = False
        if status == SlaStatus.BREACHED:
            newly_breached = await self.store.claim_sla_breach(
                entity.id, breach_episode_key(entity), now,
            )
            if newly_breached:
                logger.warning("sla_breached",
                               entity_id=entity.id,
                               entity_type=entity.type.value,
                               stage=entity.stage,
                               dwell_days=round(dwell_days, 2),
                               expected_max_days=expectation.expected_max_days)

        return SlaCheck(
            entity_id=entity.id,
            stage=entity.stage,
            status=status,
            dwell_days=dwell_days,
            expectation=expectation,
            newly_breached=newly_breached,
        )

    async def release(self, entity: WorkflowEntity) -> None:
        """Un-claim the current breach episode so the next scan reports it again."""
        await self.store.release_sla_breach(entity.id, breach_episode_key(entity))
        logger.warning("sla_breach_released", entity_id=entity.id, stage=entity.stage)
