"""
Workflow Orchestrator — the entity mutation path and the polling scans.

Synchronous path (called by the CRM's write layer):

    create_entity      → persist → ON_CREATE rules
    request_transition → validate → compare-and-set stage → history record
                       → ON_STAGE_CHANGE rules
                       → terminal cleanup (escalations, queued reminders)

Polling path (called by core/poller.py once per cycle, in this order):

    1. SLA scan         — newly breached entities: open level 1 + SLA_BREACH rules
    2. TIME_BASED scan  — time-based rules, once per stage episode
    3. Reminder scan    — reminder rules → reminder jobs
    4. Reminder tick    — lease and dispatch due jobs

Scans run over non-terminal entities only. A failure on one entity is
logged with its id and the scan moves on.
"""
from __future__ import annotations

import structlog
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional

from database.store_base import EntityStore
from job_queue.generator import ReminderJobGenerator
from job_queue.scheduler import ReminderScheduler
from models.errors import EntityNotFoundError, InvalidTransitionError, StaleEntityError
from models.schemas import (
    ActionResult, Escalation, ReminderRule, SlaCheck, StageHistoryRecord,
    TriggerEvent, TriggerType, WorkflowEntity,
)
from rules.engine import AutomationRuleEngine
from utils.metrics import as_utc, compute_metrics
from workflow.escalations import EscalationManager
from workflow.sla import SlaTracker
from workflow.transitions import TransitionValidator

logger = structlog.get_logger()

SLA_REASON = "SLA_BREACH"
TERMINAL_RESOLUTION = "terminal_stage"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _resolve_now(now: Optional[datetime]) -> datetime:
    return as_utc(now) if now is not None else _utcnow()


@dataclass
class TransitionOutcome:
    entity: WorkflowEntity
    record: StageHistoryRecord
    actions: list[ActionResult] = field(default_factory=list)
    terminal: bool = False
    cancelled_jobs: int = 0
    resolved_escalations: int = 0


class WorkflowOrchestrator:

    def __init__(
        self,
        entities: EntityStore,
        validator: TransitionValidator,
        rules: AutomationRuleEngine,
        sla: SlaTracker,
        escalations: EscalationManager,
        scheduler: ReminderScheduler,
        generator: ReminderJobGenerator,
        reminder_rules: list[ReminderRule] = None,
    ):
        self.entities = entities
        self.validator = validator
        self.rules = rules
        self.sla = sla
        self.escalations = escalations
        self.scheduler = scheduler
        self.generator = generator
        self.reminder_rules = [r for r in (reminder_rules or []) if r.active]

    # ══════════════════════════════════════════════════════════
    #  Synchronous path
    # ══════════════════════════════════════════════════════════

    async def create_entity(self, entity: WorkflowEntity,
                            now: datetime = None) -> tuple[WorkflowEntity, list[ActionResult]]:
        now = _resolve_now(now)
        if entity.stage not in self.validator.stages(entity.type):
            raise InvalidTransitionError("", entity.stage,
                                         f"unknown {entity.type.value} stage '{entity.stage}'")
        entity = entity.model_copy(update={"stage_entered_at": now, "created_at": now})
        await self.entities.create_entity(entity)
        logger.info("entity_created", entity_id=entity.id,
                    entity_type=entity.type.value, stage=entity.stage)

        trigger = TriggerEvent.on_create(entity, now)
        results = await self.rules.fire(trigger, entity, compute_metrics(entity, now))
        return entity, results

    async def request_transition(self, entity_id: str, requested_stage: str,
                                 actor: str = "system", note: str = "",
                                 now: datetime = None) -> TransitionOutcome:
        """
        Move an entity to a new stage. Raises InvalidTransitionError (entity
        unchanged) when the move is not in the transition map.
        """
        now = _resolve_now(now)
        entity = await self.entities.get_entity(entity_id)
        if entity is None:
            raise EntityNotFoundError(entity_id)

        verdict = self.validator.validate(entity.type, entity.stage, requested_stage)
        if not verdict:
            logger.info("transition_rejected", entity_id=entity_id,
                        from_stage=entity.stage, to_stage=requested_stage, reason=verdict.reason)
            raise InvalidTransitionError(verdict.from_stage, verdict.to_stage, verdict.reason)

        updated = await self.entities.apply_transition(entity_id, entity.stage, requested_stage, now)
        if updated is None:
            raise StaleEntityError(entity_id, entity.stage)

        record = await self.entities.append_history(entity_id, StageHistoryRecord(
            entity_id=entity_id, from_stage=entity.stage, to_stage=requested_stage,
            actor=actor, note=note, at=now,
        ))
        logger.info("stage_transition", entity_id=entity_id, entity_type=entity.type.value,
                    from_stage=entity.stage, to_stage=requested_stage, seq=record.seq, actor=actor)

        outcome = TransitionOutcome(entity=updated, record=record,
                                    terminal=self.validator.is_terminal(updated.type, requested_stage))
        metrics = compute_metrics(updated, now, self.sla.status(updated, now))
        metrics["from_stage"] = record.from_stage
        metrics["to_stage"] = record.to_stage
        try:
            outcome.actions = await self.rules.fire(TriggerEvent.on_stage_change(record), updated, metrics)
        finally:
            # Nothing opened by the stage-change rules may outlive a terminal stage
            if outcome.terminal:
                outcome.resolved_escalations = await self.escalations.resolve_all(
                    entity_id, TERMINAL_RESOLUTION, now)
                outcome.cancelled_jobs = await self.scheduler.cancel_for_entity(entity_id, now)
        return outcome

    async def resolve_escalation(self, escalation_id: str, resolved_by: str,
                                 now: datetime = None) -> Escalation:
        return await self.escalations.resolve(escalation_id, resolved_by, _resolve_now(now))

    # ══════════════════════════════════════════════════════════
    #  Polling path
    # ══════════════════════════════════════════════════════════

    async def run_sla_scan(self, now: datetime) -> dict[str, int]:
        now = as_utc(now)
        stats = {"scanned": 0, "breached": 0, "errors": 0}
        for entity_type in self.validator.scopes():
            async for entity in self.entities.list_non_terminal(entity_type):
                stats["scanned"] += 1
                try:
                    check = await self.sla.check(entity, now)
                    if check.newly_breached:
                        try:
                            await self._on_breach(entity, check, now)
                        except Exception:
                            await self.sla.release(entity)
                            raise
                        stats["breached"] += 1
                except Exception as e:
                    logger.error("sla_scan_entity_failed", entity_id=entity.id,
                                 error=str(e), exc_info=True)
                    stats["errors"] += 1
        return stats

    async def _on_breach(self, entity: WorkflowEntity, check: SlaCheck, now: datetime) -> None:
        escalation, created = await self.escalations.open(entity, SLA_REASON, 1, now)
        logger.info("sla_breach_escalated", entity_id=entity.id, escalation_id=escalation.id,
                    level=escalation.level, created=created)

        metrics = compute_metrics(entity, now, check.status)
        trigger = TriggerEvent.for_stage_episode(TriggerType.SLA_BREACH, entity, now)
        await self.rules.fire(trigger, entity, metrics)

    async def run_time_based_scan(self, now: datetime) -> dict[str, int]:
        now = as_utc(now)
        stats = {"scanned": 0, "actions": 0, "errors": 0}
        for entity_type in self.validator.scopes():
            if not self.rules.has_rules(entity_type, TriggerType.TIME_BASED):
                continue
            async for entity in self.entities.list_non_terminal(entity_type):
                stats["scanned"] += 1
                try:
                    metrics = compute_metrics(entity, now, self.sla.status(entity, now))
                    trigger = TriggerEvent.for_stage_episode(TriggerType.TIME_BASED, entity, now)
                    stats["actions"] += len(await self.rules.fire(trigger, entity, metrics))
                except Exception as e:
                    logger.error("time_scan_entity_failed", entity_id=entity.id,
                                 error=str(e), exc_info=True)
                    stats["errors"] += 1
        return stats

    async def run_reminder_scan(self, now: datetime) -> dict[str, int]:
        now = as_utc(now)
        stats = {"scanned": 0, "generated": 0, "errors": 0}
        by_scope: dict[Any, list[ReminderRule]] = {}
        for rule in self.reminder_rules:
            by_scope.setdefault(rule.scope, []).append(rule)

        for scope, rules in by_scope.items():
            async for entity in self.entities.list_non_terminal(scope):
                stats["scanned"] += 1
                try:
                    metrics = compute_metrics(entity, now, self.sla.status(entity, now))
                    for rule in rules:
                        if await self.generator.generate(rule, entity, metrics, now):
                            stats["generated"] += 1
                except Exception as e:
                    logger.error("reminder_scan_entity_failed", entity_id=entity.id,
                                 error=str(e), exc_info=True)
                    stats["errors"] += 1
        return stats

    async def run_cycle(self, now: datetime = None) -> dict[str, dict[str, int]]:
        """One polling cycle. A failing phase is logged and the next one still runs."""
        now = _resolve_now(now)
        phases = (
            ("sla", self.run_sla_scan),
            ("time_based", self.run_time_based_scan),
            ("reminders", self.run_reminder_scan),
            ("dispatch", self.scheduler.tick),
        )
        report: dict[str, dict[str, int]] = {}
        for name, phase in phases:
            try:
                report[name] = await phase(now)
            except Exception as e:
                logger.error("cycle_phase_failed", phase=name, error=str(e), exc_info=True)
                report[name] = {"errors": 1}
        return report

    async def find_entity(self, entity_id: str) -> Optional[WorkflowEntity]:
        return await self.entities.get_entity(entity_id)
