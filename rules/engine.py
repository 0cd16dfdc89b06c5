"""
Automation Rule Engine — matches triggers to rules and runs their actions.

Flow for one trigger instance:
  1. Candidate rules: active, scope == entity.type, trigger_type matches
  2. Conditions evaluated against the entity snapshot + derived metrics
  3. Matches ordered by (priority, id)
  4. Per rule: claim the effect key "<entity>:<rule>:<trigger instance>"
     (insert-if-absent). A lost claim means this instance already ran the
     rule, so every action is reported SKIPPED_DUPLICATE.
  5. Actions run in order. A failing action never stops its siblings:
       retryable     → re-queued as a staff reminder job
       non-retryable → logged and reported FAILED

ON_CREATE / ON_STAGE_CHANGE are fired by the entity mutation path;
TIME_BASED / SLA_BREACH by the polling scans (core/orchestrator.py).
"""
from __future__ import annotations

import structlog
from typing import Any, Iterable, Optional

from database.store_base import WorkflowStore
from job_queue.generator import build_payload, resolve_recipient
from job_queue.scheduler import ReminderScheduler
from models.errors import ActionExecutionError
from models.schemas import (
    Action, ActionResult, ActionStatus, ActionType, AutomationRule, ChannelType, EntityType,
    TriggerEvent, TriggerType, WorkflowEntity,
)
from rules.actions import ActionContext, ActionExecutor
from rules.loader import load_automation_rules
from utils.conditions import evaluate

logger = structlog.get_logger()

RETRY_TEMPLATE = "automation_action_retry"


def effect_key(entity: WorkflowEntity, rule: AutomationRule, trigger: TriggerEvent) -> str:
    return f"{entity.id}:{rule.id}:{trigger.instance_id}"


# ──────────────────────────────────────────────────────────────
#  Rule Engine
# ──────────────────────────────────────────────────────────────

class AutomationRuleEngine:
    """
    Holds the active rule set and fires it against trigger instances.
    """

    def __init__(self, store: WorkflowStore, executor: ActionExecutor,
                 scheduler: ReminderScheduler):
        self.store = store
        self.executor = executor
        self.scheduler = scheduler
        self._rules: dict[str, AutomationRule] = {}
        self._index: dict[tuple[EntityType, TriggerType], list[AutomationRule]] = {}

    def load_rules(self, records: list[dict[str, Any]]):
        """Parse and register rules from YAML config. Raises RuleConfigError."""
        for rule in load_automation_rules(records):
            self.register_rule(rule)
        logger.info("rules_loaded", count=len(self._rules))

    def register_rule(self, rule: AutomationRule):
        self._rules[rule.id] = rule
        key = (rule.scope, rule.trigger_type)
        bucket = [r for r in self._index.get(key, []) if r.id != rule.id] + [rule]
        self._index[key] = sorted(bucket, key=lambda r: (r.priority, r.id))
        logger.info("rule_registered", rule_id=rule.id, scope=rule.scope.value,
                    trigger=rule.trigger_type.value, actions=len(rule.actions))

    def get_rule(self, rule_id: str) -> Optional[AutomationRule]:
        return self._rules.get(rule_id)

    def list_rules(self) -> list[AutomationRule]:
        return list(self._rules.values())

    def has_rules(self, scope: EntityType, trigger_type: TriggerType) -> bool:
        return any(r.active for r in self._index.get((scope, trigger_type), []))

    # ── Matching ──────────────────────────────────────────────

    def match(self, trigger_type: TriggerType, entity: WorkflowEntity, metrics: dict[str, Any],
              rule_set: Iterable[AutomationRule] = None) -> list[AutomationRule]:
        candidates = self._index.get((entity.type, trigger_type), []) if rule_set is None else rule_set
        snapshot = entity.snapshot()
        matched = [
            r for r in candidates
            if r.active and r.scope == entity.type and r.trigger_type == trigger_type
            and evaluate(r.condition, snapshot, metrics)
        ]
        return sorted(matched, key=lambda r: (r.priority, r.id))

    # ── Firing ────────────────────────────────────────────────

    async def fire(self, trigger: TriggerEvent, entity: WorkflowEntity, metrics: dict[str, Any],
                   rule_set: Iterable[AutomationRule] = None) -> list[ActionResult]:
        results: list[ActionResult] = []
        now = trigger.occurred_at

        for rule in self.match(trigger.trigger_type, entity, metrics, rule_set):
            key = effect_key(entity, rule, trigger)
            if not await self.store.claim_effect(key, entity.id, rule.id, now):
                logger.info("rule_already_fired", rule_id=rule.id, entity_id=entity.id,
                            trigger=trigger.instance_id)
                results.extend(
                    ActionResult(rule_id=rule.id, action_index=i, action_type=ActionType(a.type),
                                 status=ActionStatus.SKIPPED_DUPLICATE)
                    for i, a in enumerate(rule.actions)
                )
                continue

            logger.info("rule_fired", rule_id=rule.id, entity_id=entity.id,
                        trigger=trigger.trigger_type.value, instance=trigger.instance_id)
            for index, action in enumerate(rule.actions):
                ctx = ActionContext(entity=entity, rule=rule, trigger=trigger,
                                    effect_key=key, index=index, now=now)
                results.append(await self._run_action(action, ctx))

        return results

    async def _run_action(self, action: Action, ctx: ActionContext) -> ActionResult:
        action_type = ActionType(action.type)
        try:
            await self.executor.execute(action, ctx)
            return ActionResult(rule_id=ctx.rule.id, action_index=ctx.index,
                                action_type=action_type, status=ActionStatus.EXECUTED)
        except ActionExecutionError as e:
            retryable, error = e.retryable, str(e)
        except Exception as e:
            logger.error("action_unexpected_error", rule_id=ctx.rule.id, entity_id=ctx.entity.id,
                         action=action_type.value, error=str(e), exc_info=True)
            retryable, error = False, str(e)

        result = ActionResult(rule_id=ctx.rule.id, action_index=ctx.index, action_type=action_type,
                              status=ActionStatus.FAILED, retryable=retryable, error=error)
        if retryable:
            result.requeued_job_id = await self._requeue(action, ctx, error)
        else:
            logger.error("action_failed", rule_id=ctx.rule.id, entity_id=ctx.entity.id,
                         action=action_type.value, error=error)
        return result

    async def _requeue(self, action: Action, ctx: ActionContext, error: str) -> Optional[str]:
        """Hand a retryable failure to the reminder pipeline as a staff task."""
        try:
            job = await self.scheduler.enqueue(
                entity_id=ctx.entity.id,
                channel=ChannelType.IN_APP,
                template_name=RETRY_TEMPLATE,
                recipient=resolve_recipient(ctx.entity, "STAFF", ChannelType.IN_APP),
                payload=build_payload(ctx.entity, rule_id=ctx.rule.id,
                                      action=action.model_dump(mode="json"),
                                      trigger=ctx.trigger.instance_id, error=error),
                scheduled_at=ctx.now,
                now=ctx.now,
                rule_id=ctx.rule.id,
                dedupe_key=f"{ctx.action_key}:retry",
            )
        except Exception as e:
            logger.error("action_requeue_failed", rule_id=ctx.rule.id, entity_id=ctx.entity.id,
                         error=str(e))
            return None
        logger.warning("action_requeued", rule_id=ctx.rule.id, entity_id=ctx.entity.id,
                       action=action.type, job_id=job.id if job else None, error=error)
        return job.id if job else None
