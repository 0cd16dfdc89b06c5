"""
Action Executor — performs one typed rule action.

Every ActionType must have a handler; the executor refuses to construct
otherwise, so adding an action variant without implementing it fails at
startup rather than silently doing nothing.

NOTIFY and SCHEDULE_REMINDER never send inline: they enqueue reminder jobs
that the scheduler dispatches on its own cadence.
"""
from __future__ import annotations

import structlog
from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Optional

from database.store_base import EntityStore
from job_queue.generator import build_payload, resolve_recipient
from job_queue.scheduler import ReminderScheduler
from models.errors import ActionExecutionError, EntityNotFoundError
from models.schemas import (
    Action, ActionType, AssignAction, AutomationRule, FlagAction, NotifyAction,
    OpenEscalationAction, ScheduleReminderAction, SetFieldAction, TriggerEvent, WorkflowEntity,
)
from workflow.escalations import EscalationManager

logger = structlog.get_logger()


@dataclass
class ActionContext:
    entity: WorkflowEntity
    rule: AutomationRule
    trigger: TriggerEvent
    effect_key: str
    index: int
    now: datetime

    @property
    def action_key(self) -> str:
        return f"{self.effect_key}:{self.index}"


class ActionExecutor:

    def __init__(self, entities: EntityStore, scheduler: ReminderScheduler,
                 escalations: EscalationManager):
        self.entities = entities
        self.scheduler = scheduler
        self.escalations = escalations
        self._round_robin: dict[str, int] = defaultdict(int)

        self._handlers: dict[ActionType, Callable[[Any, ActionContext], Awaitable[Optional[str]]]] = {
            ActionType.ASSIGN: self._assign,
            ActionType.NOTIFY: self._notify,
            ActionType.SCHEDULE_REMINDER: self._schedule_reminder,
            ActionType.OPEN_ESCALATION: self._open_escalation,
            ActionType.FLAG: self._flag,
            ActionType.SET_FIELD: self._set_field,
        }
        missing = set(ActionType) - set(self._handlers)
        if missing:
            raise TypeError(f"No handler for action types: {sorted(m.value for m in missing)}")

    async def execute(self, action: Action, ctx: ActionContext) -> Optional[str]:
        """Run the action. Returns a short detail (job id, assignee, ...) for the audit log."""
        return await self._handlers[ActionType(action.type)](action, ctx)

    # ── Entity writes ─────────────────────────────────────────

    async def _patch(self, entity_id: str, patch: dict[str, Any]) -> WorkflowEntity:
        try:
            return await self.entities.update_metadata(entity_id, patch)
        except EntityNotFoundError as e:
            raise ActionExecutionError(str(e), retryable=False) from e
        except OSError as e:
            raise ActionExecutionError(f"entity store unavailable: {e}", retryable=True) from e

    async def _assign(self, action: AssignAction, ctx: ActionContext) -> str:
        assignee = action.assignee
        if not assignee:
            slot = self._round_robin[ctx.rule.id]
            assignee = action.pool[slot % len(action.pool)]
            self._round_robin[ctx.rule.id] = slot + 1
        await self._patch(ctx.entity.id, {"assigned_to": assignee})
        ctx.entity.metadata["assigned_to"] = assignee
        return assignee

    async def _flag(self, action: FlagAction, ctx: ActionContext) -> str:
        flags = list(ctx.entity.metadata.get("flags") or [])
        if action.flag not in flags:
            flags.append(action.flag)
            await self._patch(ctx.entity.id, {"flags": flags})
            ctx.entity.metadata["flags"] = flags
        return action.flag

    async def _set_field(self, action: SetFieldAction, ctx: ActionContext) -> str:
        await self._patch(ctx.entity.id, {action.field: action.value})
        ctx.entity.metadata[action.field] = action.value
        return action.field

    # ── Outbound ──────────────────────────────────────────────

    async def _enqueue(self, action: NotifyAction | ScheduleReminderAction, ctx: ActionContext,
                       max_retries: Optional[int] = None) -> str:
        try:
            job = await self.scheduler.enqueue(
                entity_id=ctx.entity.id,
                channel=action.channel,
                template_name=action.template,
                recipient=resolve_recipient(ctx.entity, action.recipient, action.channel),
                payload=build_payload(ctx.entity, rule_id=ctx.rule.id,
                                      trigger=ctx.trigger.trigger_type.value),
                scheduled_at=ctx.now + timedelta(minutes=action.delay_minutes),
                now=ctx.now,
                max_retries=max_retries,
                rule_id=ctx.rule.id,
                dedupe_key=ctx.action_key,
            )
        except OSError as e:
            raise ActionExecutionError(f"job store unavailable: {e}", retryable=True) from e
        return job.id if job else ""

    async def _notify(self, action: NotifyAction, ctx: ActionContext) -> str:
        return await self._enqueue(action, ctx)

    async def _schedule_reminder(self, action: ScheduleReminderAction, ctx: ActionContext) -> str:
        return await self._enqueue(action, ctx, max_retries=action.max_retries)

    async def _open_escalation(self, action: OpenEscalationAction, ctx: ActionContext) -> str:
        escalation, _ = await self.escalations.open(ctx.entity, action.reason, action.level, ctx.now)
        return escalation.id
