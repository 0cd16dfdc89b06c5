"""
Reminder job generation — turns reminder rules into concrete jobs.

Slots: a rule's trigger time T is the moment the awaited state began
(stage entry for AWAITING rules, the SLA breach moment for SLA rules).
Jobs of one rule, entity and T form a lineage numbered by occurrence.

    first job         once now ≥ T + send_after, scheduled at now
    following jobs    at previous.scheduled_at + repeat_every

Each scan generates at most one job per lineage, guarded by the store's
dedupe key, so a recurring rule yields one job per interval for as long as
its condition keeps holding at generation time. Missed slots are not
back-filled: when a whole interval has gone by unscanned, the next job is
scheduled at now.
"""
from __future__ import annotations

import structlog
from datetime import datetime, timedelta
from typing import Any, Optional

from database.store_base import WorkflowStore
from models.schemas import (
    ChannelType, ReminderJob, ReminderRule, ReminderTrigger, WorkflowEntity,
)
from utils.conditions import evaluate
from utils.metrics import as_utc
from workflow.sla import SlaTracker

logger = structlog.get_logger()


# Audience → metadata field holding the address, per channel
RECIPIENT_FIELDS: dict[str, dict[ChannelType, str]] = {
    "STUDENT": {
        ChannelType.WHATSAPP: "student_phone",
        ChannelType.SMS: "student_phone",
        ChannelType.EMAIL: "student_email",
        ChannelType.IN_APP: "student_id",
    },
    "BANK": {
        ChannelType.WHATSAPP: "bank_contact_phone",
        ChannelType.SMS: "bank_contact_phone",
        ChannelType.EMAIL: "bank_contact_email",
        ChannelType.IN_APP: "bank_id",
    },
    "STAFF": {
        ChannelType.WHATSAPP: "assigned_to_phone",
        ChannelType.SMS: "assigned_to_phone",
        ChannelType.EMAIL: "assigned_to_email",
        ChannelType.IN_APP: "assigned_to",
    },
}
RECIPIENT_FIELDS["EXECUTIVE"] = RECIPIENT_FIELDS["STAFF"]

_PAYLOAD_METADATA = ("student_name", "bank_name", "case_number", "next_action")


def resolve_recipient(entity: WorkflowEntity, recipient: str, channel: ChannelType) -> str:
    """
    Map an audience name to an address from entity metadata. Unmapped roles
    become "role:<NAME>"; anything else is taken as a literal address.
    """
    fields = RECIPIENT_FIELDS.get(recipient.upper())
    if fields is not None:
        value = entity.metadata.get(fields[channel])
        if value:
            return str(value)
        return f"role:{recipient.upper()}"
    if recipient.isupper():
        return f"role:{recipient}"
    return recipient


def build_payload(entity: WorkflowEntity, **extra: Any) -> dict[str, Any]:
    payload = {
        "entity_id": entity.id,
        "entity_type": entity.type.value,
        "stage": entity.stage,
        "awaiting_party": entity.awaiting_party,
    }
    for key in _PAYLOAD_METADATA:
        if key in entity.metadata:
            payload[key] = entity.metadata[key]
    payload.update(extra)
    return payload


class ReminderJobGenerator:

    def __init__(self, store: WorkflowStore, sla: SlaTracker):
        self.store = store
        self.sla = sla

    def trigger_time(self, rule: ReminderRule, entity: WorkflowEntity) -> Optional[datetime]:
        entered = as_utc(entity.stage_entered_at)
        if rule.trigger_type == ReminderTrigger.AWAITING:
            return entered
        expectation = self.sla.expectation_for(entity)
        if expectation is None:
            return None
        return entered + timedelta(days=expectation.expected_max_days)

    @staticmethod
    def next_slot(rule: ReminderRule, trigger: datetime, last: Optional[tuple[int, datetime]],
                  now: datetime) -> Optional[tuple[int, datetime]]:
        """(k, scheduled_at) of the next job in the lineage, or None if not due yet."""
        if last is None:
            if now < trigger + timedelta(minutes=rule.send_after_minutes):
                return None
            return 0, now
        if not rule.repeat_every_minutes:
            return None
        k, previous = last
        interval = timedelta(minutes=rule.repeat_every_minutes)
        next_at = as_utc(previous) + interval
        if now < next_at:
            return None
        if now >= next_at + interval:
            next_at = now
        return k + 1, next_at

    async def last_in_lineage(self, prefix: str,
                              entity_id: str) -> Optional[tuple[int, datetime]]:
        latest = None
        for job in await self.store.list_jobs(entity_id):
            if not job.dedupe_key or not job.dedupe_key.startswith(prefix):
                continue
            k = int(job.dedupe_key[len(prefix):])
            if latest is None or k > latest[0]:
                latest = (k, job.scheduled_at)
        return latest

    async def generate(self, rule: ReminderRule, entity: WorkflowEntity,
                       metrics: dict[str, Any], now: datetime) -> Optional[ReminderJob]:
        """Create the next due job of the lineage; None if nothing is due or it exists."""
        if not rule.active or rule.scope != entity.type:
            return None
        if rule.trigger_type == ReminderTrigger.SLA and not metrics.get("sla_breach"):
            return None
        if not evaluate(rule.condition, entity.snapshot(), metrics):
            return None

        trigger = self.trigger_time(rule, entity)
        if trigger is None:
            return None
        now = as_utc(now)
        lineage = f"{rule.id}:{entity.id}:{trigger.isoformat()}:"
        slot = self.next_slot(rule, trigger, await self.last_in_lineage(lineage, entity.id), now)
        if slot is None:
            return None
        k, scheduled_at = slot

        job = ReminderJob(
            entity_id=entity.id,
            rule_id=rule.id,
            channel=rule.channel,
            recipient=resolve_recipient(entity, rule.audience.value, rule.channel),
            template_name=rule.template_name,
            payload=build_payload(entity, rule_id=rule.id, occurrence=k + 1),
            scheduled_at=scheduled_at,
            max_retries=rule.max_retries,
            dedupe_key=f"{lineage}{k}",
            created_at=now,
            updated_at=now,
        )
        created = await self.store.create_job(job)
        if created is not None:
            logger.info("reminder_job_generated",
                        job_id=job.id, rule_id=rule.id, entity_id=entity.id,
                        occurrence=k + 1, scheduled_at=scheduled_at.isoformat())
        return created
