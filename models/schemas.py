"""
Core data models for the LoanFlow workflow core.
These are the universal types shared across all modules.

Predicates and actions are tagged unions: rule configuration is parsed into
these models once, at load time, so the evaluation path only ever sees
well-formed trees.
"""
from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, Field, model_validator


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _new_id(prefix: str) -> str:
    return f"{prefix}_{uuid.uuid4().hex[:12]}"


# ──────────────────────────────────────────────────────────────
#  Enums
# ──────────────────────────────────────────────────────────────

class EntityType(str, Enum):
    LEAD = "LEAD"
    CASE = "CASE"
    BANK_APP = "BANK_APP"


class TriggerType(str, Enum):
    ON_CREATE = "ON_CREATE"
    ON_STAGE_CHANGE = "ON_STAGE_CHANGE"
    TIME_BASED = "TIME_BASED"
    SLA_BREACH = "SLA_BREACH"


class ActionType(str, Enum):
    ASSIGN = "ASSIGN"
    NOTIFY = "NOTIFY"
    SCHEDULE_REMINDER = "SCHEDULE_REMINDER"
    OPEN_ESCALATION = "OPEN_ESCALATION"
    FLAG = "FLAG"
    SET_FIELD = "SET_FIELD"


class ChannelType(str, Enum):
    WHATSAPP = "WHATSAPP"
    EMAIL = "EMAIL"
    SMS = "SMS"
    IN_APP = "IN_APP"


class JobStatus(str, Enum):
    QUEUED = "QUEUED"
    SENDING = "SENDING"
    SENT = "SENT"
    FAILED = "FAILED"            # permanent, non-retryable dispatch failure
    EXHAUSTED = "EXHAUSTED"
    CANCELLED = "CANCELLED"


TERMINAL_JOB_STATUSES = frozenset({
    JobStatus.SENT, JobStatus.FAILED, JobStatus.EXHAUSTED, JobStatus.CANCELLED,
})


class SlaStatus(str, Enum):
    ON_TRACK = "ON_TRACK"
    WARNING = "WARNING"
    BREACHED = "BREACHED"


class ReminderTrigger(str, Enum):
    AWAITING = "AWAITING"
    SLA = "SLA"


class Audience(str, Enum):
    STUDENT = "STUDENT"
    BANK = "BANK"
    STAFF = "STAFF"


class ActionStatus(str, Enum):
    EXECUTED = "EXECUTED"
    SKIPPED_DUPLICATE = "SKIPPED_DUPLICATE"
    FAILED = "FAILED"


# ──────────────────────────────────────────────────────────────
#  Entities — owned by the Entity Store
# ──────────────────────────────────────────────────────────────

class WorkflowEntity(BaseModel):
    """A lead, loan case or bank application moving through stages."""
    id: str = Field(default_factory=lambda: _new_id("ent"))
    type: EntityType
    stage: str
    awaiting_party: str = ""                  # Student | Bank | Staff | Closed
    priority: str = "NORMAL"
    stage_entered_at: datetime = Field(default_factory=_utcnow)
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=_utcnow)

    def snapshot(self) -> dict[str, Any]:
        """Flat view used by the condition evaluator."""
        return {
            "id": self.id,
            "type": self.type.value,
            "stage": self.stage,
            "awaiting_party": self.awaiting_party,
            "priority": self.priority,
            "metadata": self.metadata,
        }


class StageHistoryRecord(BaseModel):
    """Audit trail entry for a stage change. `seq` is assigned by the store."""
    entity_id: str
    seq: int = 0
    from_stage: str
    to_stage: str
    actor: str = "system"
    note: str = ""
    at: datetime = Field(default_factory=_utcnow)


class TransitionMapDef(BaseModel):
    """Stage graph for one entity type, loaded from configuration."""
    scope: EntityType
    initial_stage: str
    transitions: dict[str, list[str]] = Field(default_factory=dict)


# ──────────────────────────────────────────────────────────────
#  Predicates
# ──────────────────────────────────────────────────────────────

class CompareCondition(BaseModel):
    kind: Literal["compare"] = "compare"
    field: str
    operator: Literal["eq", "neq", "gt", "gte", "lt", "lte"] = "eq"
    value: Any = None


class MembershipCondition(BaseModel):
    kind: Literal["in"] = "in"
    field: str
    values: list[Any]
    negate: bool = False


class ExistsCondition(BaseModel):
    kind: Literal["exists"] = "exists"
    field: str


class AllOf(BaseModel):
    kind: Literal["all"] = "all"
    conditions: list[Predicate] = Field(default_factory=list)


class AnyOf(BaseModel):
    kind: Literal["any"] = "any"
    conditions: list[Predicate] = Field(default_factory=list)


class NotOf(BaseModel):
    kind: Literal["not"] = "not"
    condition: Predicate


Predicate = Annotated[
    Union[CompareCondition, MembershipCondition, ExistsCondition, AllOf, AnyOf, NotOf],
    Field(discriminator="kind"),
]

AllOf.model_rebuild()
AnyOf.model_rebuild()
NotOf.model_rebuild()


# ──────────────────────────────────────────────────────────────
#  Actions
# ──────────────────────────────────────────────────────────────

PROTECTED_FIELDS = frozenset({"id", "type", "stage", "stage_entered_at"})


class AssignAction(BaseModel):
    type: Literal["ASSIGN"] = "ASSIGN"
    assignee: str = ""
    pool: list[str] = Field(default_factory=list)   # round-robin when set

    @model_validator(mode="after")
    def _needs_target(self) -> AssignAction:
        if not self.assignee and not self.pool:
            raise ValueError("ASSIGN needs an assignee or a non-empty pool")
        return self


class NotifyAction(BaseModel):
    type: Literal["NOTIFY"] = "NOTIFY"
    channel: ChannelType = ChannelType.IN_APP
    template: str
    recipient: str                                  # audience name or literal address
    delay_minutes: int = Field(default=0, ge=0)


class ScheduleReminderAction(BaseModel):
    type: Literal["SCHEDULE_REMINDER"] = "SCHEDULE_REMINDER"
    channel: ChannelType = ChannelType.IN_APP
    template: str
    recipient: str
    delay_minutes: int = Field(default=0, ge=0)
    max_retries: Optional[int] = Field(default=None, ge=1)


class OpenEscalationAction(BaseModel):
    type: Literal["OPEN_ESCALATION"] = "OPEN_ESCALATION"
    level: int = Field(default=1, ge=1)
    reason: str = "RULE"


class FlagAction(BaseModel):
    type: Literal["FLAG"] = "FLAG"
    flag: str


class SetFieldAction(BaseModel):
    type: Literal["SET_FIELD"] = "SET_FIELD"
    field: str
    value: Any = None

    @model_validator(mode="after")
    def _not_protected(self) -> SetFieldAction:
        if self.field in PROTECTED_FIELDS:
            raise ValueError(f"SET_FIELD cannot write protected field '{self.field}'")
        return self


Action = Annotated[
    Union[
        AssignAction, NotifyAction, ScheduleReminderAction,
        OpenEscalationAction, FlagAction, SetFieldAction,
    ],
    Field(discriminator="type"),
]


# ──────────────────────────────────────────────────────────────
#  Configuration records
# ──────────────────────────────────────────────────────────────

class AutomationRule(BaseModel):
    """A declarative trigger → condition → ordered actions rule."""
    id: str
    name: str = ""
    scope: EntityType
    trigger_type: TriggerType
    condition: Optional[Predicate] = None           # None matches everything
    actions: list[Action] = Field(default_factory=list)
    priority: int = 100
    active: bool = True


class StageExpectation(BaseModel):
    """Expected dwell window for a stage; drives SLA classification."""
    id: str = ""
    scope: EntityType
    stage: str
    expected_min_days: float = Field(ge=0)
    expected_max_days: float = Field(ge=0)
    student_text: str = ""
    staff_text: str = ""
    active: bool = True

    @model_validator(mode="after")
    def _ordered_window(self) -> StageExpectation:
        if self.expected_min_days > self.expected_max_days:
            raise ValueError("expected_min_days must not exceed expected_max_days")
        return self


class ReminderRule(BaseModel):
    """Template for generating reminder jobs; never executed directly."""
    id: str
    scope: EntityType = EntityType.CASE
    trigger_type: ReminderTrigger = ReminderTrigger.AWAITING
    condition: Optional[Predicate] = None
    template_name: str
    send_after_minutes: int = Field(default=0, ge=0)
    repeat_every_minutes: Optional[int] = Field(default=None, ge=1)
    max_retries: int = Field(default=3, ge=1)
    audience: Audience = Audience.STAFF
    channel: ChannelType = ChannelType.IN_APP
    active: bool = True


# ──────────────────────────────────────────────────────────────
#  Persisted core state
# ──────────────────────────────────────────────────────────────

class ReminderJob(BaseModel):
    """A concrete, time-stamped outbound message. Mutated only by the scheduler."""
    id: str = Field(default_factory=lambda: _new_id("job"))
    entity_id: str
    rule_id: str = ""
    channel: ChannelType = ChannelType.IN_APP
    recipient: str = ""
    template_name: str
    payload: dict[str, Any] = Field(default_factory=dict)
    scheduled_at: datetime = Field(default_factory=_utcnow)
    status: JobStatus = JobStatus.QUEUED
    attempts: int = 0
    max_retries: int = 3
    last_error: str = ""
    dedupe_key: Optional[str] = None
    leased_by: str = ""
    leased_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)


class Escalation(BaseModel):
    id: str = Field(default_factory=lambda: _new_id("esc"))
    entity_id: str
    level: int = Field(ge=1)
    reason: str = "SLA_BREACH"
    opened_at: datetime = Field(default_factory=_utcnow)
    resolved_at: Optional[datetime] = None
    resolved_by: str = ""

    @property
    def is_open(self) -> bool:
        return self.resolved_at is None


# ──────────────────────────────────────────────────────────────
#  Runtime values
# ──────────────────────────────────────────────────────────────

class TriggerEvent(BaseModel):
    """One concrete trigger instance for one entity."""
    trigger_type: TriggerType
    entity_id: str
    instance_id: str
    occurred_at: datetime = Field(default_factory=_utcnow)
    from_stage: Optional[str] = None
    to_stage: Optional[str] = None

    @classmethod
    def on_create(cls, entity: WorkflowEntity, at: datetime) -> TriggerEvent:
        return cls(trigger_type=TriggerType.ON_CREATE, entity_id=entity.id,
                   instance_id="create", occurred_at=at, to_stage=entity.stage)

    @classmethod
    def on_stage_change(cls, record: StageHistoryRecord) -> TriggerEvent:
        return cls(trigger_type=TriggerType.ON_STAGE_CHANGE, entity_id=record.entity_id,
                   instance_id=f"stage:{record.seq}", occurred_at=record.at,
                   from_stage=record.from_stage, to_stage=record.to_stage)

    @classmethod
    def for_stage_episode(cls, trigger_type: TriggerType, entity: WorkflowEntity,
                          at: datetime) -> TriggerEvent:
        """TIME_BASED / SLA_BREACH instance keyed by the current stage entry."""
        prefix = "sla" if trigger_type == TriggerType.SLA_BREACH else "time"
        return cls(trigger_type=trigger_type, entity_id=entity.id,
                   instance_id=f"{prefix}:{entity.stage}:{entity.stage_entered_at.isoformat()}",
                   occurred_at=at, to_stage=entity.stage)


class ActionResult(BaseModel):
    rule_id: str
    action_index: int
    action_type: ActionType
    status: ActionStatus
    retryable: bool = False
    requeued_job_id: Optional[str] = None
    error: str = ""


class SlaCheck(BaseModel):
    entity_id: str
    stage: str
    status: SlaStatus
    dwell_days: float
    expectation: Optional[StageExpectation] = None
    newly_breached: bool = False

    @property
    def student_text(self) -> str:
        return self.expectation.student_text if self.expectation else ""

    @property
    def staff_text(self) -> str:
        return self.expectation.staff_text if self.expectation else ""
