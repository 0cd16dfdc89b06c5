"""
Rule loader — turns raw configuration records into typed, validated rules.

Everything malformed is rejected here, at load time: unknown trigger or
action names, predicate trees that do not match the grammar, thresholds that
are not numbers, protected SET_FIELD targets. Errors across the whole batch
are collected and raised together as one RuleConfigError.

Two input shapes are accepted for conditions:

  Structured  {"kind": "all", "conditions": [{"kind": "compare", ...}]}
  Shorthand   {"stage": "NEW", "age_minutes": 15}
              → all(stage == "NEW", age_minutes >= 15)

Conditions and actions may also arrive as JSON text, as the CRM stores them.
"""
from __future__ import annotations

import json
import structlog
from typing import Any, Callable, Optional

from pydantic import TypeAdapter, ValidationError

from models.errors import RuleConfigError
from models.schemas import (
    Action, AllOf, AssignAction, AutomationRule, ChannelType, CompareCondition, FlagAction,
    MembershipCondition, NotifyAction, OpenEscalationAction, Predicate, ReminderRule,
    ScheduleReminderAction, SetFieldAction, StageExpectation,
)

logger = structlog.get_logger()

_PREDICATE = TypeAdapter(Predicate)
_ACTION = TypeAdapter(Action)

# Shorthand keys whose value is a lower bound rather than an exact match
THRESHOLD_METRICS = frozenset({"age_minutes", "age_hours", "age_days", "dwell_days"})

FIELD_ALIASES = {
    "awaiting_from": "awaiting_party",
}


# ──────────────────────────────────────────────────────────────
#  Predicates
# ──────────────────────────────────────────────────────────────

def _decode(raw: Any) -> Any:
    if isinstance(raw, str):
        return json.loads(raw) if raw.strip() else None
    return raw


def parse_predicate(raw: Any) -> Optional[Predicate]:
    """Parse a structured or shorthand condition. Empty means 'always'."""
    raw = _decode(raw)
    if raw is None or raw == {}:
        return None
    if not isinstance(raw, dict):
        raise ValueError(f"condition must be a mapping, got {type(raw).__name__}")
    if "kind" in raw:
        return _PREDICATE.validate_python(raw)

    comparisons = []
    for key, value in raw.items():
        field = FIELD_ALIASES.get(key, key)
        if key in THRESHOLD_METRICS:
            if isinstance(value, bool) or not isinstance(value, (int, float)):
                raise ValueError(f"threshold '{key}' must be a number, got {value!r}")
            comparisons.append(CompareCondition(field=field, operator="gte", value=value))
        elif isinstance(value, list):
            comparisons.append(MembershipCondition(field=field, values=value))
        elif isinstance(value, dict):
            raise ValueError(f"shorthand condition '{key}' cannot be a mapping")
        else:
            comparisons.append(CompareCondition(field=field, operator="eq", value=value))

    if len(comparisons) == 1:
        return comparisons[0]
    return AllOf(conditions=comparisons)


# ──────────────────────────────────────────────────────────────
#  Actions
# ──────────────────────────────────────────────────────────────

def _notify(channel: ChannelType, recipient: str, default_template: str) -> Callable[[dict], Action]:
    def build(raw: dict) -> Action:
        return NotifyAction(channel=channel, recipient=raw.get("to", recipient),
                            template=raw.get("template", default_template),
                            delay_minutes=raw.get("delay_min", 0))
    return build


# CRM action names → typed actions
LEGACY_ACTIONS: dict[str, Callable[[dict], Action]] = {
    "SEND_WHATSAPP": _notify(ChannelType.WHATSAPP, "STUDENT", "lead_intro"),
    "WHATSAPP_STUDENT": _notify(ChannelType.WHATSAPP, "STUDENT", "student_update"),
    "EMAIL_STUDENT": _notify(ChannelType.EMAIL, "STUDENT", "student_update"),
    "NOTIFY_EXECUTIVE": _notify(ChannelType.IN_APP, "EXECUTIVE", "notify_executive"),
    "REMIND_EXECUTIVE": _notify(ChannelType.IN_APP, "EXECUTIVE", "remind_executive"),
    "NOTIFY_LOAN_HEAD": _notify(ChannelType.IN_APP, "LOAN_HEAD", "notify_loan_head"),
    "ESCALATE": lambda raw: OpenEscalationAction(level=raw.get("level", 1),
                                                 reason=raw.get("reason", "RULE")),
    "FLAG_RED": lambda raw: FlagAction(flag="RED"),
    "FLAG_STUCK": lambda raw: FlagAction(flag="STUCK"),
    "ADD_BADGE": lambda raw: FlagAction(flag=f"BADGE_{str(raw.get('color', 'red')).upper()}"),
    "ASSIGN_ROUND_ROBIN": lambda raw: AssignAction(pool=raw.get("pool", [])),
    "CREATE_FOLLOWUP": lambda raw: ScheduleReminderAction(
        template=raw.get("template", "lead_followup"), recipient=raw.get("to", "EXECUTIVE"),
        delay_minutes=raw.get("delay_min", 0)),
    "SET_NEXT_ACTION": lambda raw: SetFieldAction(field="next_action", value=raw.get("text", "")),
}


def parse_action(raw: Any) -> Action:
    if not isinstance(raw, dict) or "type" not in raw:
        raise ValueError(f"action must be a mapping with a 'type', got {raw!r}")
    builder = LEGACY_ACTIONS.get(raw["type"])
    if builder is not None:
        return builder(raw)
    return _ACTION.validate_python(raw)


def parse_actions(raw: Any) -> list[Action]:
    raw = _decode(raw) or []
    if not isinstance(raw, list):
        raise ValueError("actions must be a list")
    return [parse_action(a) for a in raw]


# ──────────────────────────────────────────────────────────────
#  Records
# ──────────────────────────────────────────────────────────────

def parse_automation_rule(raw: dict[str, Any]) -> AutomationRule:
    data = dict(raw)
    data["condition"] = parse_predicate(data.pop("conditions", data.get("condition")))
    data["actions"] = parse_actions(data.get("actions"))
    if "is_active" in data:
        data["active"] = bool(data.pop("is_active"))
    return AutomationRule(**data)


def parse_reminder_rule(raw: dict[str, Any]) -> ReminderRule:
    data = dict(raw)
    data["condition"] = parse_predicate(data.get("condition"))
    if "is_active" in data:
        data["active"] = bool(data.pop("is_active"))
    return ReminderRule(**data)


def parse_stage_expectation(raw: dict[str, Any]) -> StageExpectation:
    data = dict(raw)
    if "main_status" in data:
        data["stage"] = data.pop("main_status")
    if "is_active" in data:
        data["active"] = bool(data.pop("is_active"))
    return StageExpectation(**data)


def _load_all(records: list[dict[str, Any]], parser: Callable, kind: str) -> list:
    parsed, errors = [], []
    for i, raw in enumerate(records or []):
        ident = raw.get("id", f"#{i}") if isinstance(raw, dict) else f"#{i}"
        try:
            parsed.append(parser(raw))
        except (ValidationError, ValueError, TypeError) as e:
            errors.append(f"{kind} {ident}: {e}")
    if errors:
        logger.error("workflow_config_invalid", kind=kind, errors=errors)
        raise RuleConfigError(errors)
    logger.info("workflow_config_loaded", kind=kind, count=len(parsed))
    return parsed


def load_automation_rules(records: list[dict[str, Any]]) -> list[AutomationRule]:
    rules = _load_all(records, parse_automation_rule, "automation_rule")
    seen: set[str] = set()
    duplicates = [r.id for r in rules if r.id in seen or seen.add(r.id)]
    if duplicates:
        raise RuleConfigError([f"automation_rule {d}: duplicate id" for d in duplicates])
    return rules


def load_reminder_rules(records: list[dict[str, Any]]) -> list[ReminderRule]:
    return _load_all(records, parse_reminder_rule, "reminder_rule")


def load_stage_expectations(records: list[dict[str, Any]]) -> list[StageExpectation]:
    return _load_all(records, parse_stage_expectation, "stage_expectation")
