"""Derived metrics passed to the condition evaluator, computed at a given `now`."""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Optional

from models.schemas import SlaStatus, WorkflowEntity


def as_utc(value: datetime) -> datetime:
    """Attach UTC to naive datetimes (SQLite drops tzinfo on read)."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _parse_time(value: Any) -> Optional[datetime]:
    if isinstance(value, datetime):
        return as_utc(value)
    if isinstance(value, str) and value:
        try:
            return as_utc(datetime.fromisoformat(value))
        except ValueError:
            return None
    return None


def dwell_seconds(entity: WorkflowEntity, now: datetime) -> float:
    return max(0.0, (as_utc(now) - as_utc(entity.stage_entered_at)).total_seconds())


def compute_metrics(entity: WorkflowEntity, now: datetime,
                    sla_status: Optional[SlaStatus] = None) -> dict[str, Any]:
    seconds = dwell_seconds(entity, now)
    meta = entity.metadata

    pending = meta.get("pending_docs")
    docs_pending = bool(meta.get("docs_pending")) or (
        isinstance(pending, (int, list)) and not isinstance(pending, bool) and bool(pending)
    )

    followup_at = _parse_time(meta.get("next_followup_at"))

    metrics: dict[str, Any] = {
        "age_minutes": int(seconds // 60),
        "age_hours": int(seconds // 3600),
        "age_days": int(seconds // 86400),
        "dwell_days": seconds / 86400,
        "docs_pending": docs_pending,
        "followup_overdue": followup_at is not None and followup_at < as_utc(now),
    }
    if sla_status is not None:
        metrics["sla_status"] = sla_status.value
        metrics["sla_breach"] = sla_status == SlaStatus.BREACHED
    return metrics
