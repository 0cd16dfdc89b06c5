"""Tests for derived metrics."""
from datetime import datetime, timedelta, timezone

from models.schemas import EntityType, SlaStatus, WorkflowEntity
from utils.metrics import as_utc, compute_metrics, dwell_seconds

NOW = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)


def _entity(in_stage: timedelta, **metadata) -> WorkflowEntity:
    return WorkflowEntity(type=EntityType.CASE, stage="DOCS_PENDING",
                          stage_entered_at=NOW - in_stage, metadata=metadata)


class TestAsUtc:
    def test_naive_is_treated_as_utc(self):
        assert as_utc(datetime(2026, 3, 2, 9, 0)) == NOW

    def test_aware_is_converted(self):
        ist = timezone(timedelta(hours=5, minutes=30))
        assert as_utc(datetime(2026, 3, 2, 14, 30, tzinfo=ist)) == NOW


class TestDwell:
    def test_dwell_seconds(self):
        assert dwell_seconds(_entity(timedelta(hours=2)), NOW) == 7200

    def test_dwell_never_negative(self):
        assert dwell_seconds(_entity(-timedelta(hours=1)), NOW) == 0


class TestComputeMetrics:
    def test_age_fields(self):
        m = compute_metrics(_entity(timedelta(days=1, hours=6, minutes=30)), NOW)
        assert m["age_minutes"] == 30 * 60 + 30
        assert m["age_hours"] == 30
        assert m["age_days"] == 1
        assert m["dwell_days"] > 1.27

    def test_docs_pending_flag_or_list(self):
        assert compute_metrics(_entity(timedelta(0), docs_pending=True), NOW)["docs_pending"]
        assert compute_metrics(_entity(timedelta(0), pending_docs=["PAN"]), NOW)["docs_pending"]
        assert compute_metrics(_entity(timedelta(0), pending_docs=2), NOW)["docs_pending"]
        assert not compute_metrics(_entity(timedelta(0), pending_docs=[]), NOW)["docs_pending"]
        assert not compute_metrics(_entity(timedelta(0)), NOW)["docs_pending"]

    def test_followup_overdue(self):
        past = (NOW - timedelta(minutes=45)).isoformat()
        future = (NOW + timedelta(hours=1)).isoformat()
        assert compute_metrics(_entity(timedelta(0), next_followup_at=past), NOW)["followup_overdue"]
        assert not compute_metrics(_entity(timedelta(0), next_followup_at=future),
                                   NOW)["followup_overdue"]
        assert not compute_metrics(_entity(timedelta(0), next_followup_at="soon"),
                                   NOW)["followup_overdue"]

    def test_sla_fields_only_when_status_given(self):
        entity = _entity(timedelta(days=5))
        assert "sla_status" not in compute_metrics(entity, NOW)

        m = compute_metrics(entity, NOW, SlaStatus.BREACHED)
        assert m["sla_status"] == "BREACHED"
        assert m["sla_breach"] is True
        assert compute_metrics(entity, NOW, SlaStatus.WARNING)["sla_breach"] is False
