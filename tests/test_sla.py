"""Tests for SLA classification and breach episodes."""
from datetime import timedelta

import pytest

from models.schemas import EntityType, SlaStatus, StageExpectation
from workflow.sla import SlaTracker, breach_episode_key, classify

DOCS_PENDING = StageExpectation(id="SE-3", scope=EntityType.CASE, stage="DOCS_PENDING",
                                expected_min_days=1, expected_max_days=4,
                                student_text="Please upload the requested documents.",
                                staff_text="Escalate after 3 days.")


class TestClassify:
    @pytest.mark.parametrize("in_stage,expected", [
        (timedelta(hours=12), SlaStatus.ON_TRACK),
        (timedelta(days=1), SlaStatus.WARNING),
        (timedelta(days=3), SlaStatus.WARNING),
        (timedelta(days=4), SlaStatus.WARNING),
        (timedelta(days=4, seconds=1), SlaStatus.BREACHED),
        (timedelta(days=5), SlaStatus.BREACHED),
    ])
    def test_boundaries(self, make_entity, now, in_stage, expected):
        assert classify(make_entity(in_stage=in_stage), DOCS_PENDING, now) == expected

    def test_monotonic_in_dwell_time(self, make_entity, now):
        order = [SlaStatus.ON_TRACK, SlaStatus.WARNING, SlaStatus.BREACHED]
        entity = make_entity(in_stage=timedelta(0))
        ranks = [
            order.index(classify(entity, DOCS_PENDING, now + timedelta(hours=6 * step)))
            for step in range(40)
        ]
        assert ranks == sorted(ranks)

    def test_zero_width_window(self, make_entity, now):
        exp = StageExpectation(scope=EntityType.CASE, stage="DOCS_PENDING",
                               expected_min_days=0, expected_max_days=0)
        assert classify(make_entity(), exp, now) == SlaStatus.WARNING
        assert classify(make_entity(in_stage=timedelta(minutes=1)), exp, now) == SlaStatus.BREACHED


class TestSlaTracker:
    @pytest.fixture
    def tracker(self, workflow_store):
        return SlaTracker(workflow_store, [DOCS_PENDING])

    @pytest.mark.asyncio
    async def test_breach_is_reported_once_per_episode(self, tracker, make_entity, now):
        entity = make_entity(in_stage=timedelta(days=5))

        first = await tracker.check(entity, now)
        second = await tracker.check(entity, now + timedelta(hours=1))

        assert first.status == SlaStatus.BREACHED
        assert first.newly_breached is True
        assert second.status == SlaStatus.BREACHED
        assert second.newly_breached is False

    @pytest.mark.asyncio
    async def test_new_stage_entry_starts_new_episode(self, tracker, make_entity, now):
        entity = make_entity(in_stage=timedelta(days=5))
        await tracker.check(entity, now)

        # Left DOCS_PENDING and came back
        reentered = entity.model_copy(update={"stage_entered_at": now - timedelta(days=4, hours=1)})
        assert breach_episode_key(reentered) != breach_episode_key(entity)
        assert (await tracker.check(reentered, now)).newly_breached is True

    @pytest.mark.asyncio
    async def test_no_expectation_is_on_track(self, tracker, make_entity, now):
        entity = make_entity(stage="UNDER_REVIEW", in_stage=timedelta(days=90))
        check = await tracker.check(entity, now)
        assert check.status == SlaStatus.ON_TRACK
        assert check.expectation is None
        assert check.newly_breached is False
        assert check.student_text == ""

    @pytest.mark.asyncio
    async def test_texts_and_dwell(self, tracker, make_entity, now):
        check = await tracker.check(make_entity(in_stage=timedelta(days=2)), now)
        assert check.status == SlaStatus.WARNING
        assert check.dwell_days == pytest.approx(2.0)
        assert check.student_text == "Please upload the requested documents."
        assert check.staff_text == "Escalate after 3 days."

    def test_expectations_are_per_scope(self, tracker, make_entity):
        assert tracker.expectation_for(make_entity(EntityType.BANK_APP, "DOCS_PENDING")) is None
        assert tracker.expectation_for(make_entity(EntityType.CASE, "DOCS_PENDING")) is DOCS_PENDING

    def test_inactive_expectation_ignored(self, workflow_store, make_entity, now):
        inactive = DOCS_PENDING.model_copy(update={"active": False})
        tracker = SlaTracker(workflow_store, [inactive])
        assert tracker.status(make_entity(in_stage=timedelta(days=9)), now) == SlaStatus.ON_TRACK

    def test_status_does_not_claim(self, tracker, workflow_store, make_entity, now):
        entity = make_entity(in_stage=timedelta(days=5))
        assert tracker.status(entity, now) == SlaStatus.BREACHED
        assert workflow_store._breaches == {}
