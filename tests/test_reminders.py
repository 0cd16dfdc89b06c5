"""Tests for reminder job generation from reminder rules."""
from datetime import timedelta

import pytest

from job_queue.generator import ReminderJobGenerator, build_payload, resolve_recipient
from models.schemas import ChannelType, EntityType, ReminderRule
from rules.loader import load_reminder_rules
from utils.metrics import compute_metrics


@pytest.fixture
def reminder_rules(settings) -> dict[str, ReminderRule]:
    return {r.id: r for r in load_reminder_rules(settings.reminder_rules)}


@pytest.fixture
def awaiting_student(make_entity):
    return make_entity(
        stage="DOCS_PENDING",
        in_stage=timedelta(hours=30),
        awaiting_party="Student",
        metadata={"student_phone": "+919800000001", "student_name": "Aarav"},
    )


class TestRecurringReminder:
    @pytest.mark.asyncio
    async def test_one_job_per_interval(self, generator, workflow_store, reminder_rules,
                                        awaiting_student, now):
        rule = reminder_rules["RR-1"]

        first = await generator.generate(rule, awaiting_student,
                                         compute_metrics(awaiting_student, now), now)
        repeat = await generator.generate(rule, awaiting_student,
                                          compute_metrics(awaiting_student, now), now)
        early = now + timedelta(hours=18)
        too_soon = await generator.generate(rule, awaiting_student,
                                            compute_metrics(awaiting_student, early), early)
        later = now + timedelta(hours=24)
        second = await generator.generate(rule, awaiting_student,
                                          compute_metrics(awaiting_student, later), later)

        assert first is not None
        assert first.scheduled_at == now
        assert first.recipient == "+919800000001"
        assert first.channel == ChannelType.WHATSAPP
        assert first.max_retries == 3
        assert repeat is None
        assert too_soon is None
        assert second is not None
        assert second.scheduled_at - first.scheduled_at == timedelta(hours=24)
        assert [j.payload["occurrence"] for j in await workflow_store.list_jobs(
            awaiting_student.id)] == [1, 2]

    @pytest.mark.asyncio
    async def test_first_job_is_not_backdated(self, generator, workflow_store,
                                              reminder_rules, make_entity, now):
        entity = make_entity(in_stage=timedelta(days=5), awaiting_party="Student")
        await generator.generate(reminder_rules["RR-1"], entity, compute_metrics(entity, now), now)

        jobs = await workflow_store.list_jobs(entity.id)
        assert len(jobs) == 1
        assert jobs[0].payload["occurrence"] == 1
        assert jobs[0].scheduled_at == now

    @pytest.mark.asyncio
    async def test_missed_intervals_are_not_backfilled(self, generator, workflow_store,
                                                       reminder_rules, awaiting_student, now):
        rule = reminder_rules["RR-1"]
        await generator.generate(rule, awaiting_student,
                                 compute_metrics(awaiting_student, now), now)
        outage_end = now + timedelta(days=3, hours=5)
        resumed = await generator.generate(rule, awaiting_student,
                                           compute_metrics(awaiting_student, outage_end),
                                           outage_end)
        again = await generator.generate(rule, awaiting_student,
                                         compute_metrics(awaiting_student, outage_end),
                                         outage_end)

        assert resumed.scheduled_at == outage_end
        assert resumed.payload["occurrence"] == 2
        assert again is None
        assert len(await workflow_store.list_jobs(awaiting_student.id)) == 2

    @pytest.mark.asyncio
    async def test_new_stage_episode_restarts_lineage(self, generator, workflow_store,
                                                      reminder_rules, make_entity, now):
        rule = reminder_rules["RR-1"]
        entity = make_entity(in_stage=timedelta(hours=30), awaiting_party="Student")
        await generator.generate(rule, entity, compute_metrics(entity, now), now)

        reentered = entity.model_copy(update={"stage_entered_at": now - timedelta(hours=25)})
        restarted = await generator.generate(rule, reentered,
                                             compute_metrics(reentered, now), now)

        assert restarted is not None
        assert restarted.payload["occurrence"] == 1
        assert len(await workflow_store.list_jobs(entity.id)) == 2

    @pytest.mark.asyncio
    async def test_condition_must_hold(self, generator, reminder_rules, make_entity, now):
        entity = make_entity(in_stage=timedelta(hours=30), awaiting_party="Bank")
        assert await generator.generate(reminder_rules["RR-1"], entity,
                                        compute_metrics(entity, now), now) is None

    @pytest.mark.asyncio
    async def test_not_due_yet(self, generator, reminder_rules, make_entity, now):
        entity = make_entity(in_stage=timedelta(hours=30), awaiting_party="Student")
        rule = reminder_rules["RR-2"]
        assert await generator.generate(rule, entity, compute_metrics(entity, now), now) is None


class TestOneShotReminder:
    @pytest.mark.asyncio
    async def test_generated_once(self, generator, workflow_store, reminder_rules, make_entity, now):
        entity = make_entity(in_stage=timedelta(hours=80), awaiting_party="Student",
                             metadata={"student_email": "aarav@example.com"})
        rule = reminder_rules["RR-2"]

        for hours in (0, 24, 48):
            at = now + timedelta(hours=hours)
            await generator.generate(rule, entity, compute_metrics(entity, at), at)

        jobs = await workflow_store.list_jobs(entity.id)
        assert len(jobs) == 1
        assert jobs[0].recipient == "aarav@example.com"
        assert jobs[0].max_retries == 1


class TestSlaReminder:
    @pytest.mark.asyncio
    async def test_requires_breach(self, generator, sla, reminder_rules, make_entity, now):
        entity = make_entity(in_stage=timedelta(days=3), awaiting_party="Bank")
        metrics = compute_metrics(entity, now, sla.status(entity, now))
        assert await generator.generate(reminder_rules["RR-3"], entity, metrics, now) is None

    @pytest.mark.asyncio
    async def test_counts_from_breach_moment(self, generator, sla, reminder_rules,
                                             make_entity, now):
        entity = make_entity(in_stage=timedelta(days=6, hours=12), awaiting_party="Bank",
                             metadata={"bank_contact_email": "rm@axis.example"})
        metrics = compute_metrics(entity, now, sla.status(entity, now))

        job = await generator.generate(reminder_rules["RR-3"], entity, metrics, now)

        # DOCS_PENDING breaches after 4 days; the rule waits another 2
        assert job.scheduled_at == now
        assert job.recipient == "rm@axis.example"

    @pytest.mark.asyncio
    async def test_waits_after_breach(self, generator, sla, reminder_rules, make_entity, now):
        entity = make_entity(in_stage=timedelta(days=5, hours=12), awaiting_party="Bank")
        metrics = compute_metrics(entity, now, sla.status(entity, now))
        assert metrics["sla_breach"]
        assert await generator.generate(reminder_rules["RR-3"], entity, metrics, now) is None

    @pytest.mark.asyncio
    async def test_no_expectation_no_job(self, generator, reminder_rules, make_entity, now):
        entity = make_entity(stage="CONDITIONAL_SANCTION", in_stage=timedelta(days=30),
                             awaiting_party="Bank")
        metrics = compute_metrics(entity, now)
        metrics["sla_breach"] = True
        assert await generator.generate(reminder_rules["RR-3"], entity, metrics, now) is None


class TestHelpers:
    def test_next_slot(self, reminder_rules, now):
        rule = reminder_rules["RR-1"]
        trigger = now - timedelta(hours=30)
        assert ReminderJobGenerator.next_slot(rule, now, None, now + timedelta(hours=23)) is None
        assert ReminderJobGenerator.next_slot(rule, trigger, None, now) == (0, now)
        assert ReminderJobGenerator.next_slot(
            rule, trigger, (0, now), now + timedelta(hours=23)) is None
        assert ReminderJobGenerator.next_slot(
            rule, trigger, (0, now), now + timedelta(hours=25)) == (1, now + timedelta(hours=24))
        assert ReminderJobGenerator.next_slot(
            rule, trigger, (1, now), now + timedelta(hours=50)) == (2, now + timedelta(hours=50))

    def test_next_slot_one_shot(self, reminder_rules, now):
        rule = reminder_rules["RR-2"]
        trigger = now - timedelta(days=4)
        assert ReminderJobGenerator.next_slot(rule, trigger, None, now) == (0, now)
        assert ReminderJobGenerator.next_slot(rule, trigger, (0, now),
                                              now + timedelta(days=30)) is None

    @pytest.mark.asyncio
    async def test_scope_mismatch(self, generator, reminder_rules, make_entity, now):
        lead = make_entity(EntityType.LEAD, "NEW", in_stage=timedelta(days=2),
                           awaiting_party="Student")
        assert await generator.generate(reminder_rules["RR-1"], lead,
                                        compute_metrics(lead, now), now) is None

    def test_resolve_recipient(self, make_entity):
        entity = make_entity(metadata={"assigned_to": "staff-3"})
        assert resolve_recipient(entity, "STAFF", ChannelType.IN_APP) == "staff-3"
        assert resolve_recipient(entity, "executive", ChannelType.IN_APP) == "staff-3"
        assert resolve_recipient(entity, "BANK", ChannelType.EMAIL) == "role:BANK"
        assert resolve_recipient(entity, "+919800000009", ChannelType.SMS) == "+919800000009"

    def test_build_payload(self, make_entity):
        entity = make_entity(metadata={"bank_name": "Axis", "internal_note": "x"})
        payload = build_payload(entity, rule_id="RR-1")
        assert payload["bank_name"] == "Axis"
        assert payload["rule_id"] == "RR-1"
        assert payload["stage"] == "DOCS_PENDING"
        assert "internal_note" not in payload
