"""Tests for the escalation ladder."""
import asyncio
from datetime import timedelta

import pytest

from models.errors import EscalationNotFoundError
from models.schemas import ChannelType
from workflow.escalations import LOCK_STRIPES, SUPERSEDED


@pytest.fixture
def case(make_entity):
    return make_entity(id="case-42", metadata={"student_name": "Aarav"})


class TestOpen:
    @pytest.mark.asyncio
    async def test_open_is_idempotent_per_level(self, escalations, case, now):
        first, created = await escalations.open(case, "SLA_BREACH", 1, now)
        again, created_again = await escalations.open(case, "SLA_BREACH", 1, now)
        assert created is True
        assert created_again is False
        assert again.id == first.id

    @pytest.mark.asyncio
    async def test_higher_level_supersedes(self, escalations, workflow_store, case, now):
        low, _ = await escalations.open(case, "SLA_BREACH", 1, now)
        high, created = await escalations.open(case, "SLA_BREACH", 2, now + timedelta(hours=1))

        assert created is True
        assert high.level == 2
        superseded = await workflow_store.get_escalation(low.id)
        assert superseded.resolved_by == SUPERSEDED
        assert [e.id for e in await workflow_store.list_escalations(case.id, open_only=True)] == [high.id]

    @pytest.mark.asyncio
    async def test_levels_never_go_down(self, escalations, case, now):
        high, _ = await escalations.open(case, "SLA_BREACH", 2, now)
        kept, created = await escalations.open(case, "SLA_BREACH", 1, now)
        assert created is False
        assert kept.id == high.id

    @pytest.mark.asyncio
    async def test_reasons_are_independent(self, escalations, case, now):
        await escalations.open(case, "SLA_BREACH", 2, now)
        rule_esc, created = await escalations.open(case, "RULE", 1, now)
        assert created is True
        assert rule_esc.level == 1

    @pytest.mark.asyncio
    async def test_level_clamped_to_ladder(self, escalations, case, now):
        esc, _ = await escalations.open(case, "RULE", 9, now)
        assert esc.level == escalations.max_level

    @pytest.mark.asyncio
    async def test_concurrent_opens_create_one(self, escalations, workflow_store, case, now):
        results = await asyncio.gather(*(
            escalations.open(case, "SLA_BREACH", 1, now) for _ in range(5)
        ))
        assert sum(created for _, created in results) == 1
        assert len(await workflow_store.list_escalations(case.id)) == 1

    @pytest.mark.asyncio
    async def test_lock_pool_does_not_grow_with_entities(self, escalations, make_entity, now):
        entities = [make_entity(id=f"case-{i}") for i in range(200)]
        await asyncio.gather(*(escalations.open(e, "SLA_BREACH", 1, now) for e in entities))

        assert len(escalations._locks) == LOCK_STRIPES
        assert escalations._lock_for("case-7") is escalations._lock_for("case-7")


class TestEscalate:
    @pytest.mark.asyncio
    async def test_walks_up_the_ladder(self, escalations, case, now):
        levels = []
        for hour in range(4):
            esc, _ = await escalations.escalate(case, "SLA_BREACH", now + timedelta(hours=hour))
            levels.append(esc.level)
        assert levels == [1, 2, 3, 3]

    @pytest.mark.asyncio
    async def test_ladder_restarts_after_resolution(self, escalations, case, now):
        await escalations.escalate(case, "SLA_BREACH", now)
        await escalations.escalate(case, "SLA_BREACH", now)
        await escalations.resolve_all(case.id, "ops-lead", now)

        esc, created = await escalations.escalate(case, "SLA_BREACH", now)
        assert created is True
        assert esc.level == 1


class TestResolve:
    @pytest.mark.asyncio
    async def test_resolve_is_idempotent(self, escalations, case, now):
        esc, _ = await escalations.open(case, "SLA_BREACH", 1, now)
        first = await escalations.resolve(esc.id, "ops-lead", now + timedelta(hours=1))
        second = await escalations.resolve(esc.id, "someone-else", now + timedelta(hours=2))

        assert first.resolved_at == now + timedelta(hours=1)
        assert second.resolved_by == "ops-lead"
        assert second.resolved_at == first.resolved_at

    @pytest.mark.asyncio
    async def test_unknown_escalation(self, escalations, now):
        with pytest.raises(EscalationNotFoundError):
            await escalations.resolve("esc_missing", "ops-lead", now)

    @pytest.mark.asyncio
    async def test_resolve_all(self, escalations, case, now):
        await escalations.open(case, "SLA_BREACH", 1, now)
        await escalations.open(case, "RULE", 2, now)

        assert await escalations.resolve_all(case.id, "terminal_stage", now) == 2
        assert await escalations.resolve_all(case.id, "terminal_stage", now) == 0
        assert await escalations.current(case.id) is None


class TestContactNotification:
    @pytest.mark.asyncio
    async def test_contact_for_level_is_emailed(self, escalations, workflow_store, case, now):
        esc, _ = await escalations.open(case, "SLA_BREACH", 2, now)

        jobs = await workflow_store.list_jobs(case.id)
        assert len(jobs) == 1
        assert jobs[0].channel == ChannelType.EMAIL
        assert jobs[0].recipient == "loan-head@loanflow.example"
        assert jobs[0].template_name == "escalation_opened"
        assert jobs[0].dedupe_key == f"escalation:{esc.id}"
        assert jobs[0].payload["level"] == 2
        assert jobs[0].payload["student_name"] == "Aarav"

    @pytest.mark.asyncio
    async def test_no_contact_configured(self, escalations, workflow_store, case, now):
        await escalations.open(case, "SLA_BREACH", 3, now)
        assert await workflow_store.list_jobs(case.id) == []

    @pytest.mark.asyncio
    async def test_existing_escalation_is_not_re_notified(self, escalations, workflow_store,
                                                          case, now):
        await escalations.open(case, "SLA_BREACH", 1, now)
        await escalations.open(case, "SLA_BREACH", 1, now)
        assert len(await workflow_store.list_jobs(case.id)) == 1
