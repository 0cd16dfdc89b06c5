"""Shared test fixtures for the LoanFlow workflow core."""
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from channels.memory import InMemoryDispatchGateway
from config.settings import SchedulerConfig, Settings, load_settings
from core.orchestrator import WorkflowOrchestrator
from database.store_memory import InMemoryEntityStore, InMemoryWorkflowStore
from job_queue.generator import ReminderJobGenerator
from job_queue.scheduler import ReminderScheduler
from models.schemas import EntityType, WorkflowEntity
from rules.actions import ActionExecutor
from rules.engine import AutomationRuleEngine
from rules.loader import load_reminder_rules, load_stage_expectations
from workflow.escalations import EscalationManager
from workflow.sla import SlaTracker
from workflow.transitions import TransitionValidator

SHIPPED_CONFIG = Path(__file__).resolve().parent.parent / "config" / "settings.yaml"

NOW = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)

ESCALATION_CONTACTS = {
    1: "ops-lead@loanflow.example",
    2: "loan-head@loanflow.example",
}


@pytest.fixture
def now() -> datetime:
    return NOW


@pytest.fixture
def settings() -> Settings:
    """The shipped configuration file: transition maps, rules, expectations."""
    return load_settings(str(SHIPPED_CONFIG))


@pytest.fixture
def make_entity():
    """Factory for entities that have been in their stage for a given time."""
    def _make(entity_type: EntityType = EntityType.CASE, stage: str = "DOCS_PENDING",
              in_stage: timedelta = timedelta(0), **kwargs) -> WorkflowEntity:
        return WorkflowEntity(
            type=entity_type,
            stage=stage,
            stage_entered_at=NOW - in_stage,
            created_at=NOW - in_stage,
            **kwargs,
        )
    return _make


# ──────────────────────────────────────────────────────────────
#  Components
# ──────────────────────────────────────────────────────────────

@pytest.fixture
def validator(settings) -> TransitionValidator:
    return TransitionValidator.from_config(settings.transition_maps)


@pytest.fixture
def entity_store(validator) -> InMemoryEntityStore:
    store = InMemoryEntityStore()
    for scope in validator.scopes():
        store.set_terminal_stages(scope, validator.terminal_stages(scope))
    return store


@pytest.fixture
def workflow_store() -> InMemoryWorkflowStore:
    return InMemoryWorkflowStore()


@pytest.fixture
def gateway() -> InMemoryDispatchGateway:
    return InMemoryDispatchGateway()


@pytest.fixture
def scheduler_config() -> SchedulerConfig:
    return SchedulerConfig(
        retry_backoff_base=60,
        retry_backoff_cap=3600,
        dispatch_timeout_seconds=0.05,
        lease_timeout_seconds=300,
        worker_id="worker-a",
    )


@pytest.fixture
def scheduler(workflow_store, gateway, scheduler_config) -> ReminderScheduler:
    return ReminderScheduler(workflow_store, gateway, scheduler_config)


@pytest.fixture
def sla(workflow_store, settings) -> SlaTracker:
    return SlaTracker(workflow_store, load_stage_expectations(settings.stage_expectations))


@pytest.fixture
def escalations(workflow_store, scheduler) -> EscalationManager:
    return EscalationManager(workflow_store, max_level=3,
                             contacts=ESCALATION_CONTACTS, scheduler=scheduler)


@pytest.fixture
def executor(entity_store, scheduler, escalations) -> ActionExecutor:
    return ActionExecutor(entity_store, scheduler, escalations)


@pytest.fixture
def rule_engine(workflow_store, executor, scheduler) -> AutomationRuleEngine:
    """An engine with no rules loaded."""
    return AutomationRuleEngine(workflow_store, executor, scheduler)


@pytest.fixture
def generator(workflow_store, sla) -> ReminderJobGenerator:
    return ReminderJobGenerator(workflow_store, sla)


@pytest.fixture
def orchestrator(entity_store, validator, rule_engine, sla, escalations, scheduler,
                 generator, settings) -> WorkflowOrchestrator:
    """Orchestrator wired with the shipped automation and reminder rules."""
    rule_engine.load_rules(settings.automation_rules)
    return WorkflowOrchestrator(
        entities=entity_store,
        validator=validator,
        rules=rule_engine,
        sla=sla,
        escalations=escalations,
        scheduler=scheduler,
        generator=generator,
        reminder_rules=load_reminder_rules(settings.reminder_rules),
    )
