"""
Bootstrap — builds and wires the workflow core from settings.

    runtime = build_runtime(entities=crm_entity_store)
    await runtime.start()          # create tables, start the poller
    ...
    outcome = await runtime.orchestrator.request_transition(case_id, "DOCS_PENDING")
    ...
    await runtime.stop()

The entity store belongs to the host CRM; without one an in-memory store is
used. Everything else (workflow store, gateway, rules) comes from settings.
"""
from __future__ import annotations

import structlog
from dataclasses import dataclass
from typing import Optional

from dotenv import load_dotenv

from channels import DispatchGateway, create_gateway
from config.settings import Settings, get_settings
from core.orchestrator import WorkflowOrchestrator
from core.poller import WorkflowPoller
from database.session import Database
from database.store_base import EntityStore, WorkflowStore
from database.store_factory import create_workflow_store
from database.store_memory import InMemoryEntityStore
from job_queue.generator import ReminderJobGenerator
from job_queue.scheduler import ReminderScheduler
from rules.actions import ActionExecutor
from rules.engine import AutomationRuleEngine
from rules.loader import load_reminder_rules, load_stage_expectations
from workflow.escalations import EscalationManager
from workflow.sla import SlaTracker
from workflow.transitions import TransitionValidator

logger = structlog.get_logger()


@dataclass
class WorkflowRuntime:
    settings: Settings
    entities: EntityStore
    store: WorkflowStore
    database: Optional[Database]
    gateway: DispatchGateway
    orchestrator: WorkflowOrchestrator
    poller: WorkflowPoller

    async def start(self, poll: bool = True) -> None:
        if self.database is not None:
            await self.database.init()
        if poll:
            await self.poller.start()
        logger.info("loanflow_started", app=self.settings.app_name,
                    store=type(self.store).__name__, gateway=type(self.gateway).__name__)

    async def stop(self) -> None:
        await self.poller.stop()
        await self.gateway.close()
        if self.database is not None:
            await self.database.close()
        logger.info("loanflow_stopped")


def build_runtime(
    settings: Settings = None,
    entities: EntityStore = None,
    gateway: DispatchGateway = None,
) -> WorkflowRuntime:
    """
    Wire every component. Configuration errors (bad transition maps,
    malformed rules) raise here, before anything starts running.
    """
    load_dotenv()
    settings = settings or get_settings()

    validator = TransitionValidator.from_config(settings.transition_maps)

    if entities is None:
        entities = InMemoryEntityStore()
    if isinstance(entities, InMemoryEntityStore):
        for scope in validator.scopes():
            entities.set_terminal_stages(scope, validator.terminal_stages(scope))

    store, database = create_workflow_store(settings.database, echo=settings.debug)
    gateway = gateway or create_gateway(settings.gateway)

    scheduler = ReminderScheduler(store, gateway, settings.scheduler)
    sla = SlaTracker(store, load_stage_expectations(settings.stage_expectations))
    escalations = EscalationManager(
        store,
        max_level=settings.escalation.max_level,
        contacts=settings.escalation.contacts,
        scheduler=scheduler,
    )
    executor = ActionExecutor(entities, scheduler, escalations)
    rules = AutomationRuleEngine(store, executor, scheduler)
    rules.load_rules(settings.automation_rules)

    orchestrator = WorkflowOrchestrator(
        entities=entities,
        validator=validator,
        rules=rules,
        sla=sla,
        escalations=escalations,
        scheduler=scheduler,
        generator=ReminderJobGenerator(store, sla),
        reminder_rules=load_reminder_rules(settings.reminder_rules),
    )
    poller = WorkflowPoller(orchestrator, poll_interval_s=settings.scheduler.poll_interval_seconds)

    logger.info("runtime_built",
                scopes=[s.value for s in validator.scopes()],
                automation_rules=len(rules.list_rules()),
                reminder_rules=len(orchestrator.reminder_rules),
                worker_id=scheduler.worker_id)
    return WorkflowRuntime(
        settings=settings,
        entities=entities,
        store=store,
        database=database,
        gateway=gateway,
        orchestrator=orchestrator,
        poller=poller,
    )
