"""
Exception hierarchy for the workflow core.

Validation errors propagate to the immediate caller. Execution-time errors
inside the automation and reminder pipelines are caught per action / per job.
"""
from __future__ import annotations


class WorkflowError(Exception):
    """Base class for workflow core errors."""


class InvalidTransitionError(WorkflowError):
    """A requested stage change is not in the transition map."""

    def __init__(self, from_stage: str, to_stage: str, reason: str = ""):
        self.from_stage = from_stage
        self.to_stage = to_stage
        self.reason = reason or f"'{to_stage}' is not reachable from '{from_stage}'"
        super().__init__(f"Invalid transition {from_stage} → {to_stage}: {self.reason}")


class TransitionMapError(WorkflowError, ValueError):
    pass


class EntityNotFoundError(WorkflowError, LookupError):
    def __init__(self, entity_id: str):
        self.entity_id = entity_id
        super().__init__(f"Entity '{entity_id}' not found")


class StaleEntityError(WorkflowError):
    """The entity's stage changed between read and compare-and-set write."""

    def __init__(self, entity_id: str, expected_stage: str):
        self.entity_id = entity_id
        self.expected_stage = expected_stage
        super().__init__(f"Entity '{entity_id}' is no longer in stage '{expected_stage}'")


class RuleConfigError(WorkflowError, ValueError):
    """One or more configuration records are malformed."""

    def __init__(self, errors: list[str]):
        self.errors = list(errors)
        super().__init__("Invalid workflow configuration: " + "; ".join(self.errors))


class ActionExecutionError(WorkflowError):
    def __init__(self, message: str, retryable: bool = False):
        self.retryable = retryable
        super().__init__(message)


class EscalationNotFoundError(WorkflowError, LookupError):
    def __init__(self, escalation_id: str):
        self.escalation_id = escalation_id
        super().__init__(f"Escalation '{escalation_id}' not found")
