"""
Transition Validator — decides whether a requested stage change is legal.

Each entity type (LEAD, CASE, BANK_APP) has an immutable stage graph loaded
once at process start. Validation is a pure lookup; persisting the new stage
and appending the history record is the caller's job.

Usage:
    validator = TransitionValidator.from_config(settings.transition_maps)
    verdict = validator.validate(EntityType.LEAD, "NEW", "CONTACT_ATTEMPTED")
    if not verdict:
        raise InvalidTransitionError(verdict.from_stage, verdict.to_stage, verdict.reason)
"""
from __future__ import annotations

import structlog
from types import MappingProxyType
from typing import Any, Mapping

from models.errors import TransitionMapError
from models.schemas import EntityType, TransitionMapDef

logger = structlog.get_logger()


# ──────────────────────────────────────────────────────────────
#  Verdict
# ──────────────────────────────────────────────────────────────

class TransitionVerdict:
    """Ok or Rejected(InvalidTransition{from, to})."""

    __slots__ = ("accepted", "from_stage", "to_stage", "reason")

    def __init__(self, accepted: bool, from_stage: str, to_stage: str, reason: str = ""):
        self.accepted = accepted
        self.from_stage = from_stage
        self.to_stage = to_stage
        self.reason = reason

    def __bool__(self):
        return self.accepted

    def __repr__(self):
        if self.accepted:
            return f"<Ok {self.from_stage} → {self.to_stage}>"
        return f"<Rejected {self.from_stage} → {self.to_stage}: {self.reason}>"


# ──────────────────────────────────────────────────────────────
#  Validator
# ──────────────────────────────────────────────────────────────

class TransitionValidator:

    def __init__(self, maps: list[TransitionMapDef] = None):
        self._graphs: dict[EntityType, Mapping[str, frozenset[str]]] = {}
        self._initial: dict[EntityType, str] = {}
        for m in maps or []:
            self.register_map(m)

    @classmethod
    def from_config(cls, config: list[dict[str, Any]]) -> TransitionValidator:
        """Load transition maps from YAML config list."""
        validator = cls()
        for raw in config:
            validator.register_map(TransitionMapDef(**raw))
        logger.info("transition_maps_loaded", count=len(config))
        return validator

    # ── Registration ──────────────────────────────────────────

    def register_map(self, tmap: TransitionMapDef):
        errors = self._validate_map(tmap)
        if errors:
            logger.error("invalid_transition_map", scope=tmap.scope.value, errors=errors)
            raise TransitionMapError(
                f"Invalid transition map '{tmap.scope.value}': {'; '.join(errors)}"
            )
        self._graphs[tmap.scope] = MappingProxyType(
            {stage: frozenset(targets) for stage, targets in tmap.transitions.items()}
        )
        self._initial[tmap.scope] = tmap.initial_stage
        logger.info("transition_map_registered",
                    scope=tmap.scope.value,
                    stages=len(tmap.transitions),
                    terminal=sorted(self.terminal_stages(tmap.scope)))

    @staticmethod
    def _validate_map(tmap: TransitionMapDef) -> list[str]:
        """Every target and the initial stage must be declared stages."""
        errors = []
        declared = set(tmap.transitions)

        if not declared:
            errors.append("no stages declared")
        if tmap.initial_stage not in declared:
            errors.append(f"initial_stage '{tmap.initial_stage}' not declared")

        for stage, targets in tmap.transitions.items():
            for target in targets:
                if target not in declared:
                    errors.append(f"'{stage}' → '{target}': target not declared")
                elif target == stage:
                    errors.append(f"'{stage}' lists itself as a next stage")
        return errors

    # ── Queries ───────────────────────────────────────────────

    def validate(self, entity_type: EntityType, current_stage: str,
                 requested_stage: str) -> TransitionVerdict:
        graph = self._graphs.get(entity_type)
        if graph is None:
            return TransitionVerdict(False, current_stage, requested_stage,
                                     f"no transition map for {entity_type.value}")
        if current_stage not in graph:
            return TransitionVerdict(False, current_stage, requested_stage,
                                     f"unknown stage '{current_stage}'")
        if requested_stage == current_stage:
            return TransitionVerdict(False, current_stage, requested_stage,
                                     "no-op transition")
        if requested_stage not in graph[current_stage]:
            return TransitionVerdict(False, current_stage, requested_stage,
                                     f"'{requested_stage}' not allowed from '{current_stage}'")
        return TransitionVerdict(True, current_stage, requested_stage)

    def allowed(self, entity_type: EntityType, stage: str) -> frozenset[str]:
        return self._graphs.get(entity_type, {}).get(stage, frozenset())

    def stages(self, entity_type: EntityType) -> frozenset[str]:
        return frozenset(self._graphs.get(entity_type, {}))

    def is_terminal(self, entity_type: EntityType, stage: str) -> bool:
        graph = self._graphs.get(entity_type, {})
        return stage in graph and not graph[stage]

    def terminal_stages(self, entity_type: EntityType) -> frozenset[str]:
        graph = self._graphs.get(entity_type, {})
        return frozenset(s for s, targets in graph.items() if not targets)

    def initial_stage(self, entity_type: EntityType) -> str:
        return self._initial[entity_type]

    def scopes(self) -> list[EntityType]:
        return list(self._graphs)
