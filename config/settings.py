"""
Configuration loader for the LoanFlow workflow core.
Reads settings from YAML file with environment variable substitution.

Besides runtime knobs, the YAML holds the workflow configuration surfaces:
transition maps, automation rules, reminder rules and stage expectations.
Those stay raw here; rules/loader.py parses and validates them.
"""
from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import yaml


@dataclass
class DatabaseConfig:
    url: str = "sqlite:///./loanflow.db"        # postgresql:// | sqlite://
    store_backend: str = "memory"                # "sql" | "memory"


@dataclass
class SchedulerConfig:
    poll_interval_seconds: int = 60
    batch_size: int = 100               # max due jobs leased per tick
    concurrency: int = 5                # max concurrent dispatches per tick
    retry_backoff_base: int = 60        # base seconds for exponential retry backoff
    retry_backoff_cap: int = 3600
    dispatch_timeout_seconds: float = 10.0
    lease_timeout_seconds: int = 300    # SENDING jobs older than this are re-queued
    default_max_retries: int = 3
    worker_id: str = ""                 # defaults to hostname:pid


@dataclass
class GatewayConfig:
    backend: str = "memory"             # "memory" | "http"
    base_url: str = ""
    api_key: str = ""
    timeout_seconds: float = 10.0
    failure_threshold: int = 5
    recovery_timeout: float = 60.0
    non_retryable_codes: list[str] = field(default_factory=lambda: [
        "INVALID_RECIPIENT", "TEMPLATE_NOT_FOUND", "OPTED_OUT",
    ])


@dataclass
class EscalationConfig:
    max_level: int = 3
    contacts: dict[int, str] = field(default_factory=dict)   # level → email


@dataclass
class Settings:
    app_name: str = "LoanFlow"
    debug: bool = False
    timezone: str = "Asia/Kolkata"
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    scheduler: SchedulerConfig = field(default_factory=SchedulerConfig)
    gateway: GatewayConfig = field(default_factory=GatewayConfig)
    escalation: EscalationConfig = field(default_factory=EscalationConfig)
    transition_maps: list[dict[str, Any]] = field(default_factory=list)
    automation_rules: list[dict[str, Any]] = field(default_factory=list)
    reminder_rules: list[dict[str, Any]] = field(default_factory=list)
    stage_expectations: list[dict[str, Any]] = field(default_factory=list)


_settings: Optional[Settings] = None


def _substitute_env_vars(value: str) -> str:
    """Replace ${VAR_NAME} patterns with environment variable values."""
    pattern = re.compile(r'\$\{(\w+)\}')
    def replacer(match):
        var_name = match.group(1)
        return os.environ.get(var_name, match.group(0))
    return pattern.sub(replacer, value)


def _process_values(obj: Any) -> Any:
    """Recursively substitute env vars in all string values."""
    if isinstance(obj, str):
        return _substitute_env_vars(obj)
    elif isinstance(obj, dict):
        return {k: _process_values(v) for k, v in obj.items()}
    elif isinstance(obj, list):
        return [_process_values(v) for v in obj]
    return obj


def _section(raw: dict[str, Any], key: str, cls: type) -> Any:
    """Build a config dataclass from a YAML section, ignoring unknown keys."""
    data = raw.get(key) or {}
    known = {k: v for k, v in data.items() if k in cls.__dataclass_fields__}
    return cls(**known)


def load_settings(config_path: str = None) -> Settings:
    """Load settings from YAML file."""
    global _settings

    if config_path is None:
        config_path = os.environ.get(
            "LOANFLOW_CONFIG",
            str(Path(__file__).parent / "settings.yaml"),
        )

    settings = Settings()

    if Path(config_path).exists():
        with open(config_path) as f:
            raw = yaml.safe_load(f) or {}
        raw = _process_values(raw)

        settings.app_name = raw.get("app_name", settings.app_name)
        settings.debug = raw.get("debug", settings.debug)
        settings.timezone = raw.get("timezone", settings.timezone)

        settings.database = _section(raw, "database", DatabaseConfig)
        settings.scheduler = _section(raw, "scheduler", SchedulerConfig)
        settings.gateway = _section(raw, "gateway", GatewayConfig)

        if "escalation" in raw:
            esc = raw["escalation"] or {}
            settings.escalation = EscalationConfig(
                max_level=int(esc.get("max_level", 3)),
                contacts={int(k): v for k, v in (esc.get("contacts") or {}).items() if v},
            )

        settings.transition_maps = raw.get("transition_maps", [])
        settings.automation_rules = raw.get("automation_rules", [])
        settings.reminder_rules = raw.get("reminder_rules", [])
        settings.stage_expectations = raw.get("stage_expectations", [])

    _settings = settings
    return settings


def get_settings() -> Settings:
    """Return cached settings or load from default path."""
    global _settings
    if _settings is None:
        _settings = load_settings()
    return _settings
