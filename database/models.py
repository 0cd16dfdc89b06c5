"""
SQLAlchemy ORM models — Cross-database compatible.

Supports: PostgreSQL, SQLite.

Key design decisions:
  - JSON type instead of PostgreSQL-specific JSONB.
  - String primary keys — no database-specific sequences.
  - Idempotency keys (action effects, SLA breach episodes) are primary keys,
    so insert-if-absent is a plain INSERT that fails on conflict.
  - reminder_jobs.dedupe_key is UNIQUE; NULLs are allowed more than once on
    every supported dialect.
"""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy import String, Integer, DateTime, Text, Index, JSON
from sqlalchemy.ext.asyncio import AsyncAttrs
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(AsyncAttrs, DeclarativeBase):
    """Base class for all ORM models."""
    pass


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ──────────────────────────────────────────────────────────────
#  Reminder jobs
# ──────────────────────────────────────────────────────────────

class ReminderJobRow(Base):
    __tablename__ = "reminder_jobs"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    entity_id: Mapped[str] = mapped_column(String(64), nullable=False)
    rule_id: Mapped[str] = mapped_column(String(64), default="")
    channel: Mapped[str] = mapped_column(String(16), default="IN_APP")
    recipient: Mapped[str] = mapped_column(String(256), default="")
    template_name: Mapped[str] = mapped_column(String(128), nullable=False)
    payload: Mapped[Any] = mapped_column(JSON, default=dict)

    scheduled_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    status: Mapped[str] = mapped_column(String(16), default="QUEUED")
    attempts: Mapped[int] = mapped_column(Integer, default=0)
    max_retries: Mapped[int] = mapped_column(Integer, default=3)
    last_error: Mapped[str] = mapped_column(Text, default="")
    dedupe_key: Mapped[Optional[str]] = mapped_column(String(256), unique=True, nullable=True)

    leased_by: Mapped[str] = mapped_column(String(128), default="")
    leased_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    __table_args__ = (
        Index("ix_jobs_status_scheduled", "status", "scheduled_at"),
        Index("ix_jobs_entity", "entity_id"),
    )


# ──────────────────────────────────────────────────────────────
#  Escalations
# ──────────────────────────────────────────────────────────────

class EscalationRow(Base):
    __tablename__ = "escalations"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    entity_id: Mapped[str] = mapped_column(String(64), nullable=False)
    level: Mapped[int] = mapped_column(Integer, default=1)
    reason: Mapped[str] = mapped_column(String(64), default="SLA_BREACH")
    opened_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    resolved_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    resolved_by: Mapped[str] = mapped_column(String(128), default="")

    __table_args__ = (
        Index("ix_escalations_entity_reason", "entity_id", "reason"),
    )


# ──────────────────────────────────────────────────────────────
#  Idempotency keys
# ──────────────────────────────────────────────────────────────

class ActionEffectRow(Base):
    __tablename__ = "action_effects"

    effect_key: Mapped[str] = mapped_column(String(512), primary_key=True)
    entity_id: Mapped[str] = mapped_column(String(64), nullable=False)
    rule_id: Mapped[str] = mapped_column(String(64), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)


class SlaBreachRow(Base):
    __tablename__ = "sla_breaches"

    entity_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    episode_key: Mapped[str] = mapped_column(String(256), primary_key=True)
    breached_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
