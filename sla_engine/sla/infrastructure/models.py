"""
SLA Infrastructure Models
==========================

SQLAlchemy ORM models for the SLA module.

These are the database representations of our domain entities. Every table
carries ``tenant_id`` and every query filters on it.

``tickets`` and ``ticket_status_changes`` belong to the help-desk platform;
the engine maps them read-only.
"""

from datetime import datetime, timezone
from typing import Any, Dict, Optional
from uuid import UUID, uuid4

from sqlalchemy import (
    JSON, Boolean, DateTime, Float, ForeignKey, Index, Integer, String, Text,
    UniqueConstraint, Uuid, text,
)
from sqlalchemy.orm import Mapped, mapped_column

from sla_engine.config import EscalationStatus, NotificationStatus, EscalationSeverity
from sla_engine.infrastructure.database import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ========== Catalog ==========

class SlaDefinitionModel(Base):
    """Maps to the 'sla_definitions' table."""
    __tablename__ = "sla_definitions"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)

    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    level: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    # Targets in minutes; at least one is set
    first_response_target_minutes: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    resolution_target_minutes: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)

    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow)

    __table_args__ = (
        Index("ix_sla_definitions_tenant_active", "tenant_id", "is_active"),
    )


class SlaRuleModel(Base):
    """
    Maps to the 'sla_rules' table.

    The integer id is the final precedence tie-break, so it is autoincrement.
    """
    __tablename__ = "sla_rules"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    sla_definition_id: Mapped[UUID] = mapped_column(
        Uuid, ForeignKey("sla_definitions.id"), nullable=False, index=True
    )

    field_name: Mapped[str] = mapped_column(String(100), nullable=False)
    field_value: Mapped[str] = mapped_column(String(255), nullable=False)
    priority: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow)


class StatusTimeoutPolicyModel(Base):
    """Maps to the 'sla_status_timeouts' table."""
    __tablename__ = "sla_status_timeouts"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    sla_definition_id: Mapped[UUID] = mapped_column(
        Uuid, ForeignKey("sla_definitions.id"), nullable=False, index=True
    )

    status_value: Mapped[str] = mapped_column(String(100), nullable=False)
    is_paused: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    timeout_minutes: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)

    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow)


# ========== Engine output ==========

class EscalationModel(Base):
    """
    Maps to the 'sla_escalations' table.

    The unique constraint on (tenant_id, ticket_id, level) is what keeps a
    level from being raised twice when sweeps overlap.
    """
    __tablename__ = "sla_escalations"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False)
    ticket_id: Mapped[str] = mapped_column(String(64), nullable=False)
    sla_definition_id: Mapped[UUID] = mapped_column(Uuid, nullable=False)

    level: Mapped[int] = mapped_column(Integer, nullable=False)
    clock_type: Mapped[str] = mapped_column(String(32), nullable=False)
    reason: Mapped[str] = mapped_column(Text, nullable=False, default="")
    severity: Mapped[str] = mapped_column(String(16), nullable=False, default=EscalationSeverity.LOW)
    overdue_minutes: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    escalated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_utcnow)

    status: Mapped[str] = mapped_column(String(32), nullable=False, default=EscalationStatus.PENDING)
    acknowledged_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    acknowledged_by: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    # Outcome of the alert dispatch
    notification_status: Mapped[str] = mapped_column(
        String(16), nullable=False, default=NotificationStatus.PENDING
    )
    notification_attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    notification_attempted_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        UniqueConstraint("tenant_id", "ticket_id", "level", name="uq_sla_escalations_ticket_level"),
        Index("ix_sla_escalations_tenant_status", "tenant_id", "status"),
    )


class SlaMetricModel(Base):
    """Maps to the 'sla_metrics' table. Times are minutes."""
    __tablename__ = "sla_metrics"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False)
    ticket_id: Mapped[str] = mapped_column(String(64), nullable=False)
    sla_rule_id: Mapped[int] = mapped_column(Integer, nullable=False)
    sla_definition_id: Mapped[UUID] = mapped_column(Uuid, nullable=False)
    # Rules that supplied each target; either may differ from sla_rule_id
    response_rule_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    resolution_rule_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)

    first_response_time: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    first_response_met: Mapped[Optional[bool]] = mapped_column(Boolean, nullable=True)
    resolution_time: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    resolution_met: Mapped[Optional[bool]] = mapped_column(Boolean, nullable=True)
    total_idle_time: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    overall_compliance: Mapped[Optional[bool]] = mapped_column(Boolean, nullable=True)

    is_superseded: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    superseded_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    finalized_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow)

    __table_args__ = (
        Index("ix_sla_metrics_tenant_ticket", "tenant_id", "ticket_id"),
        # At most one current row per ticket
        Index(
            "uq_sla_metrics_current",
            "tenant_id",
            "ticket_id",
            unique=True,
            sqlite_where=text("is_superseded = 0"),
            postgresql_where=text("is_superseded = false"),
        ),
        Index("ix_sla_metrics_tenant_created", "tenant_id", "created_at"),
    )


# ========== Platform tables (read-only) ==========

class TicketModel(Base):
    """Maps to the platform's 'tickets' table."""
    __tablename__ = "tickets"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)

    status: Mapped[str] = mapped_column(String(50), nullable=False)
    initial_status: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    priority: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    category: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    custom_fields: Mapped[Optional[Dict[str, Any]]] = mapped_column(JSON, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_utcnow)
    first_response_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    resolved_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)


class TicketStatusChangeModel(Base):
    """Maps to the platform's 'ticket_status_changes' log."""
    __tablename__ = "ticket_status_changes"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False)
    ticket_id: Mapped[str] = mapped_column(String(64), ForeignKey("tickets.id"), nullable=False)
    status: Mapped[str] = mapped_column(String(50), nullable=False)
    entered_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    __table_args__ = (
        Index("ix_ticket_status_changes_ticket", "tenant_id", "ticket_id", "entered_at"),
    )
