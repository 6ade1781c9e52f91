"""
SLA Domain Entities
====================

Pure Python domain entities for SLA tracking and escalation.

Following Domain-Driven Design principles, these entities contain
business logic and are free of infrastructure concerns. Repositories
convert ORM rows into these dataclasses before they reach the engine.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Tuple

from sla_engine.config import (
    ClockType, EscalationStatus, NotificationStatus, EscalationSeverity
)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """
    Normalize a timestamp to timezone-aware UTC.

    Naive values (SQLite returns them) are assumed to already be UTC.
    """
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def minutes_between(start: datetime, end: datetime) -> float:
    """Signed wall-clock minutes from ``start`` to ``end``."""
    return (end - start).total_seconds() / 60.0


# ========== Catalog ==========

@dataclass
class SlaDefinition:
    """
    A named set of time targets a ticket is held to.

    ``level`` orders definitions by stringency: lower is stricter and wins
    ties between rules of equal priority.
    """

    id: str
    tenant_id: str
    name: str
    level: int
    first_response_target_minutes: Optional[int] = None
    resolution_target_minutes: Optional[int] = None
    description: Optional[str] = None
    is_active: bool = True
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def __post_init__(self):
        if self.level < 1:
            raise ValueError("level must be >= 1")
        if self.first_response_target_minutes is None and self.resolution_target_minutes is None:
            raise ValueError("at least one of first response or resolution target is required")
        for target in (self.first_response_target_minutes, self.resolution_target_minutes):
            if target is not None and target <= 0:
                raise ValueError("targets must be positive minutes")

    def target_for(self, clock_type: str) -> Optional[int]:
        """Target minutes for the response or resolution clock."""
        if clock_type == ClockType.RESPONSE:
            return self.first_response_target_minutes
        return self.resolution_target_minutes


@dataclass
class SlaRule:
    """Binds a ticket field value to an SLA definition."""

    id: int
    tenant_id: str
    sla_definition_id: str
    field_name: str
    field_value: str
    priority: int = 0
    is_active: bool = True
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def matches(self, ticket: "TicketSnapshot") -> bool:
        """
        True when the ticket's field, compared as text, equals ``field_value``.

        A missing or null field never matches.
        """
        value = ticket.field_value(self.field_name)
        if value is None:
            return False
        return str(value) == self.field_value


@dataclass
class StatusTimeoutPolicy:
    """Per-status pause flag and optional time limit under one SLA."""

    id: str
    tenant_id: str
    sla_definition_id: str
    status_value: str
    is_paused: bool = False
    timeout_minutes: Optional[int] = None
    is_active: bool = True
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


# ========== Ticket read model ==========

@dataclass
class TicketSnapshot:
    """
    Read-only view of a ticket supplied by the Ticket Store.

    ``fields`` holds every matchable attribute (priority, category, custom
    fields). ``status`` is also matchable even when absent from ``fields``.
    """

    id: str
    tenant_id: str
    status: str
    created_at: datetime
    fields: Dict[str, Any] = field(default_factory=dict)
    initial_status: Optional[str] = None
    first_response_at: Optional[datetime] = None
    resolved_at: Optional[datetime] = None

    def __post_init__(self):
        self.created_at = as_utc(self.created_at)
        self.first_response_at = as_utc(self.first_response_at)
        self.resolved_at = as_utc(self.resolved_at)

    def field_value(self, name: str) -> Any:
        if name in self.fields:
            return self.fields[name]
        if name == "status":
            return self.status
        return None


@dataclass(frozen=True)
class StatusChange:
    """One entry of a ticket's status-change log."""

    status: str
    entered_at: datetime


@dataclass(frozen=True)
class StatusInterval:
    """A contiguous stretch of time a ticket spent in one status."""

    status: str
    entered_at: datetime
    exited_at: Optional[datetime] = None

    @property
    def is_open(self) -> bool:
        return self.exited_at is None


# ========== Engine output ==========

@dataclass
class Escalation:
    """
    Escalation record for one (ticket, level).

    Created by the sweep in ``pending`` state. Moves to ``acknowledged`` only
    through an explicit acknowledgement.
    """

    id: Optional[str]
    tenant_id: str
    ticket_id: str
    sla_definition_id: str
    level: int
    clock_type: str
    escalated_at: datetime
    reason: str = ""
    severity: str = EscalationSeverity.LOW
    overdue_minutes: float = 0.0
    status: str = EscalationStatus.PENDING
    acknowledged_at: Optional[datetime] = None
    acknowledged_by: Optional[str] = None
    notification_status: str = NotificationStatus.PENDING
    notification_attempts: int = 0
    notification_attempted_at: Optional[datetime] = None

    @property
    def is_pending(self) -> bool:
        return self.status == EscalationStatus.PENDING

    @property
    def is_notification_pending(self) -> bool:
        """Alert was never attempted (e.g. crash between commit and dispatch)."""
        return self.notification_status == NotificationStatus.PENDING


@dataclass
class SlaMetric:
    """
    Compliance measurements for one ticket under one rule.

    Times are minutes. A row is bound to the overall winner and to the rules
    that supplied the response and resolution targets. It is never rewritten
    with another rule's numbers; when any of those rules changes it is
    superseded instead.
    """

    id: Optional[str]
    tenant_id: str
    ticket_id: str
    sla_rule_id: int
    sla_definition_id: str
    response_rule_id: Optional[int] = None
    resolution_rule_id: Optional[int] = None
    first_response_time: Optional[float] = None
    first_response_met: Optional[bool] = None
    resolution_time: Optional[float] = None
    resolution_met: Optional[bool] = None
    total_idle_time: float = 0.0
    overall_compliance: Optional[bool] = None
    is_superseded: bool = False
    superseded_at: Optional[datetime] = None
    finalized_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def is_final(self) -> bool:
        return self.finalized_at is not None

    @property
    def binding(self) -> Tuple[int, Optional[int], Optional[int]]:
        return self.sla_rule_id, self.response_rule_id, self.resolution_rule_id


@dataclass
class DateRange:
    """Inclusive creation-date window for compliance statistics."""

    start: Optional[datetime] = None
    end: Optional[datetime] = None

    def __post_init__(self):
        self.start = as_utc(self.start)
        self.end = as_utc(self.end)


@dataclass
class AggregateStats:
    """
    Tenant-wide compliance statistics.

    Compliance values are percentages; ratios and averages are ``None`` when
    there is nothing to aggregate.
    """

    total_tickets: int = 0
    response_compliance: Optional[float] = None
    resolution_compliance: Optional[float] = None
    overall_compliance: Optional[float] = None
    avg_first_response_time: Optional[float] = None
    avg_resolution_time: Optional[float] = None
    avg_idle_time: Optional[float] = None
    sla_met_tickets: int = 0
    sla_violated_tickets: int = 0
    total_escalations: int = 0
    escalation_rate: Optional[float] = None
