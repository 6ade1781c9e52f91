"""
SLA Domain Layer
================

Domain layer for SLA tracking and escalation.

Contains:
- Entities: catalog entries, ticket read model, escalations, metrics
- Value Objects: escalation policy, catalog snapshot
- Domain Services: RuleResolver and ClockEngine (pure, no I/O)

This layer has no dependencies on infrastructure - pure Python business logic.
"""

from sla_engine.sla.domain.entities import (
    SlaDefinition,
    SlaRule,
    StatusTimeoutPolicy,
    TicketSnapshot,
    StatusChange,
    StatusInterval,
    Escalation,
    SlaMetric,
    DateRange,
    AggregateStats,
)
from sla_engine.sla.domain.value_objects import (
    EscalationLevelConfig,
    EscalationPolicy,
    CatalogSnapshot,
    classify_severity,
)
from sla_engine.sla.domain.resolver import (
    NOT_APPLICABLE,
    RuleMatch,
    ResolvedSla,
    RuleResolver,
)
from sla_engine.sla.domain.clock import (
    ClockEngine,
    ClockResult,
    StatusTimeoutResult,
    TicketClock,
    build_intervals,
)

__all__ = [
    # Entities
    "SlaDefinition",
    "SlaRule",
    "StatusTimeoutPolicy",
    "TicketSnapshot",
    "StatusChange",
    "StatusInterval",
    "Escalation",
    "SlaMetric",
    "DateRange",
    "AggregateStats",
    # Value Objects
    "EscalationLevelConfig",
    "EscalationPolicy",
    "CatalogSnapshot",
    "classify_severity",
    # Domain Services
    "NOT_APPLICABLE",
    "RuleMatch",
    "ResolvedSla",
    "RuleResolver",
    "ClockEngine",
    "ClockResult",
    "StatusTimeoutResult",
    "TicketClock",
    "build_intervals",
]
