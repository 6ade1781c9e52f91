"""
SLA Application Layer
======================

Application layer for SLA tracking and escalation.

Contains:
- Services: catalog administration, acknowledgement, per-ticket evaluation
- EscalationScheduler: the periodic escalation sweep
- MetricsAggregator: SlaMetric maintenance and compliance statistics
- DTOs: Data transfer objects for API serialization

This layer depends on the domain layer and repository interfaces,
but not on concrete infrastructure implementations.
"""

from sla_engine.sla.application.services import (
    ISlaCatalog,
    IEscalationRepository,
    ISlaMetricRepository,
    ITicketStore,
    INotificationDispatcher,
    IEscalationPolicyProvider,
    TicketEvaluation,
    TicketSlaService,
    SlaAdminService,
    EscalationService,
)
from sla_engine.sla.application.scheduler import (
    EscalationScheduler,
    SweepReport,
    KeyedLock,
    due_escalations,
)
from sla_engine.sla.application.metrics import MetricsAggregator, compute_metric_values

__all__ = [
    # Repository Interfaces
    "ISlaCatalog",
    "IEscalationRepository",
    "ISlaMetricRepository",
    "ITicketStore",
    "INotificationDispatcher",
    "IEscalationPolicyProvider",
    # Services
    "TicketEvaluation",
    "TicketSlaService",
    "SlaAdminService",
    "EscalationService",
    "EscalationScheduler",
    "SweepReport",
    "KeyedLock",
    "due_escalations",
    "MetricsAggregator",
    "compute_metric_values",
]
