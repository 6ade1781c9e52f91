"""
SLA Infrastructure Layer
=========================

Infrastructure implementations for SLA tracking:
- Models: SQLAlchemy ORM models
- Repositories: Data access layer (catalog, escalations, metrics, ticket store)
- External: Policy file watcher, notification webhook, sweep scheduler
"""

from sla_engine.sla.infrastructure.models import (
    SlaDefinitionModel,
    SlaRuleModel,
    StatusTimeoutPolicyModel,
    EscalationModel,
    SlaMetricModel,
    TicketModel,
    TicketStatusChangeModel,
)
from sla_engine.sla.infrastructure.repositories import (
    SQLAlchemySlaCatalogRepository,
    SQLAlchemyEscalationRepository,
    SQLAlchemySlaMetricRepository,
    SQLAlchemyTicketStore,
)
from sla_engine.sla.infrastructure.external import (
    EscalationPolicyManager,
    CircuitBreaker,
    WebhookNotificationDispatcher,
    LogNotificationDispatcher,
    SweepScheduler,
)

__all__ = [
    "SlaDefinitionModel",
    "SlaRuleModel",
    "StatusTimeoutPolicyModel",
    "EscalationModel",
    "SlaMetricModel",
    "TicketModel",
    "TicketStatusChangeModel",
    "SQLAlchemySlaCatalogRepository",
    "SQLAlchemyEscalationRepository",
    "SQLAlchemySlaMetricRepository",
    "SQLAlchemyTicketStore",
    "EscalationPolicyManager",
    "CircuitBreaker",
    "WebhookNotificationDispatcher",
    "LogNotificationDispatcher",
    "SweepScheduler",
]
