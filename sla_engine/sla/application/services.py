"""
SLA Application Services
=========================

Application services orchestrate business logic and coordinate between
domain entities and repositories.

Following SOLID principles:
- Single Responsibility: Each service has one clear purpose
- Dependency Inversion: Depend on abstractions (repositories), not concrete implementations
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional

from sla_engine.core.exceptions import ResourceNotFoundException, ValidationException
from sla_engine.sla.domain import (
    AggregateStats,
    CatalogSnapshot,
    ClockEngine,
    DateRange,
    Escalation,
    EscalationPolicy,
    RuleResolver,
    SlaDefinition,
    SlaMetric,
    SlaRule,
    StatusChange,
    StatusTimeoutPolicy,
    TicketClock,
    TicketSnapshot,
)
from sla_engine.sla.domain.entities import utcnow
from sla_engine.sla.domain.resolver import ResolveResult
from sla_engine.sla.application.dto import (
    ResolveRequest,
    SlaDefinitionCreate,
    SlaDefinitionUpdate,
    SlaRuleCreate,
    SlaRuleUpdate,
    StatusTimeoutCreate,
    StatusTimeoutUpdate,
)
from sla_engine.shared.infrastructure.logging import get_logger

logger = get_logger(__name__)


# ========== Repository Interfaces (Dependency Inversion) ==========

class ISlaCatalog(ABC):
    """Tenant-scoped access to SLA definitions, rules and status policies."""

    # Read contract (active rows only)

    @abstractmethod
    async def get_active_definitions(self, tenant_id: str) -> List[SlaDefinition]:
        pass

    @abstractmethod
    async def get_rules_for_definition(self, tenant_id: str, definition_id: str) -> List[SlaRule]:
        pass

    @abstractmethod
    async def get_status_policies(self, tenant_id: str, definition_id: str) -> List[StatusTimeoutPolicy]:
        pass

    @abstractmethod
    async def get_active_rules(self, tenant_id: str) -> List[SlaRule]:
        pass

    @abstractmethod
    async def list_tenants(self) -> List[str]:
        """Tenants with at least one active definition."""

    @abstractmethod
    async def load_snapshot(self, tenant_id: str) -> CatalogSnapshot:
        pass

    # Admin contract

    @abstractmethod
    async def list_definitions(self, tenant_id: str, include_inactive: bool = False) -> List[SlaDefinition]:
        pass

    @abstractmethod
    async def get_definition(self, tenant_id: str, definition_id: str) -> Optional[SlaDefinition]:
        pass

    @abstractmethod
    async def find_active_definition_by_name(self, tenant_id: str, name: str) -> Optional[SlaDefinition]:
        pass

    @abstractmethod
    async def create_definition(self, tenant_id: str, values: Dict[str, Any]) -> SlaDefinition:
        pass

    @abstractmethod
    async def update_definition(
        self, tenant_id: str, definition_id: str, values: Dict[str, Any]
    ) -> Optional[SlaDefinition]:
        pass

    @abstractmethod
    async def list_rules(
        self, tenant_id: str, definition_id: str, include_inactive: bool = False
    ) -> List[SlaRule]:
        pass

    @abstractmethod
    async def get_rule(self, tenant_id: str, rule_id: int) -> Optional[SlaRule]:
        pass

    @abstractmethod
    async def create_rule(self, tenant_id: str, definition_id: str, values: Dict[str, Any]) -> SlaRule:
        pass

    @abstractmethod
    async def update_rule(self, tenant_id: str, rule_id: int, values: Dict[str, Any]) -> Optional[SlaRule]:
        pass

    @abstractmethod
    async def list_status_policies(
        self, tenant_id: str, definition_id: str, include_inactive: bool = False
    ) -> List[StatusTimeoutPolicy]:
        pass

    @abstractmethod
    async def get_status_policy(self, tenant_id: str, policy_id: str) -> Optional[StatusTimeoutPolicy]:
        pass

    @abstractmethod
    async def find_active_status_policy(
        self, tenant_id: str, definition_id: str, status_value: str
    ) -> Optional[StatusTimeoutPolicy]:
        pass

    @abstractmethod
    async def create_status_policy(
        self, tenant_id: str, definition_id: str, values: Dict[str, Any]
    ) -> StatusTimeoutPolicy:
        pass

    @abstractmethod
    async def update_status_policy(
        self, tenant_id: str, policy_id: str, values: Dict[str, Any]
    ) -> Optional[StatusTimeoutPolicy]:
        pass


class IEscalationRepository(ABC):
    """Escalation rows. ``create`` raises ConcurrencyConflict on a duplicate level."""

    @abstractmethod
    async def get_levels(self, tenant_id: str, ticket_id: str) -> List[int]:
        pass

    @abstractmethod
    async def create(self, escalation: Escalation) -> Escalation:
        pass

    @abstractmethod
    async def record_notification(
        self,
        tenant_id: str,
        escalation_id: str,
        status: str,
        attempted_at: datetime,
    ) -> None:
        pass

    @abstractmethod
    async def get(self, tenant_id: str, escalation_id: str) -> Optional[Escalation]:
        pass

    @abstractmethod
    async def acknowledge(
        self, tenant_id: str, escalation_id: str, user_id: str, acknowledged_at: datetime
    ) -> Optional[Escalation]:
        """Conditional pending -> acknowledged update; returns the row as stored."""

    @abstractmethod
    async def list_for_ticket(self, tenant_id: str, ticket_id: str) -> List[Escalation]:
        pass

    @abstractmethod
    async def list_pending(self, tenant_id: str, limit: int = 100, offset: int = 0) -> List[Escalation]:
        pass

    @abstractmethod
    async def list_undispatched(self, tenant_id: str, limit: int = 100) -> List[Escalation]:
        pass

    @abstractmethod
    async def list_undispatched_tenants(self) -> List[str]:
        """Tenants holding rows whose alert was never dispatched."""
        pass


class ISlaMetricRepository(ABC):
    """
    SlaMetric rows plus the tenant-wide aggregate query.

    ``create`` raises MetricConflict when the ticket already has a current row.
    """

    @abstractmethod
    async def get_current(self, tenant_id: str, ticket_id: str) -> Optional[SlaMetric]:
        pass

    @abstractmethod
    async def list_for_ticket(self, tenant_id: str, ticket_id: str) -> List[SlaMetric]:
        pass

    @abstractmethod
    async def create(self, metric: SlaMetric) -> SlaMetric:
        pass

    @abstractmethod
    async def update(self, metric: SlaMetric) -> SlaMetric:
        pass

    @abstractmethod
    async def supersede(self, tenant_id: str, metric_id: str, superseded_at: datetime) -> None:
        pass

    @abstractmethod
    async def compliance_stats(self, tenant_id: str, date_range: DateRange) -> AggregateStats:
        pass


class ITicketStore(ABC):
    """Read-only view of the help-desk platform's tickets."""

    @abstractmethod
    async def get_open_tickets_with_active_sla(self, tenant_id: str) -> List[TicketSnapshot]:
        pass

    @abstractmethod
    async def get_status_history(self, tenant_id: str, ticket_id: str) -> List[StatusChange]:
        pass

    @abstractmethod
    async def get_ticket(self, tenant_id: str, ticket_id: str) -> Optional[TicketSnapshot]:
        pass


class INotificationDispatcher(ABC):
    """Delivers escalation alerts. Returns False (or raises) on failure."""

    @abstractmethod
    async def send_escalation_alert(self, tenant_id: str, escalation: Escalation) -> bool:
        pass


class IEscalationPolicyProvider(ABC):
    """Interface for the escalation level configuration."""

    @abstractmethod
    def get_policy(self) -> EscalationPolicy:
        """Get current escalation policy."""


# ========== Application Services ==========

@dataclass(frozen=True)
class TicketEvaluation:
    """A ticket resolved and clocked against one catalog snapshot."""

    ticket: TicketSnapshot
    resolved: ResolveResult
    clock: TicketClock


class TicketSlaService:
    """
    Runs the Rule Resolver and Clock Engine for one ticket.

    Shared by the sweep, the metrics refresh and the clock endpoint so all
    three see the same numbers.
    """

    def __init__(self, ticket_store: ITicketStore, clock_engine: ClockEngine):
        self._tickets = ticket_store
        self._clock = clock_engine

    @property
    def clock_engine(self) -> ClockEngine:
        return self._clock

    async def evaluate(
        self,
        tenant_id: str,
        ticket: TicketSnapshot,
        snapshot: CatalogSnapshot,
        now: Optional[datetime] = None,
    ) -> TicketEvaluation:
        now = now or utcnow()
        resolved = RuleResolver(snapshot).resolve(tenant_id, ticket)
        history = await self._tickets.get_status_history(tenant_id, ticket.id)
        clock = self._clock.compute_clock(tenant_id, ticket, resolved, history, now, snapshot)
        return TicketEvaluation(ticket=ticket, resolved=resolved, clock=clock)

    async def evaluate_by_id(
        self,
        tenant_id: str,
        ticket_id: str,
        snapshot: CatalogSnapshot,
        now: Optional[datetime] = None,
    ) -> TicketEvaluation:
        """
        Evaluate a ticket looked up from the Ticket Store.

        Raises:
            ResourceNotFoundException: If the tenant has no such ticket
        """
        ticket = await self._tickets.get_ticket(tenant_id, ticket_id)
        if ticket is None:
            raise ResourceNotFoundException("Ticket", ticket_id)
        return await self.evaluate(tenant_id, ticket, snapshot, now)


class SlaAdminService:
    """
    Administrative operations on the SLA catalog.

    Validates input beyond what the DTOs can express (uniqueness, at least
    one target) and turns missing ids into ResourceNotFoundException.
    """

    def __init__(self, catalog: ISlaCatalog):
        self._catalog = catalog

    # ========== Definitions ==========

    async def create_definition(self, tenant_id: str, data: SlaDefinitionCreate) -> SlaDefinition:
        values = data.model_dump()
        self._require_target(values)
        await self._require_unique_name(tenant_id, values["name"])

        definition = await self._catalog.create_definition(tenant_id, values)
        logger.info(
            "SLA definition created",
            extra={"tenant_id": tenant_id, "sla_definition_id": definition.id, "sla_name": definition.name}
        )
        return definition

    async def list_definitions(self, tenant_id: str, include_inactive: bool = False) -> List[SlaDefinition]:
        return await self._catalog.list_definitions(tenant_id, include_inactive)

    async def get_definition(self, tenant_id: str, definition_id: str) -> SlaDefinition:
        definition = await self._catalog.get_definition(tenant_id, definition_id)
        if definition is None:
            raise ResourceNotFoundException("SLA definition", definition_id)
        return definition

    async def update_definition(
        self, tenant_id: str, definition_id: str, data: SlaDefinitionUpdate
    ) -> SlaDefinition:
        current = await self.get_definition(tenant_id, definition_id)
        changes = data.model_dump(exclude_unset=True)

        merged = {
            "first_response_target_minutes": current.first_response_target_minutes,
            "resolution_target_minutes": current.resolution_target_minutes,
            **changes,
        }
        self._require_target(merged)

        becomes_active = changes.get("is_active", current.is_active)
        name = changes.get("name", current.name)
        if becomes_active and (name != current.name or not current.is_active):
            await self._require_unique_name(tenant_id, name, exclude_id=definition_id)

        updated = await self._catalog.update_definition(tenant_id, definition_id, changes)
        logger.info(
            "SLA definition updated",
            extra={"tenant_id": tenant_id, "sla_definition_id": definition_id, "fields": sorted(changes)}
        )
        return updated

    async def delete_definition(self, tenant_id: str, definition_id: str) -> SlaDefinition:
        """Soft delete: the definition stops applying but its history is kept."""
        await self.get_definition(tenant_id, definition_id)
        deleted = await self._catalog.update_definition(tenant_id, definition_id, {"is_active": False})
        logger.info(
            "SLA definition deactivated",
            extra={"tenant_id": tenant_id, "sla_definition_id": definition_id}
        )
        return deleted

    # ========== Rules ==========

    async def create_rule(self, tenant_id: str, definition_id: str, data: SlaRuleCreate) -> SlaRule:
        definition = await self.get_definition(tenant_id, definition_id)
        if not definition.is_active:
            raise ValidationException.for_field(
                "sla_definition_id", "Rules can only be added to an active SLA definition"
            )
        rule = await self._catalog.create_rule(tenant_id, definition_id, data.model_dump())
        logger.info(
            "SLA rule created",
            extra={
                "tenant_id": tenant_id,
                "sla_definition_id": definition_id,
                "rule_id": rule.id,
                "field_name": rule.field_name,
            }
        )
        return rule

    async def list_rules(
        self, tenant_id: str, definition_id: str, include_inactive: bool = False
    ) -> List[SlaRule]:
        await self.get_definition(tenant_id, definition_id)
        return await self._catalog.list_rules(tenant_id, definition_id, include_inactive)

    async def get_rule(self, tenant_id: str, rule_id: int) -> SlaRule:
        rule = await self._catalog.get_rule(tenant_id, rule_id)
        if rule is None:
            raise ResourceNotFoundException("SLA rule", str(rule_id))
        return rule

    async def update_rule(self, tenant_id: str, rule_id: int, data: SlaRuleUpdate) -> SlaRule:
        await self.get_rule(tenant_id, rule_id)
        return await self._catalog.update_rule(tenant_id, rule_id, data.model_dump(exclude_unset=True))

    async def delete_rule(self, tenant_id: str, rule_id: int) -> SlaRule:
        await self.get_rule(tenant_id, rule_id)
        return await self._catalog.update_rule(tenant_id, rule_id, {"is_active": False})

    # ========== Status timeouts ==========

    async def create_status_policy(
        self, tenant_id: str, definition_id: str, data: StatusTimeoutCreate
    ) -> StatusTimeoutPolicy:
        await self.get_definition(tenant_id, definition_id)
        await self._require_unique_status(tenant_id, definition_id, data.status_value)
        return await self._catalog.create_status_policy(tenant_id, definition_id, data.model_dump())

    async def list_status_policies(
        self, tenant_id: str, definition_id: str, include_inactive: bool = False
    ) -> List[StatusTimeoutPolicy]:
        await self.get_definition(tenant_id, definition_id)
        return await self._catalog.list_status_policies(tenant_id, definition_id, include_inactive)

    async def get_status_policy(self, tenant_id: str, policy_id: str) -> StatusTimeoutPolicy:
        policy = await self._catalog.get_status_policy(tenant_id, policy_id)
        if policy is None:
            raise ResourceNotFoundException("Status timeout", policy_id)
        return policy

    async def update_status_policy(
        self, tenant_id: str, policy_id: str, data: StatusTimeoutUpdate
    ) -> StatusTimeoutPolicy:
        current = await self.get_status_policy(tenant_id, policy_id)
        changes = data.model_dump(exclude_unset=True)

        status_value = changes.get("status_value", current.status_value)
        becomes_active = changes.get("is_active", current.is_active)
        if becomes_active and (status_value != current.status_value or not current.is_active):
            await self._require_unique_status(
                tenant_id, current.sla_definition_id, status_value, exclude_id=policy_id
            )
        return await self._catalog.update_status_policy(tenant_id, policy_id, changes)

    async def delete_status_policy(self, tenant_id: str, policy_id: str) -> StatusTimeoutPolicy:
        await self.get_status_policy(tenant_id, policy_id)
        return await self._catalog.update_status_policy(tenant_id, policy_id, {"is_active": False})

    # ========== Resolution preview ==========

    async def preview_resolution(self, tenant_id: str, data: ResolveRequest) -> ResolveResult:
        """Resolve an ad-hoc ticket snapshot against the tenant's active catalog."""
        ticket = TicketSnapshot(
            id=data.ticket_id,
            tenant_id=tenant_id,
            status=data.status,
            created_at=utcnow(),
            fields=dict(data.fields),
        )
        snapshot = await self._catalog.load_snapshot(tenant_id)
        return RuleResolver(snapshot).resolve(tenant_id, ticket)

    # ========== Validation helpers ==========

    @staticmethod
    def _require_target(values: Dict[str, Any]) -> None:
        if values.get("first_response_target_minutes") is None and values.get("resolution_target_minutes") is None:
            raise ValidationException(
                "At least one SLA target is required",
                errors=[
                    {"field": "first_response_target_minutes", "message": "required when resolution_target_minutes is not set"},
                    {"field": "resolution_target_minutes", "message": "required when first_response_target_minutes is not set"},
                ],
            )

    async def _require_unique_name(
        self, tenant_id: str, name: str, exclude_id: Optional[str] = None
    ) -> None:
        existing = await self._catalog.find_active_definition_by_name(tenant_id, name)
        if existing is not None and existing.id != exclude_id:
            raise ValidationException.for_field("name", f"An active SLA named '{name}' already exists")

    async def _require_unique_status(
        self, tenant_id: str, definition_id: str, status_value: str, exclude_id: Optional[str] = None
    ) -> None:
        existing = await self._catalog.find_active_status_policy(tenant_id, definition_id, status_value)
        if existing is not None and existing.id != exclude_id:
            raise ValidationException.for_field(
                "status_value", f"A status timeout for '{status_value}' already exists on this SLA"
            )


class EscalationService:
    """
    Acknowledgement and read access to escalation records.

    Args:
        escalations: Escalation repository
        ticket_store: Used to report unknown tickets as not found
    """

    def __init__(self, escalations: IEscalationRepository, ticket_store: Optional[ITicketStore] = None):
        self._escalations = escalations
        self._tickets = ticket_store

    async def acknowledge(self, tenant_id: str, escalation_id: str, user_id: str) -> Escalation:
        """
        Acknowledge a pending escalation.

        Acknowledging an already-acknowledged escalation returns it
        unchanged (first acknowledger and timestamp are kept).

        Raises:
            ResourceNotFoundException: If the tenant has no such escalation
        """
        escalation = await self._escalations.acknowledge(tenant_id, escalation_id, user_id, utcnow())
        if escalation is None:
            raise ResourceNotFoundException("Escalation", escalation_id)

        logger.info(
            "Escalation acknowledged",
            extra={
                "tenant_id": tenant_id,
                "escalation_id": escalation_id,
                "ticket_id": escalation.ticket_id,
                "acknowledged_by": escalation.acknowledged_by,
            }
        )
        return escalation

    async def list_for_ticket(self, tenant_id: str, ticket_id: str) -> List[Escalation]:
        """
        Raises:
            ResourceNotFoundException: If the tenant has no such ticket
        """
        if self._tickets is not None and await self._tickets.get_ticket(tenant_id, ticket_id) is None:
            raise ResourceNotFoundException("Ticket", ticket_id)
        return await self._escalations.list_for_ticket(tenant_id, ticket_id)

    async def list_pending(self, tenant_id: str, limit: int = 100, offset: int = 0) -> List[Escalation]:
        return await self._escalations.list_pending(tenant_id, limit, offset)
