"""
Metrics Aggregator
==================

Maintains the per-ticket SlaMetric row and answers tenant-wide compliance
queries.

A metric row is bound to the rules that won resolution when it was written:
the overall winner and the rules that supplied the response and resolution
targets. When a later refresh resolves the ticket to a different set of
rules (or to no rule at all), the old row is superseded and, if a rule still
applies, a new row is created. Rows are never rewritten with another rule's
numbers.
"""

from datetime import datetime
from typing import Dict, Iterable, List, Optional, Tuple

from sla_engine.core.exceptions import MetricConflict, ResourceNotFoundException, ValidationException
from sla_engine.sla.application.services import (
    ISlaCatalog,
    ISlaMetricRepository,
    ITicketStore,
    TicketEvaluation,
    TicketSlaService,
)
from sla_engine.sla.domain import (
    AggregateStats,
    DateRange,
    ResolvedSla,
    RuleResolver,
    SlaMetric,
    TicketClock,
)
from sla_engine.sla.domain.entities import utcnow
from sla_engine.shared.infrastructure.logging import get_logger

logger = get_logger(__name__)


def metric_binding(resolved: ResolvedSla) -> Tuple[int, Optional[int], Optional[int]]:
    """Ids of the overall, response and resolution winners."""
    response = resolved.response.rule.id if resolved.response is not None else None
    resolution = resolved.resolution.rule.id if resolved.resolution is not None else None
    return resolved.rule.id, response, resolution


def compute_metric_values(evaluation: TicketEvaluation) -> Dict[str, object]:
    """
    Derive the SlaMetric measurements from one evaluation.

    - first_response_time: response-clock active minutes at the first response
    - first_response_met: time <= target; before a response, False once the
      response clock has breached and None otherwise
    - resolution_time / resolution_met: only once the ticket is terminal
    - total_idle_time: paused minutes of the resolution clock (response
      clock when there is no resolution target)
    - overall_compliance: AND of the applicable sub-metrics when all are
      known, else None
    """
    clock: TicketClock = evaluation.clock
    ticket = evaluation.ticket
    response, resolution = clock.response, clock.resolution

    first_response_time: Optional[float] = None
    first_response_met: Optional[bool] = None
    if response is not None:
        responded = ticket.first_response_at is not None and ticket.first_response_at <= clock.computed_at
        if responded:
            first_response_time = response.active_minutes
            first_response_met = first_response_time <= response.target_minutes
        elif response.is_breached:
            first_response_met = False

    resolution_time: Optional[float] = None
    resolution_met: Optional[bool] = None
    if resolution is not None and clock.is_terminal:
        resolution_time = resolution.active_minutes
        resolution_met = resolution_time <= resolution.target_minutes

    idle_source = resolution or response
    total_idle_time = idle_source.paused_minutes if idle_source is not None else 0.0

    applicable = []
    if response is not None:
        applicable.append(first_response_met)
    if resolution is not None:
        applicable.append(resolution_met)
    overall = None
    if applicable and all(value is not None for value in applicable):
        overall = all(applicable)

    return {
        "first_response_time": first_response_time,
        "first_response_met": first_response_met,
        "resolution_time": resolution_time,
        "resolution_met": resolution_met,
        "total_idle_time": total_idle_time,
        "overall_compliance": overall,
    }


class MetricsAggregator:
    """
    Keeps SlaMetric rows current and aggregates them per tenant.

    Args:
        catalog: SLA catalog (for the resolution snapshot)
        metrics: SlaMetric repository
        ticket_store: Read-only Ticket Store
        ticket_sla: Shared resolver + clock evaluation
    """

    def __init__(
        self,
        catalog: ISlaCatalog,
        metrics: ISlaMetricRepository,
        ticket_store: ITicketStore,
        ticket_sla: TicketSlaService,
    ):
        self._catalog = catalog
        self._metrics = metrics
        self._tickets = ticket_store
        self._ticket_sla = ticket_sla

    async def refresh_metric(
        self, tenant_id: str, ticket_id: str, now: Optional[datetime] = None
    ) -> Optional[SlaMetric]:
        """
        Recompute the current metric for one ticket.

        Returns:
            The current SlaMetric, or None when no SLA applies

        Raises:
            ResourceNotFoundException: If the tenant has no such ticket
        """
        now = now or utcnow()
        snapshot = await self._catalog.load_snapshot(tenant_id)
        evaluation = await self._ticket_sla.evaluate_by_id(tenant_id, ticket_id, snapshot, now)
        return await self.apply_evaluation(tenant_id, evaluation, now)

    async def refresh_open_tickets(self, tenant_id: str, now: Optional[datetime] = None) -> int:
        """Refresh the metric of every open ticket of a tenant. Returns the count."""
        now = now or utcnow()
        snapshot = await self._catalog.load_snapshot(tenant_id)
        if snapshot.is_empty:
            return 0

        refreshed = 0
        for ticket in await self._tickets.get_open_tickets_with_active_sla(tenant_id):
            evaluation = await self._ticket_sla.evaluate(tenant_id, ticket, snapshot, now)
            await self.apply_evaluation(tenant_id, evaluation, now)
            refreshed += 1
        return refreshed

    async def on_ticket_changed(
        self,
        tenant_id: str,
        ticket_id: str,
        changed_fields: Iterable[str],
        now: Optional[datetime] = None,
    ) -> Tuple[bool, Optional[SlaMetric]]:
        """
        React to an upstream ticket change.

        Re-resolves when any changed field is tracked (priority, category,
        status, or a field an active rule matches on). An empty change list
        is treated as "unknown" and always re-resolves.

        Returns:
            (re_resolved, current metric)
        """
        changed = set(changed_fields)
        if changed:
            snapshot = await self._catalog.load_snapshot(tenant_id)
            tracked = RuleResolver(snapshot).tracked_fields()
            if not changed & tracked:
                return False, await self._metrics.get_current(tenant_id, ticket_id)

        metric = await self.refresh_metric(tenant_id, ticket_id, now)
        return True, metric

    async def apply_evaluation(
        self, tenant_id: str, evaluation: TicketEvaluation, now: datetime
    ) -> Optional[SlaMetric]:
        """
        Write one evaluation to the metric store.

        When a concurrent writer creates the current row first, the write is
        repeated once against that row.
        """
        try:
            return await self._write(tenant_id, evaluation, now)
        except MetricConflict:
            logger.info(
                "Current metric created by another writer, retrying",
                extra={"tenant_id": tenant_id, "ticket_id": evaluation.ticket.id}
            )
            return await self._write(tenant_id, evaluation, now)

    async def _write(
        self, tenant_id: str, evaluation: TicketEvaluation, now: datetime
    ) -> Optional[SlaMetric]:
        ticket_id = evaluation.ticket.id
        resolved = evaluation.resolved
        current = await self._metrics.get_current(tenant_id, ticket_id)

        # Finalized rows stay frozen while the ticket stays closed
        if current is not None and current.is_final and evaluation.clock.is_terminal:
            return current

        if not isinstance(resolved, ResolvedSla):
            if current is not None:
                await self._metrics.supersede(tenant_id, current.id, now)
                logger.info(
                    "SLA no longer applies, metric superseded",
                    extra={"tenant_id": tenant_id, "ticket_id": ticket_id, "metric_id": current.id}
                )
            return None

        binding = metric_binding(resolved)
        if current is not None and current.binding != binding:
            await self._metrics.supersede(tenant_id, current.id, now)
            logger.info(
                "Winning SLA rules changed, metric superseded",
                extra={
                    "tenant_id": tenant_id,
                    "ticket_id": ticket_id,
                    "previous_rule_ids": list(current.binding),
                    "rule_ids": list(binding),
                }
            )
            current = None

        values = compute_metric_values(evaluation)
        finalized_at = now if evaluation.clock.is_terminal else None

        if current is None:
            rule_id, response_rule_id, resolution_rule_id = binding
            metric = SlaMetric(
                id=None,
                tenant_id=tenant_id,
                ticket_id=ticket_id,
                sla_rule_id=rule_id,
                sla_definition_id=resolved.definition.id,
                response_rule_id=response_rule_id,
                resolution_rule_id=resolution_rule_id,
                finalized_at=finalized_at,
                created_at=now,
                updated_at=now,
                **values,
            )
            return await self._metrics.create(metric)

        for name, value in values.items():
            setattr(current, name, value)
        current.finalized_at = finalized_at
        current.updated_at = now
        return await self._metrics.update(current)

    async def list_for_ticket(self, tenant_id: str, ticket_id: str) -> List[SlaMetric]:
        """
        Every metric row of a ticket, current first, superseded after.

        Raises:
            ResourceNotFoundException: If the tenant has no such ticket
        """
        if await self._tickets.get_ticket(tenant_id, ticket_id) is None:
            raise ResourceNotFoundException("Ticket", ticket_id)
        return await self._metrics.list_for_ticket(tenant_id, ticket_id)

    async def get_compliance_stats(self, tenant_id: str, date_range: DateRange) -> AggregateStats:
        """
        Tenant-wide compliance over non-superseded metrics created in range.

        Raises:
            ValidationException: If the range ends before it starts
        """
        if date_range.start and date_range.end and date_range.start > date_range.end:
            raise ValidationException.for_field("startDate", "startDate must not be after endDate")
        return await self._metrics.compliance_stats(tenant_id, date_range)
