"""Fakes and builders shared by the test modules."""

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from sla_engine.sla.application import (
    EscalationScheduler,
    IEscalationPolicyProvider,
    INotificationDispatcher,
    ITicketStore,
    MetricsAggregator,
    TicketSlaService,
)
from sla_engine.sla.domain import (
    ClockEngine,
    Escalation,
    EscalationPolicy,
    SlaDefinition,
    SlaRule,
    StatusChange,
    TicketSnapshot,
)
from sla_engine.sla.infrastructure.repositories import (
    SQLAlchemyEscalationRepository,
    SQLAlchemySlaCatalogRepository,
    SQLAlchemySlaMetricRepository,
)

T0 = datetime(2024, 1, 15, 9, 0, tzinfo=timezone.utc)
TENANT = "acme"
OTHER_TENANT = "globex"


def at(minutes: float) -> datetime:
    return T0 + timedelta(minutes=minutes)


def make_ticket(
    ticket_id: str = "T-1",
    tenant_id: str = TENANT,
    status: str = "open",
    created_at: datetime = T0,
    first_response_at: Optional[datetime] = None,
    resolved_at: Optional[datetime] = None,
    **fields,
) -> TicketSnapshot:
    return TicketSnapshot(
        id=ticket_id,
        tenant_id=tenant_id,
        status=status,
        created_at=created_at,
        fields=dict(fields),
        initial_status="open",
        first_response_at=first_response_at,
        resolved_at=resolved_at,
    )


def make_definition(
    definition_id: str = "def-gold",
    level: int = 1,
    response: Optional[int] = None,
    resolution: Optional[int] = None,
    tenant_id: str = TENANT,
    is_active: bool = True,
) -> SlaDefinition:
    return SlaDefinition(
        id=definition_id,
        tenant_id=tenant_id,
        name=definition_id,
        level=level,
        first_response_target_minutes=response,
        resolution_target_minutes=resolution,
        is_active=is_active,
    )


def make_rule(
    rule_id: int,
    definition_id: str,
    field_name: str = "priority",
    field_value: str = "high",
    priority: int = 0,
    tenant_id: str = TENANT,
    is_active: bool = True,
) -> SlaRule:
    return SlaRule(
        id=rule_id,
        tenant_id=tenant_id,
        sla_definition_id=definition_id,
        field_name=field_name,
        field_value=field_value,
        priority=priority,
        is_active=is_active,
    )


class InMemoryTicketStore(ITicketStore):
    """Ticket Store fake keyed by (tenant, ticket)."""

    def __init__(self, terminal_statuses: Sequence[str] = ("resolved", "closed")):
        self.tickets: Dict[Tuple[str, str], TicketSnapshot] = {}
        self.history: Dict[Tuple[str, str], List[StatusChange]] = {}
        self._terminal = set(terminal_statuses)

    def add(self, ticket: TicketSnapshot, history: Iterable[StatusChange] = ()) -> TicketSnapshot:
        key = (ticket.tenant_id, ticket.id)
        self.tickets[key] = ticket
        self.history[key] = list(history)
        return ticket

    def move(self, tenant_id: str, ticket_id: str, status: str, entered_at: datetime) -> None:
        key = (tenant_id, ticket_id)
        self.tickets[key].status = status
        self.history[key].append(StatusChange(status=status, entered_at=entered_at))

    async def get_open_tickets_with_active_sla(self, tenant_id: str) -> List[TicketSnapshot]:
        return [
            ticket for (tenant, _), ticket in self.tickets.items()
            if tenant == tenant_id and ticket.status not in self._terminal
        ]

    async def get_status_history(self, tenant_id: str, ticket_id: str) -> List[StatusChange]:
        return list(self.history.get((tenant_id, ticket_id), []))

    async def get_ticket(self, tenant_id: str, ticket_id: str) -> Optional[TicketSnapshot]:
        return self.tickets.get((tenant_id, ticket_id))


class RecordingNotifier(INotificationDispatcher):
    """Records every alert; can be told to fail, return False or hang."""

    def __init__(self, result: bool = True, error: Optional[Exception] = None, delay: float = 0.0):
        self.result = result
        self.error = error
        self.delay = delay
        self.sent: List[Tuple[str, str, int]] = []

    async def send_escalation_alert(self, tenant_id: str, escalation: Escalation) -> bool:
        self.sent.append((tenant_id, escalation.id, escalation.level))
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return self.result


class StaticPolicyProvider(IEscalationPolicyProvider):
    def __init__(self, policy: Optional[EscalationPolicy] = None):
        self.policy = policy or EscalationPolicy()

    def get_policy(self) -> EscalationPolicy:
        return self.policy


async def seed_sla(
    session_factory,
    name: str = "Gold",
    response: Optional[int] = None,
    resolution: Optional[int] = None,
    level: int = 1,
    rules: Sequence[Tuple[str, str, int]] = (("priority", "high", 0),),
    statuses: Sequence[Tuple[str, bool, Optional[int]]] = (),
    tenant_id: str = TENANT,
) -> Tuple[SlaDefinition, List[SlaRule]]:
    """Create a definition with its rules and status policies, committed."""
    async with session_factory() as session:
        catalog = SQLAlchemySlaCatalogRepository(session)
        definition = await catalog.create_definition(tenant_id, {
            "name": name,
            "description": None,
            "level": level,
            "first_response_target_minutes": response,
            "resolution_target_minutes": resolution,
        })
        created = []
        for field_name, field_value, priority in rules:
            created.append(await catalog.create_rule(tenant_id, definition.id, {
                "field_name": field_name,
                "field_value": field_value,
                "priority": priority,
            }))
        for status_value, is_paused, timeout_minutes in statuses:
            await catalog.create_status_policy(tenant_id, definition.id, {
                "status_value": status_value,
                "is_paused": is_paused,
                "timeout_minutes": timeout_minutes,
            })
        await session.commit()
    return definition, created


def build_aggregator(session, ticket_store: ITicketStore) -> MetricsAggregator:
    return MetricsAggregator(
        SQLAlchemySlaCatalogRepository(session),
        SQLAlchemySlaMetricRepository(session),
        ticket_store,
        TicketSlaService(ticket_store, ClockEngine()),
    )


def build_scheduler(
    session_factory,
    ticket_store: ITicketStore,
    notifier: INotificationDispatcher,
    policy: Optional[EscalationPolicy] = None,
    escalation_repository_factory=SQLAlchemyEscalationRepository,
    with_metrics: bool = False,
    **kwargs,
) -> EscalationScheduler:
    metrics_factory = None
    if with_metrics:
        def metrics_factory(session):
            return build_aggregator(session, ticket_store)

    return EscalationScheduler(
        session_factory=session_factory,
        ticket_store=ticket_store,
        notifier=notifier,
        policy_provider=StaticPolicyProvider(policy),
        catalog_factory=SQLAlchemySlaCatalogRepository,
        escalation_repository_factory=escalation_repository_factory,
        clock_engine=ClockEngine(),
        metrics_factory=metrics_factory,
        **kwargs,
    )
