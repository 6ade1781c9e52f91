"""
SLA Controllers (API Routes)
=============================

FastAPI routes for SLA administration, escalations and compliance metrics.

Controllers are thin - they delegate to application services. Every route
is tenant-scoped through the tenant header set by the upstream session
layer; ids that belong to another tenant are reported as not found.
"""

from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from sla_engine.config import settings
from sla_engine.infrastructure.database import get_session, get_session_factory
from sla_engine.sla.application import (
    EscalationScheduler,
    EscalationService,
    ITicketStore,
    MetricsAggregator,
    SlaAdminService,
    TicketSlaService,
)
from sla_engine.sla.application.dto import (
    ComplianceStatsResponse,
    EscalationResponse,
    ResolveRequest,
    ResolveResponse,
    RuleMatchResponse,
    SlaDefinitionCreate,
    SlaDefinitionResponse,
    SlaDefinitionUpdate,
    SlaMetricResponse,
    SlaRuleCreate,
    SlaRuleResponse,
    SlaRuleUpdate,
    StatusTimeoutCreate,
    StatusTimeoutResponse,
    StatusTimeoutUpdate,
    SweepResponse,
    TicketClockResponse,
    TicketEventRequest,
    TicketEventResponse,
)
from sla_engine.sla.domain import ClockEngine, DateRange, ResolvedSla, RuleMatch
from sla_engine.sla.infrastructure.repositories import (
    SQLAlchemyEscalationRepository,
    SQLAlchemySlaCatalogRepository,
    SQLAlchemySlaMetricRepository,
    SQLAlchemyTicketStore,
)
from sla_engine.shared.infrastructure.logging import get_logger

logger = get_logger(__name__)
router = APIRouter(tags=["SLA"])


# ========== Example payloads for Swagger ==========

SLA_DEFINITION_EXAMPLE = {
    "id": "0b7f6c1e-6a43-4a8e-9d0f-2b8f0d5b9a11",
    "name": "Enterprise Gold",
    "description": "Contracted support for enterprise customers",
    "level": 1,
    "first_response_target_minutes": 30,
    "resolution_target_minutes": 240,
    "is_active": True,
    "created_at": "2024-01-15T10:00:00Z",
    "updated_at": "2024-01-15T10:00:00Z"
}

COMPLIANCE_STATS_EXAMPLE = {
    "total_tickets": 40,
    "response_compliance": 92.5,
    "resolution_compliance": 87.5,
    "overall_compliance": 85.0,
    "avg_first_response_time": 18.4,
    "avg_resolution_time": 171.2,
    "avg_idle_time": 35.0,
    "sla_met_tickets": 34,
    "sla_violated_tickets": 6,
    "total_escalations": 9,
    "escalation_rate": 15.0
}


# ========== Dependencies ==========

def get_tenant_id(request: Request) -> str:
    """Tenant resolved by the upstream session layer."""
    tenant_id = request.headers.get(settings.tenant_header)
    if not tenant_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=f"Missing {settings.tenant_header} header"
        )
    return tenant_id


def get_user_id(request: Request) -> str:
    """Acting user, required for acknowledgements."""
    user_id = request.headers.get(settings.user_header)
    if not user_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=f"Missing {settings.user_header} header"
        )
    return user_id


def get_ticket_store() -> ITicketStore:
    """Read-only Ticket Store over the platform's ticket tables."""
    return SQLAlchemyTicketStore(get_session_factory(), settings.terminal_statuses)


def get_clock_engine() -> ClockEngine:
    return ClockEngine(settings.terminal_statuses)


async def get_admin_service(
    session: AsyncSession = Depends(get_session)
) -> SlaAdminService:
    """Get SLA catalog administration service."""
    return SlaAdminService(SQLAlchemySlaCatalogRepository(session))


async def get_escalation_service(
    session: AsyncSession = Depends(get_session),
    ticket_store: ITicketStore = Depends(get_ticket_store)
) -> EscalationService:
    """Get escalation service instance."""
    return EscalationService(SQLAlchemyEscalationRepository(session), ticket_store)


async def get_ticket_sla_service(
    ticket_store: ITicketStore = Depends(get_ticket_store),
    clock_engine: ClockEngine = Depends(get_clock_engine)
) -> TicketSlaService:
    return TicketSlaService(ticket_store, clock_engine)


async def get_metrics_aggregator(
    session: AsyncSession = Depends(get_session),
    ticket_store: ITicketStore = Depends(get_ticket_store),
    ticket_sla: TicketSlaService = Depends(get_ticket_sla_service)
) -> MetricsAggregator:
    """Get metrics aggregator instance."""
    return MetricsAggregator(
        SQLAlchemySlaCatalogRepository(session),
        SQLAlchemySlaMetricRepository(session),
        ticket_store,
        ticket_sla,
    )


def get_escalation_scheduler(request: Request) -> EscalationScheduler:
    """The application-wide scheduler built at startup."""
    scheduler = getattr(request.app.state, "escalation_scheduler", None)
    if scheduler is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Escalation scheduler not available"
        )
    return scheduler


def _match_response(match: Optional[RuleMatch]) -> Optional[RuleMatchResponse]:
    if match is None:
        return None
    return RuleMatchResponse(
        rule_id=match.rule.id,
        sla_definition_id=match.definition.id,
        sla_name=match.definition.name,
        field_name=match.rule.field_name,
        field_value=match.rule.field_value,
        priority=match.rule.priority,
        level=match.definition.level,
    )


# ========== SLA Definitions ==========

@router.post(
    "/slas/resolve",
    response_model=ResolveResponse,
    summary="Preview SLA resolution",
    description="""
    Resolve a ticket snapshot against the tenant's active catalog without
    reading or changing any ticket.

    Matching rules are listed in precedence order: `priority` ascending, then
    the definition's `level`, then rule id. The response and resolution
    winners can differ when the primary SLA lacks one of the targets.
    """
)
async def resolve_sla(
    request: ResolveRequest,
    tenant_id: str = Depends(get_tenant_id),
    admin: SlaAdminService = Depends(get_admin_service)
):
    resolved = await admin.preview_resolution(tenant_id, request)
    if not isinstance(resolved, ResolvedSla):
        return ResolveResponse(applicable=False)

    return ResolveResponse(
        applicable=True,
        rules=[_match_response(m) for m in resolved.matches],
        primary=_match_response(resolved.primary),
        response=_match_response(resolved.response),
        resolution=_match_response(resolved.resolution),
    )


@router.post(
    "/slas",
    response_model=SlaDefinitionResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Create SLA definition",
    description="""
    Create a named SLA with a first-response and/or resolution target in
    minutes. At least one target is required and the name must be unique
    among the tenant's active SLAs.
    """,
    responses={
        201: {"content": {"application/json": {"example": SLA_DEFINITION_EXAMPLE}}},
        400: {"description": "Validation failed"}
    }
)
async def create_sla(
    request: SlaDefinitionCreate,
    tenant_id: str = Depends(get_tenant_id),
    admin: SlaAdminService = Depends(get_admin_service)
):
    return await admin.create_definition(tenant_id, request)


@router.get("/slas", response_model=List[SlaDefinitionResponse], summary="List SLA definitions")
async def list_slas(
    include_inactive: bool = Query(False, description="Include soft-deleted definitions"),
    tenant_id: str = Depends(get_tenant_id),
    admin: SlaAdminService = Depends(get_admin_service)
):
    return await admin.list_definitions(tenant_id, include_inactive)


@router.get(
    "/slas/{sla_id}",
    response_model=SlaDefinitionResponse,
    summary="Get SLA definition",
    responses={404: {"description": "SLA definition not found"}}
)
async def get_sla(
    sla_id: str,
    tenant_id: str = Depends(get_tenant_id),
    admin: SlaAdminService = Depends(get_admin_service)
):
    return await admin.get_definition(tenant_id, sla_id)


@router.put("/slas/{sla_id}", response_model=SlaDefinitionResponse, summary="Update SLA definition")
async def update_sla(
    sla_id: str,
    request: SlaDefinitionUpdate,
    tenant_id: str = Depends(get_tenant_id),
    admin: SlaAdminService = Depends(get_admin_service)
):
    return await admin.update_definition(tenant_id, sla_id, request)


@router.delete(
    "/slas/{sla_id}",
    response_model=SlaDefinitionResponse,
    summary="Deactivate SLA definition",
    description="Soft delete. Existing escalations and metrics are kept."
)
async def delete_sla(
    sla_id: str,
    tenant_id: str = Depends(get_tenant_id),
    admin: SlaAdminService = Depends(get_admin_service)
):
    return await admin.delete_definition(tenant_id, sla_id)


# ========== SLA Rules ==========

@router.post(
    "/slas/{sla_id}/rules",
    response_model=SlaRuleResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Create SLA rule",
    description="""
    Bind tickets whose `field_name` equals `field_value` to the SLA. The
    comparison is exact and case-sensitive on the string form of the field.
    Lower `priority` wins.
    """
)
async def create_rule(
    sla_id: str,
    request: SlaRuleCreate,
    tenant_id: str = Depends(get_tenant_id),
    admin: SlaAdminService = Depends(get_admin_service)
):
    return await admin.create_rule(tenant_id, sla_id, request)


@router.get("/slas/{sla_id}/rules", response_model=List[SlaRuleResponse], summary="List SLA rules")
async def list_rules(
    sla_id: str,
    include_inactive: bool = Query(False),
    tenant_id: str = Depends(get_tenant_id),
    admin: SlaAdminService = Depends(get_admin_service)
):
    return await admin.list_rules(tenant_id, sla_id, include_inactive)


@router.put("/rules/{rule_id}", response_model=SlaRuleResponse, summary="Update SLA rule")
async def update_rule(
    rule_id: int,
    request: SlaRuleUpdate,
    tenant_id: str = Depends(get_tenant_id),
    admin: SlaAdminService = Depends(get_admin_service)
):
    return await admin.update_rule(tenant_id, rule_id, request)


@router.delete("/rules/{rule_id}", response_model=SlaRuleResponse, summary="Deactivate SLA rule")
async def delete_rule(
    rule_id: int,
    tenant_id: str = Depends(get_tenant_id),
    admin: SlaAdminService = Depends(get_admin_service)
):
    return await admin.delete_rule(tenant_id, rule_id)


# ========== Status Timeouts ==========

@router.post(
    "/slas/{sla_id}/status-timeouts",
    response_model=StatusTimeoutResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Create status timeout policy",
    description="""
    Configure one ticket status for the SLA:
    - `is_paused`: time in this status does not count against the targets
    - `timeout_minutes`: escalate when a ticket stays in the status longer
    """
)
async def create_status_timeout(
    sla_id: str,
    request: StatusTimeoutCreate,
    tenant_id: str = Depends(get_tenant_id),
    admin: SlaAdminService = Depends(get_admin_service)
):
    return await admin.create_status_policy(tenant_id, sla_id, request)


@router.get(
    "/slas/{sla_id}/status-timeouts",
    response_model=List[StatusTimeoutResponse],
    summary="List status timeout policies"
)
async def list_status_timeouts(
    sla_id: str,
    include_inactive: bool = Query(False),
    tenant_id: str = Depends(get_tenant_id),
    admin: SlaAdminService = Depends(get_admin_service)
):
    return await admin.list_status_policies(tenant_id, sla_id, include_inactive)


@router.put(
    "/status-timeouts/{policy_id}",
    response_model=StatusTimeoutResponse,
    summary="Update status timeout policy"
)
async def update_status_timeout(
    policy_id: str,
    request: StatusTimeoutUpdate,
    tenant_id: str = Depends(get_tenant_id),
    admin: SlaAdminService = Depends(get_admin_service)
):
    return await admin.update_status_policy(tenant_id, policy_id, request)


@router.delete(
    "/status-timeouts/{policy_id}",
    response_model=StatusTimeoutResponse,
    summary="Deactivate status timeout policy"
)
async def delete_status_timeout(
    policy_id: str,
    tenant_id: str = Depends(get_tenant_id),
    admin: SlaAdminService = Depends(get_admin_service)
):
    return await admin.delete_status_policy(tenant_id, policy_id)


# ========== Escalations ==========

@router.get(
    "/tickets/{ticket_id}/escalations",
    response_model=List[EscalationResponse],
    summary="List escalations for a ticket",
    responses={404: {"description": "Ticket not found"}}
)
async def list_ticket_escalations(
    ticket_id: str,
    tenant_id: str = Depends(get_tenant_id),
    escalations: EscalationService = Depends(get_escalation_service)
):
    return await escalations.list_for_ticket(tenant_id, ticket_id)


@router.get(
    "/escalations/pending",
    response_model=List[EscalationResponse],
    summary="List unacknowledged escalations"
)
async def list_pending_escalations(
    limit: int = Query(100, ge=1, le=1000, description="Results per page"),
    offset: int = Query(0, ge=0, description="Page offset"),
    tenant_id: str = Depends(get_tenant_id),
    escalations: EscalationService = Depends(get_escalation_service)
):
    return await escalations.list_pending(tenant_id, limit, offset)


@router.post(
    "/escalations/sweep",
    response_model=SweepResponse,
    summary="Run the escalation sweep now",
    description="""
    Runs the caller tenant's sweep immediately. Safe to call while the
    background job is running: escalation levels are created at most once.
    """
)
async def run_sweep(
    tenant_id: str = Depends(get_tenant_id),
    scheduler: EscalationScheduler = Depends(get_escalation_scheduler)
):
    logger.info("Manual escalation sweep requested", extra={"tenant_id": tenant_id})
    report = await scheduler.sweep_tenant(tenant_id)
    return SweepResponse.model_validate(report)


@router.post(
    "/escalations/{escalation_id}/acknowledge",
    response_model=EscalationResponse,
    summary="Acknowledge an escalation",
    description="""
    Marks a pending escalation as acknowledged by the calling user.
    Acknowledging twice returns the escalation unchanged, keeping the first
    acknowledger and timestamp.
    """,
    responses={404: {"description": "Escalation not found"}}
)
async def acknowledge_escalation(
    escalation_id: str,
    tenant_id: str = Depends(get_tenant_id),
    user_id: str = Depends(get_user_id),
    escalations: EscalationService = Depends(get_escalation_service)
):
    return await escalations.acknowledge(tenant_id, escalation_id, user_id)


# ========== Tickets, Clocks and Metrics ==========

@router.get(
    "/tickets/{ticket_id}/clock",
    response_model=TicketClockResponse,
    summary="Get live SLA clocks for a ticket",
    description="""
    Response and resolution clocks computed now: active and paused minutes,
    remaining time, breach flags and the projected breach instant. The
    status intervals the clocks were computed from are included.
    """,
    responses={404: {"description": "Ticket not found"}}
)
async def get_ticket_clock(
    ticket_id: str,
    tenant_id: str = Depends(get_tenant_id),
    session: AsyncSession = Depends(get_session),
    ticket_sla: TicketSlaService = Depends(get_ticket_sla_service)
):
    snapshot = await SQLAlchemySlaCatalogRepository(session).load_snapshot(tenant_id)
    evaluation = await ticket_sla.evaluate_by_id(tenant_id, ticket_id, snapshot)
    return TicketClockResponse.model_validate(evaluation.clock)


@router.get(
    "/tickets/{ticket_id}/metrics",
    response_model=List[SlaMetricResponse],
    summary="List SLA metrics for a ticket",
    description="The current metric first, superseded rows after it.",
    responses={404: {"description": "Ticket not found"}}
)
async def list_ticket_metrics(
    ticket_id: str,
    tenant_id: str = Depends(get_tenant_id),
    aggregator: MetricsAggregator = Depends(get_metrics_aggregator)
):
    return await aggregator.list_for_ticket(tenant_id, ticket_id)


@router.post(
    "/tickets/{ticket_id}/metrics/refresh",
    response_model=Optional[SlaMetricResponse],
    summary="Recompute the SLA metric for a ticket",
    responses={404: {"description": "Ticket not found"}}
)
async def refresh_ticket_metric(
    ticket_id: str,
    tenant_id: str = Depends(get_tenant_id),
    aggregator: MetricsAggregator = Depends(get_metrics_aggregator)
):
    return await aggregator.refresh_metric(tenant_id, ticket_id)


@router.post(
    "/tickets/{ticket_id}/events",
    response_model=TicketEventResponse,
    summary="Notify a ticket change",
    description="""
    Called by the ticketing platform when ticket fields change. The SLA is
    re-resolved when a changed field is status, priority, category or any
    field an active rule matches on. An empty `changed_fields` list always
    re-resolves.
    """
)
async def ticket_changed(
    ticket_id: str,
    request: TicketEventRequest,
    tenant_id: str = Depends(get_tenant_id),
    aggregator: MetricsAggregator = Depends(get_metrics_aggregator)
):
    re_resolved, metric = await aggregator.on_ticket_changed(tenant_id, ticket_id, request.changed_fields)
    return TicketEventResponse(
        ticket_id=ticket_id,
        re_resolved=re_resolved,
        metric=SlaMetricResponse.model_validate(metric) if metric else None,
    )


@router.get(
    "/compliance-stats",
    response_model=ComplianceStatsResponse,
    summary="Tenant compliance statistics",
    description="""
    Aggregates current (non-superseded) metrics created within the range.
    Both bounds are inclusive and optional. Percentages are computed over
    rows where the value is known; an empty range yields zero counts and
    null ratios.
    """,
    responses={200: {"content": {"application/json": {"example": COMPLIANCE_STATS_EXAMPLE}}}}
)
async def get_compliance_stats(
    start_date: Optional[datetime] = Query(None, alias="startDate"),
    end_date: Optional[datetime] = Query(None, alias="endDate"),
    tenant_id: str = Depends(get_tenant_id),
    aggregator: MetricsAggregator = Depends(get_metrics_aggregator)
):
    stats = await aggregator.get_compliance_stats(tenant_id, DateRange(start=start_date, end=end_date))
    return ComplianceStatsResponse.model_validate(stats)


# Export router for inclusion in main app
sla_router = router
