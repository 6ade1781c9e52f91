"""
SLA Infrastructure Repositories
=================================

Concrete implementations of repository interfaces using SQLAlchemy.

This layer contains the data access logic - how we store and retrieve
entities from the database. Every query is filtered by ``tenant_id``, so an
id belonging to another tenant behaves exactly like an unknown id.
"""

from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence
from uuid import UUID

from sqlalchemy import case, distinct, func, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from sla_engine.config import EscalationStatus, NotificationStatus
from sla_engine.core.exceptions import ConcurrencyConflict, MetricConflict
from sla_engine.sla.application.services import (
    IEscalationRepository,
    ISlaCatalog,
    ISlaMetricRepository,
    ITicketStore,
)
from sla_engine.sla.domain import (
    AggregateStats,
    CatalogSnapshot,
    DateRange,
    Escalation,
    SlaDefinition,
    SlaMetric,
    SlaRule,
    StatusChange,
    StatusTimeoutPolicy,
    TicketSnapshot,
)
from sla_engine.sla.domain.entities import as_utc, utcnow
from sla_engine.sla.infrastructure.models import (
    EscalationModel,
    SlaDefinitionModel,
    SlaMetricModel,
    SlaRuleModel,
    StatusTimeoutPolicyModel,
    TicketModel,
    TicketStatusChangeModel,
)


def _parse_uuid(value: Any) -> Optional[UUID]:
    """Parse an id from the API; malformed ids are simply not found."""
    if isinstance(value, UUID):
        return value
    try:
        return UUID(str(value))
    except (ValueError, TypeError):
        return None


def _percentage(part: int, whole: int) -> Optional[float]:
    if not whole:
        return None
    return round(part / whole * 100, 2)


def _rounded(value: Optional[float]) -> Optional[float]:
    return None if value is None else round(float(value), 2)


# ========== Row -> entity mapping ==========

def _to_definition(model: SlaDefinitionModel) -> SlaDefinition:
    return SlaDefinition(
        id=str(model.id),
        tenant_id=model.tenant_id,
        name=model.name,
        description=model.description,
        level=model.level,
        first_response_target_minutes=model.first_response_target_minutes,
        resolution_target_minutes=model.resolution_target_minutes,
        is_active=model.is_active,
        created_at=as_utc(model.created_at),
        updated_at=as_utc(model.updated_at),
    )


def _to_rule(model: SlaRuleModel) -> SlaRule:
    return SlaRule(
        id=model.id,
        tenant_id=model.tenant_id,
        sla_definition_id=str(model.sla_definition_id),
        field_name=model.field_name,
        field_value=model.field_value,
        priority=model.priority,
        is_active=model.is_active,
        created_at=as_utc(model.created_at),
        updated_at=as_utc(model.updated_at),
    )


def _to_policy(model: StatusTimeoutPolicyModel) -> StatusTimeoutPolicy:
    return StatusTimeoutPolicy(
        id=str(model.id),
        tenant_id=model.tenant_id,
        sla_definition_id=str(model.sla_definition_id),
        status_value=model.status_value,
        is_paused=model.is_paused,
        timeout_minutes=model.timeout_minutes,
        is_active=model.is_active,
        created_at=as_utc(model.created_at),
        updated_at=as_utc(model.updated_at),
    )


def _to_escalation(model: EscalationModel) -> Escalation:
    return Escalation(
        id=str(model.id),
        tenant_id=model.tenant_id,
        ticket_id=model.ticket_id,
        sla_definition_id=str(model.sla_definition_id),
        level=model.level,
        clock_type=model.clock_type,
        escalated_at=as_utc(model.escalated_at),
        reason=model.reason,
        severity=model.severity,
        overdue_minutes=model.overdue_minutes,
        status=model.status,
        acknowledged_at=as_utc(model.acknowledged_at),
        acknowledged_by=model.acknowledged_by,
        notification_status=model.notification_status,
        notification_attempts=model.notification_attempts,
        notification_attempted_at=as_utc(model.notification_attempted_at),
    )


def _to_metric(model: SlaMetricModel) -> SlaMetric:
    return SlaMetric(
        id=str(model.id),
        tenant_id=model.tenant_id,
        ticket_id=model.ticket_id,
        sla_rule_id=model.sla_rule_id,
        sla_definition_id=str(model.sla_definition_id),
        response_rule_id=model.response_rule_id,
        resolution_rule_id=model.resolution_rule_id,
        first_response_time=model.first_response_time,
        first_response_met=model.first_response_met,
        resolution_time=model.resolution_time,
        resolution_met=model.resolution_met,
        total_idle_time=model.total_idle_time,
        overall_compliance=model.overall_compliance,
        is_superseded=model.is_superseded,
        superseded_at=as_utc(model.superseded_at),
        finalized_at=as_utc(model.finalized_at),
        created_at=as_utc(model.created_at),
        updated_at=as_utc(model.updated_at),
    )


class SQLAlchemySlaCatalogRepository(ISlaCatalog):
    """
    SQLAlchemy implementation of the SLA catalog.

    Soft deletes only: rows are deactivated, never removed.
    """

    def __init__(self, session: AsyncSession):
        self._session = session

    # ========== Read contract ==========

    async def get_active_definitions(self, tenant_id: str) -> List[SlaDefinition]:
        stmt = (
            select(SlaDefinitionModel)
            .where(SlaDefinitionModel.tenant_id == tenant_id, SlaDefinitionModel.is_active.is_(True))
            .order_by(SlaDefinitionModel.level.asc(), SlaDefinitionModel.name.asc())
        )
        result = await self._session.execute(stmt)
        return [_to_definition(m) for m in result.scalars().all()]

    async def get_rules_for_definition(self, tenant_id: str, definition_id: str) -> List[SlaRule]:
        return await self.list_rules(tenant_id, definition_id, include_inactive=False)

    async def get_status_policies(self, tenant_id: str, definition_id: str) -> List[StatusTimeoutPolicy]:
        return await self.list_status_policies(tenant_id, definition_id, include_inactive=False)

    async def get_active_rules(self, tenant_id: str) -> List[SlaRule]:
        """Active rules whose definition is active too."""
        stmt = (
            select(SlaRuleModel)
            .join(SlaDefinitionModel, SlaDefinitionModel.id == SlaRuleModel.sla_definition_id)
            .where(
                SlaRuleModel.tenant_id == tenant_id,
                SlaRuleModel.is_active.is_(True),
                SlaDefinitionModel.tenant_id == tenant_id,
                SlaDefinitionModel.is_active.is_(True),
            )
            .order_by(SlaRuleModel.id.asc())
        )
        result = await self._session.execute(stmt)
        return [_to_rule(m) for m in result.scalars().all()]

    async def list_tenants(self) -> List[str]:
        stmt = (
            select(distinct(SlaDefinitionModel.tenant_id))
            .where(SlaDefinitionModel.is_active.is_(True))
            .order_by(SlaDefinitionModel.tenant_id)
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def load_snapshot(self, tenant_id: str) -> CatalogSnapshot:
        definitions = await self.get_active_definitions(tenant_id)
        rules = await self.get_active_rules(tenant_id)

        policies: List[StatusTimeoutPolicy] = []
        definition_ids = [_parse_uuid(d.id) for d in definitions]
        if definition_ids:
            stmt = select(StatusTimeoutPolicyModel).where(
                StatusTimeoutPolicyModel.tenant_id == tenant_id,
                StatusTimeoutPolicyModel.is_active.is_(True),
                StatusTimeoutPolicyModel.sla_definition_id.in_(definition_ids),
            )
            result = await self._session.execute(stmt)
            policies = [_to_policy(m) for m in result.scalars().all()]

        return CatalogSnapshot(
            tenant_id=tenant_id,
            definitions=tuple(definitions),
            rules=tuple(rules),
            policies=tuple(policies),
        )

    # ========== Definitions ==========

    async def _definition_model(self, tenant_id: str, definition_id: str) -> Optional[SlaDefinitionModel]:
        definition_uuid = _parse_uuid(definition_id)
        if definition_uuid is None:
            return None
        stmt = select(SlaDefinitionModel).where(
            SlaDefinitionModel.id == definition_uuid,
            SlaDefinitionModel.tenant_id == tenant_id,
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def list_definitions(self, tenant_id: str, include_inactive: bool = False) -> List[SlaDefinition]:
        stmt = select(SlaDefinitionModel).where(SlaDefinitionModel.tenant_id == tenant_id)
        if not include_inactive:
            stmt = stmt.where(SlaDefinitionModel.is_active.is_(True))
        stmt = stmt.order_by(SlaDefinitionModel.level.asc(), SlaDefinitionModel.created_at.asc())
        result = await self._session.execute(stmt)
        return [_to_definition(m) for m in result.scalars().all()]

    async def get_definition(self, tenant_id: str, definition_id: str) -> Optional[SlaDefinition]:
        model = await self._definition_model(tenant_id, definition_id)
        return _to_definition(model) if model else None

    async def find_active_definition_by_name(self, tenant_id: str, name: str) -> Optional[SlaDefinition]:
        stmt = select(SlaDefinitionModel).where(
            SlaDefinitionModel.tenant_id == tenant_id,
            SlaDefinitionModel.name == name,
            SlaDefinitionModel.is_active.is_(True),
        )
        result = await self._session.execute(stmt)
        model = result.scalars().first()
        return _to_definition(model) if model else None

    async def create_definition(self, tenant_id: str, values: Dict[str, Any]) -> SlaDefinition:
        now = utcnow()
        model = SlaDefinitionModel(tenant_id=tenant_id, created_at=now, updated_at=now, **values)
        self._session.add(model)
        await self._session.flush()
        return _to_definition(model)

    async def update_definition(
        self, tenant_id: str, definition_id: str, values: Dict[str, Any]
    ) -> Optional[SlaDefinition]:
        model = await self._definition_model(tenant_id, definition_id)
        if model is None:
            return None
        for name, value in values.items():
            setattr(model, name, value)
        model.updated_at = utcnow()
        await self._session.flush()
        return _to_definition(model)

    # ========== Rules ==========

    async def list_rules(
        self, tenant_id: str, definition_id: str, include_inactive: bool = False
    ) -> List[SlaRule]:
        definition_uuid = _parse_uuid(definition_id)
        if definition_uuid is None:
            return []
        stmt = select(SlaRuleModel).where(
            SlaRuleModel.tenant_id == tenant_id,
            SlaRuleModel.sla_definition_id == definition_uuid,
        )
        if not include_inactive:
            stmt = stmt.where(SlaRuleModel.is_active.is_(True))
        stmt = stmt.order_by(SlaRuleModel.priority.asc(), SlaRuleModel.id.asc())
        result = await self._session.execute(stmt)
        return [_to_rule(m) for m in result.scalars().all()]

    async def _rule_model(self, tenant_id: str, rule_id: int) -> Optional[SlaRuleModel]:
        stmt = select(SlaRuleModel).where(SlaRuleModel.id == rule_id, SlaRuleModel.tenant_id == tenant_id)
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def get_rule(self, tenant_id: str, rule_id: int) -> Optional[SlaRule]:
        model = await self._rule_model(tenant_id, rule_id)
        return _to_rule(model) if model else None

    async def create_rule(self, tenant_id: str, definition_id: str, values: Dict[str, Any]) -> SlaRule:
        now = utcnow()
        model = SlaRuleModel(
            tenant_id=tenant_id,
            sla_definition_id=_parse_uuid(definition_id),
            created_at=now,
            updated_at=now,
            **values,
        )
        self._session.add(model)
        await self._session.flush()
        return _to_rule(model)

    async def update_rule(self, tenant_id: str, rule_id: int, values: Dict[str, Any]) -> Optional[SlaRule]:
        model = await self._rule_model(tenant_id, rule_id)
        if model is None:
            return None
        for name, value in values.items():
            setattr(model, name, value)
        model.updated_at = utcnow()
        await self._session.flush()
        return _to_rule(model)

    # ========== Status timeouts ==========

    async def list_status_policies(
        self, tenant_id: str, definition_id: str, include_inactive: bool = False
    ) -> List[StatusTimeoutPolicy]:
        definition_uuid = _parse_uuid(definition_id)
        if definition_uuid is None:
            return []
        stmt = select(StatusTimeoutPolicyModel).where(
            StatusTimeoutPolicyModel.tenant_id == tenant_id,
            StatusTimeoutPolicyModel.sla_definition_id == definition_uuid,
        )
        if not include_inactive:
            stmt = stmt.where(StatusTimeoutPolicyModel.is_active.is_(True))
        stmt = stmt.order_by(StatusTimeoutPolicyModel.status_value.asc())
        result = await self._session.execute(stmt)
        return [_to_policy(m) for m in result.scalars().all()]

    async def _policy_model(self, tenant_id: str, policy_id: str) -> Optional[StatusTimeoutPolicyModel]:
        policy_uuid = _parse_uuid(policy_id)
        if policy_uuid is None:
            return None
        stmt = select(StatusTimeoutPolicyModel).where(
            StatusTimeoutPolicyModel.id == policy_uuid,
            StatusTimeoutPolicyModel.tenant_id == tenant_id,
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def get_status_policy(self, tenant_id: str, policy_id: str) -> Optional[StatusTimeoutPolicy]:
        model = await self._policy_model(tenant_id, policy_id)
        return _to_policy(model) if model else None

    async def find_active_status_policy(
        self, tenant_id: str, definition_id: str, status_value: str
    ) -> Optional[StatusTimeoutPolicy]:
        definition_uuid = _parse_uuid(definition_id)
        if definition_uuid is None:
            return None
        stmt = select(StatusTimeoutPolicyModel).where(
            StatusTimeoutPolicyModel.tenant_id == tenant_id,
            StatusTimeoutPolicyModel.sla_definition_id == definition_uuid,
            StatusTimeoutPolicyModel.status_value == status_value,
            StatusTimeoutPolicyModel.is_active.is_(True),
        )
        result = await self._session.execute(stmt)
        model = result.scalars().first()
        return _to_policy(model) if model else None

    async def create_status_policy(
        self, tenant_id: str, definition_id: str, values: Dict[str, Any]
    ) -> StatusTimeoutPolicy:
        now = utcnow()
        model = StatusTimeoutPolicyModel(
            tenant_id=tenant_id,
            sla_definition_id=_parse_uuid(definition_id),
            created_at=now,
            updated_at=now,
            **values,
        )
        self._session.add(model)
        await self._session.flush()
        return _to_policy(model)

    async def update_status_policy(
        self, tenant_id: str, policy_id: str, values: Dict[str, Any]
    ) -> Optional[StatusTimeoutPolicy]:
        model = await self._policy_model(tenant_id, policy_id)
        if model is None:
            return None
        for name, value in values.items():
            setattr(model, name, value)
        model.updated_at = utcnow()
        await self._session.flush()
        return _to_policy(model)


class SQLAlchemyEscalationRepository(IEscalationRepository):
    """
    SQLAlchemy implementation of the escalation repository.

    ``create`` relies on the (tenant_id, ticket_id, level) unique constraint;
    a violation rolls the session back and raises ConcurrencyConflict.
    """

    def __init__(self, session: AsyncSession):
        self._session = session

    async def get_levels(self, tenant_id: str, ticket_id: str) -> List[int]:
        stmt = select(EscalationModel.level).where(
            EscalationModel.tenant_id == tenant_id,
            EscalationModel.ticket_id == ticket_id,
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def create(self, escalation: Escalation) -> Escalation:
        model = EscalationModel(
            tenant_id=escalation.tenant_id,
            ticket_id=escalation.ticket_id,
            sla_definition_id=_parse_uuid(escalation.sla_definition_id),
            level=escalation.level,
            clock_type=escalation.clock_type,
            reason=escalation.reason,
            severity=escalation.severity,
            overdue_minutes=escalation.overdue_minutes,
            escalated_at=escalation.escalated_at,
            status=escalation.status,
            notification_status=escalation.notification_status,
            notification_attempts=escalation.notification_attempts,
        )
        self._session.add(model)
        try:
            await self._session.flush()
        except IntegrityError as e:
            await self._session.rollback()
            raise ConcurrencyConflict(escalation.ticket_id, escalation.level) from e

        escalation.id = str(model.id)
        return escalation

    async def record_notification(
        self,
        tenant_id: str,
        escalation_id: str,
        status: str,
        attempted_at: datetime,
    ) -> None:
        escalation_uuid = _parse_uuid(escalation_id)
        if escalation_uuid is None:
            return
        stmt = (
            update(EscalationModel)
            .where(EscalationModel.id == escalation_uuid, EscalationModel.tenant_id == tenant_id)
            .values(
                notification_status=status,
                notification_attempts=EscalationModel.notification_attempts + 1,
                notification_attempted_at=attempted_at,
            )
            .execution_options(synchronize_session=False)
        )
        await self._session.execute(stmt)

    async def get(self, tenant_id: str, escalation_id: str) -> Optional[Escalation]:
        escalation_uuid = _parse_uuid(escalation_id)
        if escalation_uuid is None:
            return None
        stmt = (
            select(EscalationModel)
            .where(EscalationModel.id == escalation_uuid, EscalationModel.tenant_id == tenant_id)
            .execution_options(populate_existing=True)
        )
        result = await self._session.execute(stmt)
        model = result.scalar_one_or_none()
        return _to_escalation(model) if model else None

    async def acknowledge(
        self, tenant_id: str, escalation_id: str, user_id: str, acknowledged_at: datetime
    ) -> Optional[Escalation]:
        """
        Compare-and-set from pending to acknowledged.

        Only a pending row is updated, so concurrent acknowledgements converge
        on the first writer's user and timestamp.
        """
        escalation_uuid = _parse_uuid(escalation_id)
        if escalation_uuid is None:
            return None
        stmt = (
            update(EscalationModel)
            .where(
                EscalationModel.id == escalation_uuid,
                EscalationModel.tenant_id == tenant_id,
                EscalationModel.status == EscalationStatus.PENDING,
            )
            .values(
                status=EscalationStatus.ACKNOWLEDGED,
                acknowledged_at=acknowledged_at,
                acknowledged_by=user_id,
            )
            .execution_options(synchronize_session=False)
        )
        await self._session.execute(stmt)
        return await self.get(tenant_id, escalation_id)

    async def list_for_ticket(self, tenant_id: str, ticket_id: str) -> List[Escalation]:
        stmt = (
            select(EscalationModel)
            .where(EscalationModel.tenant_id == tenant_id, EscalationModel.ticket_id == ticket_id)
            .order_by(EscalationModel.level.asc())
        )
        result = await self._session.execute(stmt)
        return [_to_escalation(m) for m in result.scalars().all()]

    async def list_pending(self, tenant_id: str, limit: int = 100, offset: int = 0) -> List[Escalation]:
        stmt = (
            select(EscalationModel)
            .where(EscalationModel.tenant_id == tenant_id, EscalationModel.status == EscalationStatus.PENDING)
            .order_by(EscalationModel.escalated_at.asc(), EscalationModel.level.asc())
            .limit(limit)
            .offset(offset)
        )
        result = await self._session.execute(stmt)
        return [_to_escalation(m) for m in result.scalars().all()]

    async def list_undispatched(self, tenant_id: str, limit: int = 100) -> List[Escalation]:
        stmt = (
            select(EscalationModel)
            .where(
                EscalationModel.tenant_id == tenant_id,
                EscalationModel.notification_status == NotificationStatus.PENDING,
            )
            .order_by(EscalationModel.escalated_at.asc())
            .limit(limit)
        )
        result = await self._session.execute(stmt)
        return [_to_escalation(m) for m in result.scalars().all()]

    async def list_undispatched_tenants(self) -> List[str]:
        stmt = (
            select(distinct(EscalationModel.tenant_id))
            .where(EscalationModel.notification_status == NotificationStatus.PENDING)
            .order_by(EscalationModel.tenant_id)
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all())


class SQLAlchemySlaMetricRepository(ISlaMetricRepository):
    """
    SQLAlchemy implementation of the SlaMetric repository.

    A partial unique index keeps one current row per (tenant_id, ticket_id);
    a second concurrent ``create`` rolls the session back and raises
    MetricConflict.
    """

    _VALUE_FIELDS = (
        "first_response_time",
        "first_response_met",
        "resolution_time",
        "resolution_met",
        "total_idle_time",
        "overall_compliance",
        "finalized_at",
        "updated_at",
    )

    def __init__(self, session: AsyncSession):
        self._session = session

    async def get_current(self, tenant_id: str, ticket_id: str) -> Optional[SlaMetric]:
        stmt = (
            select(SlaMetricModel)
            .where(
                SlaMetricModel.tenant_id == tenant_id,
                SlaMetricModel.ticket_id == ticket_id,
                SlaMetricModel.is_superseded.is_(False),
            )
            .order_by(SlaMetricModel.created_at.desc())
            .limit(1)
        )
        result = await self._session.execute(stmt)
        model = result.scalar_one_or_none()
        return _to_metric(model) if model else None

    async def list_for_ticket(self, tenant_id: str, ticket_id: str) -> List[SlaMetric]:
        stmt = (
            select(SlaMetricModel)
            .where(SlaMetricModel.tenant_id == tenant_id, SlaMetricModel.ticket_id == ticket_id)
            .order_by(SlaMetricModel.is_superseded.asc(), SlaMetricModel.created_at.desc())
        )
        result = await self._session.execute(stmt)
        return [_to_metric(m) for m in result.scalars().all()]

    async def create(self, metric: SlaMetric) -> SlaMetric:
        now = utcnow()
        model = SlaMetricModel(
            tenant_id=metric.tenant_id,
            ticket_id=metric.ticket_id,
            sla_rule_id=metric.sla_rule_id,
            sla_definition_id=_parse_uuid(metric.sla_definition_id),
            response_rule_id=metric.response_rule_id,
            resolution_rule_id=metric.resolution_rule_id,
            first_response_time=metric.first_response_time,
            first_response_met=metric.first_response_met,
            resolution_time=metric.resolution_time,
            resolution_met=metric.resolution_met,
            total_idle_time=metric.total_idle_time,
            overall_compliance=metric.overall_compliance,
            is_superseded=False,
            finalized_at=metric.finalized_at,
            created_at=metric.created_at or now,
            updated_at=metric.updated_at or now,
        )
        self._session.add(model)
        try:
            await self._session.flush()
        except IntegrityError as e:
            await self._session.rollback()
            raise MetricConflict(metric.tenant_id, metric.ticket_id) from e
        return _to_metric(model)

    async def update(self, metric: SlaMetric) -> SlaMetric:
        metric_uuid = _parse_uuid(metric.id)
        stmt = select(SlaMetricModel).where(
            SlaMetricModel.id == metric_uuid,
            SlaMetricModel.tenant_id == metric.tenant_id,
        )
        result = await self._session.execute(stmt)
        model = result.scalar_one()
        for name in self._VALUE_FIELDS:
            setattr(model, name, getattr(metric, name))
        await self._session.flush()
        return _to_metric(model)

    async def supersede(self, tenant_id: str, metric_id: str, superseded_at: datetime) -> None:
        stmt = (
            update(SlaMetricModel)
            .where(SlaMetricModel.id == _parse_uuid(metric_id), SlaMetricModel.tenant_id == tenant_id)
            .values(is_superseded=True, superseded_at=superseded_at, updated_at=superseded_at)
            .execution_options(synchronize_session="fetch")
        )
        await self._session.execute(stmt)

    async def compliance_stats(self, tenant_id: str, date_range: DateRange) -> AggregateStats:
        """
        Aggregate non-superseded metrics created within ``date_range``.

        Each ratio only counts rows where its sub-metric is known, and an
        empty set yields zero counts with ``None`` ratios and averages.
        """
        conditions = [
            SlaMetricModel.tenant_id == tenant_id,
            SlaMetricModel.is_superseded.is_(False),
        ]
        if date_range.start is not None:
            conditions.append(SlaMetricModel.created_at >= date_range.start)
        if date_range.end is not None:
            conditions.append(SlaMetricModel.created_at <= date_range.end)

        def _true_count(column):
            return func.coalesce(func.sum(case((column.is_(True), 1), else_=0)), 0)

        stmt = select(
            func.count(SlaMetricModel.id),
            func.count(SlaMetricModel.first_response_met),
            _true_count(SlaMetricModel.first_response_met),
            func.count(SlaMetricModel.resolution_met),
            _true_count(SlaMetricModel.resolution_met),
            func.count(SlaMetricModel.overall_compliance),
            _true_count(SlaMetricModel.overall_compliance),
            func.coalesce(
                func.sum(
                    case(
                        (
                            or_(
                                SlaMetricModel.first_response_met.is_(False),
                                SlaMetricModel.resolution_met.is_(False),
                                SlaMetricModel.overall_compliance.is_(False),
                            ),
                            1,
                        ),
                        else_=0,
                    )
                ),
                0,
            ),
            func.avg(SlaMetricModel.first_response_time),
            func.avg(SlaMetricModel.resolution_time),
            func.avg(SlaMetricModel.total_idle_time),
        ).where(*conditions)
        row = (await self._session.execute(stmt)).one()
        (
            total, response_known, response_met, resolution_known, resolution_met,
            overall_known, overall_met, violated, avg_response, avg_resolution, avg_idle,
        ) = row

        total_escalations = 0
        escalated_tickets = 0
        if total:
            ticket_ids = select(SlaMetricModel.ticket_id).where(*conditions)
            esc_stmt = select(
                func.count(EscalationModel.id),
                func.count(distinct(EscalationModel.ticket_id)),
            ).where(
                EscalationModel.tenant_id == tenant_id,
                EscalationModel.ticket_id.in_(ticket_ids),
            )
            total_escalations, escalated_tickets = (await self._session.execute(esc_stmt)).one()

        return AggregateStats(
            total_tickets=total,
            response_compliance=_percentage(response_met, response_known),
            resolution_compliance=_percentage(resolution_met, resolution_known),
            overall_compliance=_percentage(overall_met, overall_known),
            avg_first_response_time=_rounded(avg_response),
            avg_resolution_time=_rounded(avg_resolution),
            avg_idle_time=_rounded(avg_idle),
            sla_met_tickets=int(overall_met),
            sla_violated_tickets=int(violated),
            total_escalations=int(total_escalations or 0),
            escalation_rate=_percentage(escalated_tickets or 0, total),
        )


class SQLAlchemyTicketStore(ITicketStore):
    """
    Read-only Ticket Store over the platform's ticket tables.

    Opens a short session per call so it can be shared by request handlers
    and the background sweep alike.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        terminal_statuses: Sequence[str] = ("resolved", "closed"),
    ):
        self._session_factory = session_factory
        self._terminal_statuses = list(terminal_statuses)

    @staticmethod
    def _to_snapshot(model: TicketModel) -> TicketSnapshot:
        fields: Dict[str, Any] = dict(model.custom_fields or {})
        fields.update(priority=model.priority, category=model.category, status=model.status)
        return TicketSnapshot(
            id=model.id,
            tenant_id=model.tenant_id,
            status=model.status,
            created_at=model.created_at,
            fields=fields,
            initial_status=model.initial_status,
            first_response_at=model.first_response_at,
            resolved_at=model.resolved_at,
        )

    async def get_open_tickets_with_active_sla(self, tenant_id: str) -> List[TicketSnapshot]:
        """Non-terminal tickets of a tenant that has at least one active rule."""
        has_active_rule = (
            select(SlaRuleModel.id)
            .join(SlaDefinitionModel, SlaDefinitionModel.id == SlaRuleModel.sla_definition_id)
            .where(
                SlaRuleModel.tenant_id == tenant_id,
                SlaRuleModel.is_active.is_(True),
                SlaDefinitionModel.is_active.is_(True),
            )
            .exists()
        )
        stmt = (
            select(TicketModel)
            .where(
                TicketModel.tenant_id == tenant_id,
                TicketModel.status.not_in(self._terminal_statuses),
                has_active_rule,
            )
            .order_by(TicketModel.created_at.asc())
        )
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            return [self._to_snapshot(m) for m in result.scalars().all()]

    async def get_status_history(self, tenant_id: str, ticket_id: str) -> List[StatusChange]:
        stmt = (
            select(TicketStatusChangeModel)
            .where(
                TicketStatusChangeModel.tenant_id == tenant_id,
                TicketStatusChangeModel.ticket_id == ticket_id,
            )
            .order_by(TicketStatusChangeModel.entered_at.asc(), TicketStatusChangeModel.id.asc())
        )
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            return [
                StatusChange(status=m.status, entered_at=as_utc(m.entered_at))
                for m in result.scalars().all()
            ]

    async def get_ticket(self, tenant_id: str, ticket_id: str) -> Optional[TicketSnapshot]:
        stmt = select(TicketModel).where(TicketModel.id == ticket_id, TicketModel.tenant_id == tenant_id)
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            model = result.scalar_one_or_none()
            return self._to_snapshot(model) if model else None
