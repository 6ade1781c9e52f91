"""
Escalation Scheduler
====================

Periodic sweep that raises escalations for breached SLA clocks.

Per (ticket, level) the lifecycle is Normal -> Pending -> Acknowledged.
A sweep evaluates every open ticket of a tenant, creates the escalation
levels whose thresholds have been reached, and dispatches one alert per
newly created row.

Guarantees:
- at most one escalation row per (tenant, ticket, level), enforced by a
  per-ticket in-process lock and the database unique constraint
- a row is committed before its alert is dispatched, and the dispatch
  outcome is recorded on the row; rows whose dispatch never happened are
  re-dispatched on the next sweep
- each tenant sweep has a wall-clock budget; unfinished tickets are
  deferred to the next cycle
"""

import asyncio
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, Hashable, List, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from sla_engine.config import ClockType, NotificationStatus
from sla_engine.core.exceptions import (
    ConcurrencyConflict,
    DomainException,
    RepositoryException,
    TransientStoreError,
)
from sla_engine.sla.application.services import (
    IEscalationPolicyProvider,
    IEscalationRepository,
    INotificationDispatcher,
    ISlaCatalog,
    ITicketStore,
    TicketEvaluation,
    TicketSlaService,
)
from sla_engine.sla.domain import (
    CatalogSnapshot,
    ClockEngine,
    Escalation,
    EscalationPolicy,
    TicketClock,
    TicketSnapshot,
    classify_severity,
)
from sla_engine.sla.domain.entities import utcnow
from sla_engine.shared.infrastructure.logging import get_logger, log_latency

logger = get_logger(__name__)

CatalogFactory = Callable[[AsyncSession], ISlaCatalog]
EscalationRepositoryFactory = Callable[[AsyncSession], IEscalationRepository]
MetricsWriterFactory = Callable[[AsyncSession], Any]


@dataclass
class SweepReport:
    """Counters for one tenant sweep."""

    tenant_id: str
    evaluated: int = 0
    escalations_created: int = 0
    conflicts: int = 0
    failures: int = 0
    deferred: int = 0
    redispatched: int = 0
    metrics_refreshed: int = 0
    started_at: datetime = field(default_factory=utcnow)
    finished_at: Optional[datetime] = None


@dataclass(frozen=True)
class DueEscalation:
    """A level whose threshold a clock has reached."""

    level: int
    clock_type: str
    sla_definition_id: str
    overdue_minutes: float
    severity: str
    reason: str


class KeyedLock:
    """
    One asyncio.Lock per key, dropped once nobody holds or waits for it.

    Only valid within a single event loop.
    """

    def __init__(self):
        self._locks: Dict[Hashable, asyncio.Lock] = {}
        self._users: Dict[Hashable, int] = {}

    @asynccontextmanager
    async def hold(self, key: Hashable):
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._users[key] = self._users.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._users[key] -= 1
            if self._users[key] == 0:
                del self._users[key]
                self._locks.pop(key, None)

    def __len__(self) -> int:
        return len(self._locks)


def due_escalations(clock: TicketClock, policy: EscalationPolicy) -> List[DueEscalation]:
    """
    Levels whose thresholds have been reached, in ascending level order.

    Only running clocks escalate. Level ``n`` is due when a clock's active
    minutes reach ``policy.threshold_minutes(n, target)``; the response clock
    is checked before the resolution clock. A status timeout breach raises
    ``policy.status_timeout_level`` when no clock already raised it.
    """
    running = [c for c in (clock.response, clock.resolution) if c is not None and c.is_running]
    due: Dict[int, DueEscalation] = {}

    for level_cfg in policy.levels:
        for result in running:
            threshold = policy.threshold_minutes(level_cfg.level, result.target_minutes)
            if result.active_minutes < threshold:
                continue
            overdue = result.active_minutes - result.target_minutes
            due[level_cfg.level] = DueEscalation(
                level=level_cfg.level,
                clock_type=result.clock_type,
                sla_definition_id=result.sla_definition_id,
                overdue_minutes=overdue,
                severity=classify_severity(overdue, result.target_minutes),
                reason=(
                    f"{result.clock_type} clock at {result.active_minutes:.1f} active minutes "
                    f"against a {result.target_minutes:.0f} minute target "
                    f"(level {level_cfg.level} threshold {threshold:.1f})"
                ),
            )
            break

    timeout = clock.status_timeout
    if timeout is not None and timeout.is_exceeded and policy.status_timeout_level not in due:
        due[policy.status_timeout_level] = DueEscalation(
            level=policy.status_timeout_level,
            clock_type=ClockType.STATUS_TIMEOUT,
            sla_definition_id=timeout.sla_definition_id,
            overdue_minutes=timeout.overdue_minutes,
            severity=classify_severity(timeout.overdue_minutes, timeout.timeout_minutes),
            reason=(
                f"ticket spent {timeout.minutes_in_status:.1f} minutes in status "
                f"'{timeout.status}' (limit {timeout.timeout_minutes})"
            ),
        )

    return [due[level] for level in sorted(due)]


class EscalationScheduler:
    """
    Sweeps tenants for breached SLA clocks.

    Each per-ticket write runs in its own short session obtained from
    ``session_factory``, so one failing ticket never rolls back another.

    Args:
        session_factory: Async session maker for the engine's store
        ticket_store: Read-only Ticket Store
        notifier: Notification Dispatcher
        policy_provider: Supplies the escalation level policy
        catalog_factory: Builds a catalog repository on a session
        escalation_repository_factory: Builds an escalation repository on a session
        clock_engine: Clock Engine (terminal statuses)
        metrics_factory: Optional builder of a metrics writer on a session;
            when set, every evaluated ticket also has its metric refreshed
        concurrency: Concurrent ticket evaluations per tenant
        budget_seconds: Wall-clock budget per tenant sweep
        dispatch_timeout_seconds: Bound on one alert dispatch
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        ticket_store: ITicketStore,
        notifier: INotificationDispatcher,
        policy_provider: IEscalationPolicyProvider,
        catalog_factory: CatalogFactory,
        escalation_repository_factory: EscalationRepositoryFactory,
        clock_engine: Optional[ClockEngine] = None,
        metrics_factory: Optional[MetricsWriterFactory] = None,
        concurrency: int = 8,
        budget_seconds: float = 45.0,
        dispatch_timeout_seconds: float = 5.0,
    ):
        self._session_factory = session_factory
        self._ticket_store = ticket_store
        self._notifier = notifier
        self._policy_provider = policy_provider
        self._catalog_factory = catalog_factory
        self._escalation_factory = escalation_repository_factory
        self._ticket_sla = TicketSlaService(ticket_store, clock_engine or ClockEngine())
        self._metrics_factory = metrics_factory
        self._concurrency = concurrency
        self._budget_seconds = budget_seconds
        self._dispatch_timeout = dispatch_timeout_seconds
        self._locks = KeyedLock()

    # ========== Entry points ==========

    async def sweep_all_tenants(self, now: Optional[datetime] = None) -> List[SweepReport]:
        """
        Run one sweep per tenant in parallel.

        Covers every tenant with an active SLA plus any tenant still holding
        undelivered alerts. Tenants share no mutable state; a failure in one
        tenant's sweep is logged and does not affect the others.
        """
        async with self._session_factory() as session:
            active = await self._catalog_factory(session).list_tenants()
            undelivered = await self._escalation_factory(session).list_undispatched_tenants()
        tenants = sorted(set(active) | set(undelivered))

        results = await asyncio.gather(
            *(self.sweep_tenant(tenant_id, now) for tenant_id in tenants),
            return_exceptions=True,
        )

        reports = []
        for tenant_id, result in zip(tenants, results):
            if isinstance(result, BaseException):
                logger.error(
                    "Tenant sweep crashed",
                    extra={"tenant_id": tenant_id, "error": str(result), "error_type": type(result).__name__}
                )
                continue
            reports.append(result)
        return reports

    async def sweep_tenant(self, tenant_id: str, now: Optional[datetime] = None) -> SweepReport:
        """
        Evaluate every open ticket of one tenant and raise due escalations.

        Args:
            tenant_id: Tenant to sweep
            now: Evaluation instant (defaults to the current time)

        Returns:
            SweepReport with per-outcome counters
        """
        now = now or utcnow()
        report = SweepReport(tenant_id=tenant_id, started_at=now)
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self._budget_seconds

        with log_latency(logger, "tenant_sweep", tenant_id=tenant_id):
            try:
                async with self._session_factory() as session:
                    snapshot = await self._catalog_factory(session).load_snapshot(tenant_id)
                tickets = await self._ticket_store.get_open_tickets_with_active_sla(tenant_id)
            except (SQLAlchemyError, RepositoryException) as e:
                report.failures += 1
                logger.error(
                    "Sweep could not load tenant state",
                    extra={"tenant_id": tenant_id, "error": str(e)}
                )
                report.finished_at = utcnow()
                return report

            await self._redispatch_undelivered(tenant_id, report, deadline)

            if not snapshot.is_empty and tickets:
                await self._evaluate_within_budget(tenant_id, tickets, snapshot, now, report, deadline)

        report.finished_at = utcnow()
        logger.info(
            "Tenant sweep finished",
            extra={
                "tenant_id": tenant_id,
                "evaluated": report.evaluated,
                "escalations_created": report.escalations_created,
                "conflicts": report.conflicts,
                "failures": report.failures,
                "deferred": report.deferred,
                "redispatched": report.redispatched,
            }
        )
        return report

    # ========== Ticket evaluation ==========

    async def _evaluate_within_budget(
        self,
        tenant_id: str,
        tickets: List[TicketSnapshot],
        snapshot: CatalogSnapshot,
        now: datetime,
        report: SweepReport,
        deadline: float,
    ) -> None:
        loop = asyncio.get_running_loop()
        policy = self._policy_provider.get_policy()
        semaphore = asyncio.Semaphore(self._concurrency)

        async def worker(ticket: TicketSnapshot) -> None:
            async with semaphore:
                if loop.time() >= deadline:
                    report.deferred += 1
                    return
                await self._process_ticket(tenant_id, ticket, snapshot, policy, now, report)

        tasks = [asyncio.create_task(worker(ticket)) for ticket in tickets]
        done, pending = await asyncio.wait(tasks, timeout=max(0.0, deadline - loop.time()))

        if pending:
            for task in pending:
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)
            report.deferred += len(pending)
            logger.warning(
                "Sweep budget exhausted, tickets deferred",
                extra={"tenant_id": tenant_id, "deferred": report.deferred}
            )

        for task in done:
            if task.cancelled() or task.exception() is None:
                continue
            report.failures += 1
            logger.error(
                "Unexpected error evaluating ticket",
                extra={"tenant_id": tenant_id, "error": str(task.exception())}
            )

    async def _process_ticket(
        self,
        tenant_id: str,
        ticket: TicketSnapshot,
        snapshot: CatalogSnapshot,
        policy: EscalationPolicy,
        now: datetime,
        report: SweepReport,
    ) -> None:
        try:
            evaluation = await self._ticket_sla.evaluate(tenant_id, ticket, snapshot, now)
            report.evaluated += 1
            due = due_escalations(evaluation.clock, policy) if evaluation.clock.applicable else []

            async with self._locks.hold((tenant_id, ticket.id)):
                if due:
                    await self._raise_levels(tenant_id, ticket.id, due, now, report)
                if self._metrics_factory is not None:
                    await self._write_metric(tenant_id, evaluation, now)
                    report.metrics_refreshed += 1

        except (SQLAlchemyError, RepositoryException) as e:
            # Idempotent: the ticket is simply evaluated again next cycle
            report.failures += 1
            logger.warning(
                "Transient store failure, ticket retried next sweep",
                extra={"tenant_id": tenant_id, "ticket_id": ticket.id, "error": str(e)}
            )
        except DomainException as e:
            report.failures += 1
            logger.error(
                "Ticket could not be evaluated",
                extra={"tenant_id": tenant_id, "ticket_id": ticket.id, "error": e.message}
            )

    async def _raise_levels(
        self,
        tenant_id: str,
        ticket_id: str,
        due: List[DueEscalation],
        now: datetime,
        report: SweepReport,
    ) -> None:
        """Create each missing due level, then dispatch its alert. Caller holds the ticket lock."""
        async with self._session_factory() as session:
            existing = set(await self._escalation_factory(session).get_levels(tenant_id, ticket_id))

        for candidate in due:
            if candidate.level in existing:
                continue
            escalation = await self._create(tenant_id, ticket_id, candidate, now)
            if escalation is None:
                report.conflicts += 1
                continue

            report.escalations_created += 1
            logger.warning(
                "SLA escalation raised",
                extra={
                    "tenant_id": tenant_id,
                    "ticket_id": ticket_id,
                    "escalation_id": escalation.id,
                    "level": escalation.level,
                    "clock_type": escalation.clock_type,
                    "severity": escalation.severity,
                    "overdue_minutes": round(escalation.overdue_minutes, 2),
                }
            )
            await self._dispatch(tenant_id, escalation)

    async def _create(
        self, tenant_id: str, ticket_id: str, candidate: DueEscalation, now: datetime
    ) -> Optional[Escalation]:
        """Commit one escalation row. Returns None when another writer already did."""
        escalation = Escalation(
            id=None,
            tenant_id=tenant_id,
            ticket_id=ticket_id,
            sla_definition_id=candidate.sla_definition_id,
            level=candidate.level,
            clock_type=candidate.clock_type,
            escalated_at=now,
            reason=candidate.reason,
            severity=candidate.severity,
            overdue_minutes=candidate.overdue_minutes,
        )
        try:
            async with self._session_factory() as session:
                created = await self._escalation_factory(session).create(escalation)
                await session.commit()
            return created
        except ConcurrencyConflict:
            logger.info(
                "Escalation level already raised by another writer",
                extra={"tenant_id": tenant_id, "ticket_id": ticket_id, "level": candidate.level}
            )
            return None
        except SQLAlchemyError as e:
            raise TransientStoreError(
                "Failed to persist escalation",
                {"tenant_id": tenant_id, "ticket_id": ticket_id, "level": candidate.level}
            ) from e

    async def _write_metric(self, tenant_id: str, evaluation: TicketEvaluation, now: datetime) -> None:
        async with self._session_factory() as session:
            await self._metrics_factory(session).apply_evaluation(tenant_id, evaluation, now)
            await session.commit()

    # ========== Notification dispatch ==========

    async def _dispatch(self, tenant_id: str, escalation: Escalation) -> bool:
        """
        Send the alert with a bounded timeout and record the outcome.

        A failed dispatch never touches the escalation state itself.
        """
        attempted_at = utcnow()
        try:
            delivered = await asyncio.wait_for(
                self._notifier.send_escalation_alert(tenant_id, escalation),
                timeout=self._dispatch_timeout,
            )
        except asyncio.TimeoutError:
            delivered = False
            logger.error(
                "Escalation alert timed out",
                extra={"tenant_id": tenant_id, "escalation_id": escalation.id, "timeout_seconds": self._dispatch_timeout}
            )
        except Exception as e:
            delivered = False
            logger.error(
                "Escalation alert failed",
                extra={
                    "tenant_id": tenant_id,
                    "escalation_id": escalation.id,
                    "error": str(e),
                    "error_type": type(e).__name__,
                }
            )

        status = NotificationStatus.SENT if delivered else NotificationStatus.FAILED
        try:
            async with self._session_factory() as session:
                await self._escalation_factory(session).record_notification(
                    tenant_id, escalation.id, status, attempted_at
                )
                await session.commit()
        except SQLAlchemyError as e:
            raise TransientStoreError(
                "Failed to record notification outcome",
                {"tenant_id": tenant_id, "escalation_id": escalation.id}
            ) from e

        escalation.notification_status = status
        escalation.notification_attempts += 1
        escalation.notification_attempted_at = attempted_at
        return delivered

    async def _redispatch_undelivered(self, tenant_id: str, report: SweepReport, deadline: float) -> None:
        """Dispatch rows committed by a sweep that died before dispatching them."""
        loop = asyncio.get_running_loop()
        try:
            async with self._session_factory() as session:
                undelivered = await self._escalation_factory(session).list_undispatched(tenant_id)

            for row in undelivered:
                if loop.time() >= deadline:
                    break
                async with self._locks.hold((tenant_id, row.ticket_id)):
                    async with self._session_factory() as session:
                        current = await self._escalation_factory(session).get(tenant_id, row.id)
                    if current is None or not current.is_notification_pending:
                        continue
                    await self._dispatch(tenant_id, current)
                    report.redispatched += 1
        except (SQLAlchemyError, RepositoryException) as e:
            report.failures += 1
            logger.warning(
                "Re-dispatch of undelivered escalations failed",
                extra={"tenant_id": tenant_id, "error": str(e)}
            )
