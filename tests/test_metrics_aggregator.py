import asyncio

import pytest

from sla_engine.config import ClockType
from sla_engine.core.exceptions import MetricConflict, ResourceNotFoundException, ValidationException
from sla_engine.sla.domain import DateRange, Escalation, SlaMetric, StatusChange
from sla_engine.sla.infrastructure.repositories import (
    SQLAlchemyEscalationRepository,
    SQLAlchemySlaMetricRepository,
)

from support import TENANT, at, build_aggregator, make_ticket, seed_sla


@pytest.mark.asyncio
async def test_unanswered_ticket_past_target_is_non_compliant(session_factory, ticket_store) -> None:
    await seed_sla(session_factory, response=60)
    ticket_store.add(make_ticket(priority="high"))

    async with session_factory() as session:
        metric = await build_aggregator(session, ticket_store).refresh_metric(TENANT, "T-1", now=at(61))

    assert metric.first_response_met is False
    assert metric.first_response_time is None
    assert metric.resolution_met is None
    assert metric.overall_compliance is False
    assert not metric.is_final


@pytest.mark.asyncio
async def test_open_ticket_within_target_has_no_verdict_yet(session_factory, ticket_store) -> None:
    await seed_sla(session_factory, response=60, resolution=240)
    ticket_store.add(make_ticket(priority="high"))

    async with session_factory() as session:
        metric = await build_aggregator(session, ticket_store).refresh_metric(TENANT, "T-1", now=at(30))

    assert metric.first_response_met is None
    assert metric.overall_compliance is None


@pytest.mark.asyncio
async def test_resolved_ticket_metric_is_met_and_finalized(session_factory, ticket_store) -> None:
    await seed_sla(session_factory, response=60, resolution=240, statuses=[("waiting_on_customer", True, None)])
    ticket_store.add(
        make_ticket(priority="high", status="resolved", first_response_at=at(10)),
        [
            StatusChange("waiting_on_customer", at(20)),
            StatusChange("open", at(50)),
            StatusChange("resolved", at(100)),
        ],
    )

    async with session_factory() as session:
        metric = await build_aggregator(session, ticket_store).refresh_metric(TENANT, "T-1", now=at(120))

    assert metric.first_response_time == pytest.approx(10)
    assert metric.first_response_met is True
    assert metric.resolution_time == pytest.approx(70)
    assert metric.resolution_met is True
    assert metric.total_idle_time == pytest.approx(30)
    assert metric.overall_compliance is True
    assert metric.finalized_at == at(120)


@pytest.mark.asyncio
async def test_finalized_metric_stays_frozen_until_reopened(session_factory, ticket_store) -> None:
    await seed_sla(session_factory, resolution=240)
    ticket_store.add(
        make_ticket(priority="high", status="resolved"),
        [StatusChange("resolved", at(100))],
    )

    async with session_factory() as session:
        aggregator = build_aggregator(session, ticket_store)
        finalized = await aggregator.refresh_metric(TENANT, "T-1", now=at(120))
        again = await aggregator.refresh_metric(TENANT, "T-1", now=at(500))

        assert again.id == finalized.id
        assert again.finalized_at == at(120)
        assert again.resolution_time == pytest.approx(100)

        ticket_store.move(TENANT, "T-1", "open", at(600))
        reopened = await aggregator.refresh_metric(TENANT, "T-1", now=at(620))

    assert reopened.id == finalized.id
    assert reopened.finalized_at is None
    assert reopened.resolution_met is None


@pytest.mark.asyncio
async def test_ticket_gains_sla_after_priority_change(session_factory, ticket_store) -> None:
    await seed_sla(session_factory, resolution=240, rules=[("priority", "critical", 0)])
    ticket = ticket_store.add(make_ticket(priority="low"))

    async with session_factory() as session:
        aggregator = build_aggregator(session, ticket_store)
        assert await aggregator.refresh_metric(TENANT, "T-1", now=at(5)) is None

        ticket.fields["priority"] = "critical"
        re_resolved, metric = await aggregator.on_ticket_changed(TENANT, "T-1", ["priority"], now=at(10))

        rows = await aggregator.list_for_ticket(TENANT, "T-1")

    assert re_resolved
    assert metric is not None
    assert [r.id for r in rows] == [metric.id]


@pytest.mark.asyncio
async def test_winning_rule_change_supersedes_previous_metric(session_factory, ticket_store) -> None:
    _, (gold_rule,) = await seed_sla(session_factory, name="Gold", resolution=240, rules=[("priority", "high", 5)])
    _, (silver_rule,) = await seed_sla(
        session_factory, name="Silver", level=2, resolution=480, rules=[("category", "billing", 1)]
    )
    ticket = ticket_store.add(make_ticket(priority="high", category="general"))

    async with session_factory() as session:
        aggregator = build_aggregator(session, ticket_store)
        first = await aggregator.refresh_metric(TENANT, "T-1", now=at(5))

        ticket.fields["category"] = "billing"
        _, second = await aggregator.on_ticket_changed(TENANT, "T-1", ["category"], now=at(10))

        rows = await aggregator.list_for_ticket(TENANT, "T-1")

    assert first.sla_rule_id == gold_rule.id
    assert second.sla_rule_id == silver_rule.id
    assert second.id != first.id
    assert [(r.id, r.is_superseded) for r in rows] == [(second.id, False), (first.id, True)]
    assert rows[1].superseded_at == at(10)


@pytest.mark.asyncio
async def test_resolution_winner_change_supersedes_under_same_primary(session_factory, ticket_store) -> None:
    _, (touch_rule,) = await seed_sla(
        session_factory, name="First Touch", response=60, rules=[("priority", "high", 0)]
    )
    _, (fast_rule,) = await seed_sla(
        session_factory, name="Fast Fix", resolution=120, rules=[("category", "outage", 1)]
    )
    _, (slow_rule,) = await seed_sla(
        session_factory, name="Slow Fix", resolution=600, rules=[("category", "question", 1)]
    )
    ticket = ticket_store.add(make_ticket(priority="high", category="outage"))

    async with session_factory() as session:
        aggregator = build_aggregator(session, ticket_store)
        first = await aggregator.refresh_metric(TENANT, "T-1", now=at(5))

        ticket.fields["category"] = "question"
        _, second = await aggregator.on_ticket_changed(TENANT, "T-1", ["category"], now=at(10))

        rows = await aggregator.list_for_ticket(TENANT, "T-1")

    assert first.sla_rule_id == second.sla_rule_id == touch_rule.id
    assert (first.response_rule_id, first.resolution_rule_id) == (touch_rule.id, fast_rule.id)
    assert (second.response_rule_id, second.resolution_rule_id) == (touch_rule.id, slow_rule.id)
    assert second.id != first.id
    assert [(r.id, r.is_superseded) for r in rows] == [(second.id, False), (first.id, True)]


@pytest.mark.asyncio
async def test_only_one_current_metric_row_per_ticket(session_factory) -> None:
    definition, (rule,) = await seed_sla(session_factory, resolution=240)

    def current_row() -> SlaMetric:
        return SlaMetric(
            id=None,
            tenant_id=TENANT,
            ticket_id="T-1",
            sla_rule_id=rule.id,
            sla_definition_id=definition.id,
            created_at=at(5),
            updated_at=at(5),
        )

    async with session_factory() as session:
        metrics = SQLAlchemySlaMetricRepository(session)
        await metrics.create(current_row())
        await session.commit()

        with pytest.raises(MetricConflict):
            await metrics.create(current_row())

    async with session_factory() as session:
        metrics = SQLAlchemySlaMetricRepository(session)
        current = await metrics.get_current(TENANT, "T-1")
        await metrics.supersede(TENANT, current.id, at(10))
        replacement = await metrics.create(current_row())
        await session.commit()

    assert replacement.id != current.id


@pytest.mark.asyncio
async def test_concurrent_refreshes_share_one_current_row(session_factory, ticket_store) -> None:
    await seed_sla(session_factory, resolution=240)
    ticket_store.add(make_ticket(priority="high"))

    async def refresh(minutes: float) -> SlaMetric:
        async with session_factory() as session:
            metric = await build_aggregator(session, ticket_store).refresh_metric(TENANT, "T-1", now=at(minutes))
            await session.commit()
            return metric

    first, second = await asyncio.gather(refresh(5), refresh(6))

    async with session_factory() as session:
        aggregator = build_aggregator(session, ticket_store)
        rows = await aggregator.list_for_ticket(TENANT, "T-1")
        stats = await aggregator.get_compliance_stats(TENANT, DateRange())

    assert first.id == second.id
    assert [r.is_superseded for r in rows] == [False]
    assert stats.total_tickets == 1


@pytest.mark.asyncio
async def test_untracked_field_change_does_not_re_resolve(session_factory, ticket_store) -> None:
    await seed_sla(session_factory, resolution=240)
    ticket_store.add(make_ticket(priority="high"))

    async with session_factory() as session:
        aggregator = build_aggregator(session, ticket_store)
        current = await aggregator.refresh_metric(TENANT, "T-1", now=at(5))

        re_resolved, metric = await aggregator.on_ticket_changed(TENANT, "T-1", ["subject"], now=at(10))

    assert not re_resolved
    assert metric.id == current.id


@pytest.mark.asyncio
async def test_losing_the_sla_supersedes_the_metric(session_factory, ticket_store) -> None:
    await seed_sla(session_factory, resolution=240)
    ticket = ticket_store.add(make_ticket(priority="high"))

    async with session_factory() as session:
        aggregator = build_aggregator(session, ticket_store)
        await aggregator.refresh_metric(TENANT, "T-1", now=at(5))

        ticket.fields["priority"] = "low"
        re_resolved, metric = await aggregator.on_ticket_changed(TENANT, "T-1", ["priority"], now=at(10))

        rows = await aggregator.list_for_ticket(TENANT, "T-1")

    assert re_resolved
    assert metric is None
    assert [r.is_superseded for r in rows] == [True]


@pytest.mark.asyncio
async def test_refresh_of_unknown_ticket_is_not_found(session_factory, ticket_store) -> None:
    await seed_sla(session_factory, resolution=240)

    async with session_factory() as session:
        with pytest.raises(ResourceNotFoundException):
            await build_aggregator(session, ticket_store).refresh_metric(TENANT, "missing", now=at(5))


@pytest.mark.asyncio
async def test_compliance_stats_on_empty_range(session_factory, ticket_store) -> None:
    async with session_factory() as session:
        stats = await build_aggregator(session, ticket_store).get_compliance_stats(TENANT, DateRange())

    assert stats.total_tickets == 0
    assert stats.response_compliance is None
    assert stats.overall_compliance is None
    assert stats.avg_first_response_time is None
    assert stats.escalation_rate is None
    assert stats.total_escalations == 0


@pytest.mark.asyncio
async def test_compliance_stats_aggregate_current_metrics(session_factory, ticket_store) -> None:
    definition, _ = await seed_sla(session_factory, response=60)
    ticket_store.add(make_ticket("T-1", priority="high"))
    ticket_store.add(make_ticket("T-2", priority="high", first_response_at=at(10)))

    async with session_factory() as session:
        await SQLAlchemyEscalationRepository(session).create(Escalation(
            id=None,
            tenant_id=TENANT,
            ticket_id="T-1",
            sla_definition_id=definition.id,
            level=1,
            clock_type=ClockType.RESPONSE,
            escalated_at=at(61),
        ))
        aggregator = build_aggregator(session, ticket_store)
        await aggregator.refresh_open_tickets(TENANT, now=at(61))
        await session.commit()

    async with session_factory() as session:
        aggregator = build_aggregator(session, ticket_store)
        stats = await aggregator.get_compliance_stats(TENANT, DateRange(start=at(0), end=at(61)))
        later = await aggregator.get_compliance_stats(TENANT, DateRange(start=at(100)))

    assert stats.total_tickets == 2
    assert stats.response_compliance == pytest.approx(50.0)
    assert stats.resolution_compliance is None
    assert stats.overall_compliance == pytest.approx(50.0)
    assert stats.avg_first_response_time == pytest.approx(10.0)
    assert stats.sla_met_tickets == 1
    assert stats.sla_violated_tickets == 1
    assert stats.total_escalations == 1
    assert stats.escalation_rate == pytest.approx(50.0)
    assert later.total_tickets == 0


@pytest.mark.asyncio
async def test_compliance_stats_reject_inverted_range(session_factory, ticket_store) -> None:
    async with session_factory() as session:
        aggregator = build_aggregator(session, ticket_store)
        with pytest.raises(ValidationException) as exc_info:
            await aggregator.get_compliance_stats(TENANT, DateRange(start=at(10), end=at(0)))

    assert exc_info.value.errors[0]["field"] == "startDate"
