from datetime import timedelta

import pytest

from sla_engine.sla.domain import (
    NOT_APPLICABLE,
    CatalogSnapshot,
    ClockEngine,
    RuleResolver,
    StatusChange,
    StatusTimeoutPolicy,
    build_intervals,
)
from sla_engine.sla.domain.entities import minutes_between

from support import T0, TENANT, at, make_definition, make_rule, make_ticket


def _catalog(response=None, resolution=None, policies=()) -> CatalogSnapshot:
    return CatalogSnapshot(
        tenant_id=TENANT,
        definitions=(make_definition("gold", response=response, resolution=resolution),),
        rules=(make_rule(1, "gold", "priority", "high"),),
        policies=tuple(
            StatusTimeoutPolicy(
                id=f"policy-{status}",
                tenant_id=TENANT,
                sla_definition_id="gold",
                status_value=status,
                is_paused=is_paused,
                timeout_minutes=timeout,
            )
            for status, is_paused, timeout in policies
        ),
    )


def _clock(catalog, ticket, history, now):
    resolved = RuleResolver(catalog).resolve(TENANT, ticket)
    return ClockEngine().compute_clock(TENANT, ticket, resolved, history, now, catalog)


def test_paused_interval_is_excluded_from_active_time() -> None:
    catalog = _catalog(resolution=240, policies=[("waiting_on_customer", True, None)])
    ticket = make_ticket(priority="high")
    history = [
        StatusChange("open", T0),
        StatusChange("waiting_on_customer", at(30)),
        StatusChange("open", at(60)),
    ]

    clock = _clock(catalog, ticket, history, at(90))

    assert clock.resolution.elapsed_minutes == pytest.approx(90)
    assert clock.resolution.active_minutes == pytest.approx(60)
    assert clock.resolution.paused_minutes == pytest.approx(30)
    assert clock.resolution.remaining_minutes == pytest.approx(180)
    assert not clock.resolution.is_breached


@pytest.mark.parametrize(
    "history",
    [
        [],
        [StatusChange("waiting_on_customer", at(10)), StatusChange("open", at(25))],
        [
            StatusChange("in_progress", at(50)),
            StatusChange("waiting_on_customer", at(5)),
            StatusChange("open", at(20)),
        ],
        [StatusChange("pending_vendor", at(-30)), StatusChange("open", at(40)), StatusChange("open", at(45))],
        [StatusChange("waiting_on_customer", at(70)), StatusChange("open", at(500))],
    ],
)
def test_active_plus_paused_equals_wall_time(history) -> None:
    catalog = _catalog(
        response=30, resolution=240,
        policies=[("waiting_on_customer", True, None), ("pending_vendor", True, 60)],
    )
    now = at(120)

    clock = _clock(catalog, make_ticket(priority="high"), history, now)

    wall = minutes_between(T0, now)
    result = clock.resolution
    assert result.active_minutes + result.paused_minutes == pytest.approx(wall)
    assert clock.intervals[0].entered_at == T0
    assert clock.intervals[-1].exited_at is None
    for earlier, later in zip(clock.intervals, clock.intervals[1:]):
        assert earlier.exited_at == later.entered_at
        assert earlier.status != later.status


def test_intervals_clamp_early_changes_and_ignore_future_ones() -> None:
    history = [
        StatusChange("in_progress", at(90)),
        StatusChange("pending_vendor", at(-15)),
        StatusChange("closed", at(300)),
    ]

    intervals = build_intervals(T0, "open", history, at(120))

    assert [(i.status, i.entered_at) for i in intervals] == [
        ("pending_vendor", T0),
        ("in_progress", at(90)),
    ]


def test_breached_response_clock_reports_breach_instant() -> None:
    catalog = _catalog(response=60)

    clock = _clock(catalog, make_ticket(priority="high"), [], at(61))

    response = clock.response
    assert response.is_breached
    assert response.is_running
    assert response.breached_at == at(60)
    assert response.projected_breach_at == at(60)
    assert response.overdue_minutes == pytest.approx(1)
    assert clock.resolution is None
    assert clock.current is response


def test_projection_skips_earlier_paused_time() -> None:
    catalog = _catalog(response=60, policies=[("waiting_on_customer", True, None)])
    history = [StatusChange("waiting_on_customer", at(20)), StatusChange("open", at(50))]

    clock = _clock(catalog, make_ticket(priority="high"), history, at(70))

    assert clock.response.active_minutes == pytest.approx(40)
    assert clock.response.projected_breach_at == at(90)


def test_no_projection_while_paused() -> None:
    catalog = _catalog(response=60, policies=[("waiting_on_customer", True, None)])
    history = [StatusChange("waiting_on_customer", at(20))]

    clock = _clock(catalog, make_ticket(priority="high"), history, at(200))

    assert clock.response.active_minutes == pytest.approx(20)
    assert clock.response.projected_breach_at is None
    assert not clock.response.is_breached


def test_status_without_policy_keeps_clock_running() -> None:
    catalog = _catalog(resolution=100, policies=[("waiting_on_customer", True, None)])
    history = [StatusChange("on_hold", at(10))]

    clock = _clock(catalog, make_ticket(priority="high"), history, at(70))

    assert clock.resolution.active_minutes == pytest.approx(70)
    assert clock.resolution.paused_minutes == pytest.approx(0)


def test_first_response_stops_response_clock_only() -> None:
    catalog = _catalog(response=60, resolution=240)
    ticket = make_ticket(priority="high", first_response_at=at(10))

    clock = _clock(catalog, ticket, [], at(100))

    assert clock.response.stopped_at == at(10)
    assert not clock.response.is_running
    assert clock.response.active_minutes == pytest.approx(10)
    assert clock.response.projected_breach_at is None
    assert clock.resolution.is_running
    assert clock.resolution.active_minutes == pytest.approx(100)
    assert clock.current is clock.resolution


def test_terminal_status_stops_both_clocks() -> None:
    catalog = _catalog(response=60, resolution=240)
    ticket = make_ticket(priority="high", status="resolved")
    history = [StatusChange("in_progress", at(20)), StatusChange("resolved", at(100))]

    clock = _clock(catalog, ticket, history, at(500))

    assert clock.is_terminal
    assert clock.resolution.stopped_at == at(100)
    assert clock.resolution.active_minutes == pytest.approx(100)
    assert clock.response.stopped_at == at(100)
    assert clock.response.is_breached
    assert clock.status_timeout is None


def test_not_applicable_ticket_has_no_clocks() -> None:
    catalog = _catalog(resolution=240)
    ticket = make_ticket(priority="low")

    clock = ClockEngine().compute_clock(TENANT, ticket, NOT_APPLICABLE, [], at(30), catalog)

    assert not clock.applicable
    assert clock.response is None and clock.resolution is None
    assert clock.current_status == "open"


def test_status_timeout_exceeded() -> None:
    catalog = _catalog(resolution=600, policies=[("pending_vendor", False, 30)])
    history = [StatusChange("pending_vendor", at(10))]

    clock = _clock(catalog, make_ticket(priority="high"), history, at(50))

    timeout = clock.status_timeout
    assert timeout.status == "pending_vendor"
    assert timeout.entered_at == at(10)
    assert timeout.minutes_in_status == pytest.approx(40)
    assert timeout.is_exceeded
    assert timeout.overdue_minutes == pytest.approx(10)


def test_paused_status_never_exceeds_its_timeout() -> None:
    catalog = _catalog(resolution=600, policies=[("waiting_on_customer", True, 30)])
    history = [StatusChange("waiting_on_customer", at(10))]

    clock = _clock(catalog, make_ticket(priority="high"), history, at(10) + timedelta(hours=5))

    assert clock.status_timeout.minutes_in_status == 0
    assert not clock.status_timeout.is_exceeded
