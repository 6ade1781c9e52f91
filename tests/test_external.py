import json

import httpx
import pytest
from pydantic import ValidationError

from sla_engine.config import ClockType
from sla_engine.core.exceptions import ConfigurationException, DispatchFailure
from sla_engine.sla.domain import Escalation, EscalationLevelConfig, EscalationPolicy
from sla_engine.sla.infrastructure.external import (
    CircuitBreaker,
    CircuitState,
    EscalationPolicyManager,
    LogNotificationDispatcher,
    SweepScheduler,
    WebhookNotificationDispatcher,
    escalation_payload,
)

from support import TENANT, T0

WEBHOOK = "https://hooks.example.com/sla"


@pytest.fixture
def escalation() -> Escalation:
    return Escalation(
        id="esc-1",
        tenant_id=TENANT,
        ticket_id="T-1",
        sla_definition_id="def-gold",
        level=2,
        clock_type=ClockType.RESOLUTION,
        escalated_at=T0,
        reason="resolution clock past target",
        overdue_minutes=12.3456,
    )


def _dispatcher(handler, **kwargs) -> WebhookNotificationDispatcher:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return WebhookNotificationDispatcher(WEBHOOK, backoff_seconds=0, client=client, **kwargs)


# ========== Escalation policy ==========

def test_default_policy_escalates_at_one_and_two_targets() -> None:
    policy = EscalationPolicy()

    assert [lvl.level for lvl in policy.levels] == [1, 2]
    assert policy.level_config(2).threshold_minutes(60) == 120
    assert policy.level_config(3) is None
    assert policy.status_timeout_level == 1


def test_policy_levels_are_sorted() -> None:
    policy = EscalationPolicy(levels=[
        EscalationLevelConfig(level=2, target_multiplier=1.5),
        EscalationLevelConfig(level=1),
    ])

    assert [lvl.level for lvl in policy.levels] == [1, 2]


@pytest.mark.parametrize(
    "levels",
    [
        [],
        [{"level": 1}, {"level": 1, "target_multiplier": 2.0}],
        [{"level": 0}],
    ],
)
def test_invalid_policy_is_rejected(levels) -> None:
    with pytest.raises(ValidationError):
        EscalationPolicy(levels=levels)


def test_level_threshold_never_drops_below_lower_levels() -> None:
    policy = EscalationPolicy(levels=[
        EscalationLevelConfig(level=1, target_multiplier=1.0, offset_minutes=10),
        EscalationLevelConfig(level=2, target_multiplier=2.0),
    ])

    assert policy.threshold_minutes(1, 5) == 15
    assert policy.threshold_minutes(2, 5) == 15
    assert policy.threshold_minutes(2, 60) == 120


def test_policy_manager_loads_yaml(tmp_path) -> None:
    path = tmp_path / "sla_config.yaml"
    path.write_text(
        "escalation:\n"
        "  status_timeout_level: 2\n"
        "  levels:\n"
        "    - level: 1\n"
        "      target_multiplier: 1.0\n"
        "    - level: 2\n"
        "      target_multiplier: 1.0\n"
        "      offset_minutes: 30\n"
    )
    manager = EscalationPolicyManager()

    policy = manager.load(path)

    assert policy.status_timeout_level == 2
    assert manager.get_policy().level_config(2).offset_minutes == 30


def test_policy_manager_defaults_when_file_missing(tmp_path) -> None:
    manager = EscalationPolicyManager()

    policy = manager.load(tmp_path / "absent.yaml")

    assert policy == EscalationPolicy()
    manager.start_watching()
    manager.stop_watching()


def test_policy_manager_rejects_invalid_file(tmp_path) -> None:
    path = tmp_path / "sla_config.yaml"
    path.write_text("escalation:\n  levels: []\n")

    with pytest.raises(ConfigurationException):
        EscalationPolicyManager().load(path)


def test_failed_reload_keeps_previous_policy(tmp_path) -> None:
    path = tmp_path / "sla_config.yaml"
    path.write_text("escalation:\n  levels:\n    - level: 1\n      target_multiplier: 3.0\n")
    manager = EscalationPolicyManager()
    manager.load(path)

    path.write_text("escalation: [unclosed\n")

    assert manager.reload() is False
    assert manager.get_policy().level_config(1).target_multiplier == 3.0


def test_reload_picks_up_new_policy(tmp_path) -> None:
    path = tmp_path / "sla_config.yaml"
    path.write_text("escalation:\n  levels:\n    - level: 1\n")
    manager = EscalationPolicyManager()
    manager.load(path)

    path.write_text("escalation:\n  levels:\n    - level: 1\n    - level: 2\n      target_multiplier: 4.0\n")

    assert manager.reload() is True
    assert [lvl.level for lvl in manager.get_policy().levels] == [1, 2]


def test_start_watching_requires_load() -> None:
    with pytest.raises(RuntimeError):
        EscalationPolicyManager().start_watching()


# ========== Circuit breaker ==========

def test_circuit_opens_at_threshold_and_recovers() -> None:
    breaker = CircuitBreaker(failure_threshold=2, recovery_timeout=0)

    breaker.record_failure()
    assert breaker.allow_request()

    breaker.record_failure()
    assert breaker.state == CircuitState.HALF_OPEN

    breaker.record_failure()
    breaker.record_success()
    assert breaker.state == CircuitState.CLOSED


def test_open_circuit_rejects_requests() -> None:
    breaker = CircuitBreaker(failure_threshold=1, recovery_timeout=60)

    breaker.record_failure()

    assert breaker.state == CircuitState.OPEN
    assert not breaker.allow_request()


# ========== Notification dispatch ==========

def test_escalation_payload(escalation) -> None:
    payload = escalation_payload(TENANT, escalation)

    assert payload["event"] == "sla.escalation"
    assert payload["escalation_id"] == "esc-1"
    assert payload["idempotency_key"] == "esc-1"
    assert payload["level"] == 2
    assert payload["clock_type"] == "resolution"
    assert payload["overdue_minutes"] == 12.35
    assert payload["escalated_at"] == T0.isoformat()


@pytest.mark.asyncio
async def test_webhook_delivers_alert(escalation) -> None:
    received = []

    def handler(request: httpx.Request) -> httpx.Response:
        received.append((request.headers.get("Idempotency-Key"), json.loads(request.content)))
        return httpx.Response(202)

    dispatcher = _dispatcher(handler)

    assert await dispatcher.send_escalation_alert(TENANT, escalation) is True
    key, body = received[0]
    assert body["ticket_id"] == "T-1"
    assert key == body["idempotency_key"] == "esc-1"
    await dispatcher.close()


@pytest.mark.asyncio
async def test_webhook_retries_transport_errors(escalation) -> None:
    attempts = []

    def handler(request: httpx.Request) -> httpx.Response:
        attempts.append(request)
        if len(attempts) == 1:
            raise httpx.ConnectError("connection refused", request=request)
        return httpx.Response(200)

    dispatcher = _dispatcher(handler)

    assert await dispatcher.send_escalation_alert(TENANT, escalation) is True
    assert len(attempts) == 2


@pytest.mark.asyncio
async def test_webhook_failure_after_retries_opens_circuit(escalation) -> None:
    attempts = []

    def handler(request: httpx.Request) -> httpx.Response:
        attempts.append(request)
        return httpx.Response(503)

    dispatcher = _dispatcher(
        handler, max_retries=3, circuit_breaker=CircuitBreaker(failure_threshold=1, recovery_timeout=60)
    )

    with pytest.raises(DispatchFailure, match="503"):
        await dispatcher.send_escalation_alert(TENANT, escalation)
    assert len(attempts) == 3

    with pytest.raises(DispatchFailure, match="circuit breaker open"):
        await dispatcher.send_escalation_alert(TENANT, escalation)
    assert len(attempts) == 3


@pytest.mark.asyncio
async def test_log_dispatcher_always_delivers(escalation) -> None:
    dispatcher = LogNotificationDispatcher()

    assert await dispatcher.send_escalation_alert(TENANT, escalation) is True
    await dispatcher.close()


# ========== Sweep scheduling ==========

@pytest.mark.asyncio
async def test_sweep_scheduler_registers_single_job() -> None:
    async def job():
        return None

    scheduler = SweepScheduler(interval_seconds=3600)
    await scheduler.start(job)
    try:
        assert scheduler.is_running
        job_entry = scheduler._scheduler.get_job(SweepScheduler.JOB_ID)
        assert job_entry.max_instances == 1
        assert job_entry.coalesce is True
    finally:
        await scheduler.stop()

    assert not scheduler.is_running
