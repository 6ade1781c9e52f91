"""
SLA External Service Integrations
==================================

External services for the SLA engine:
- Escalation policy YAML file with hot reload (watchdog)
- Webhook notification dispatcher (httpx) with retry and circuit breaker
- APScheduler wrapper for the background sweep
"""

import asyncio
import threading
import time
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, Optional

import httpx
import yaml
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from pydantic import ValidationError
from watchdog.events import FileSystemEventHandler
from watchdog.observers import Observer

from sla_engine.core.exceptions import ConfigurationException, DispatchFailure
from sla_engine.shared.infrastructure.logging import get_logger
from sla_engine.sla.application.services import IEscalationPolicyProvider, INotificationDispatcher
from sla_engine.sla.domain import Escalation, EscalationPolicy

logger = get_logger(__name__)


# ========== Escalation policy file ==========

class PolicyFileHandler(FileSystemEventHandler):
    """Watchdog event handler for escalation policy file changes."""

    def __init__(self, manager: "EscalationPolicyManager", config_path: Path):
        self.manager = manager
        self.config_path = config_path.resolve()
        super().__init__()

    def _is_target(self, path: str) -> bool:
        return Path(path).resolve() == self.config_path

    def on_modified(self, event):
        if not event.is_directory and self._is_target(event.src_path):
            logger.info("Escalation policy file changed", extra={"path": event.src_path})
            self.manager.reload()

    def on_created(self, event):
        self.on_modified(event)

    def on_moved(self, event):
        # Editors that save via rename
        if not event.is_directory and self._is_target(event.dest_path):
            logger.info("Escalation policy file replaced", extra={"path": event.dest_path})
            self.manager.reload()


class EscalationPolicyManager(IEscalationPolicyProvider):
    """
    Thread-safe escalation policy holder with hot-reload support.

    The watchdog observer runs in its own thread; the sweep reads the policy
    from the event loop, so swaps happen under a lock. A reload that fails to
    parse keeps the previous policy.
    """

    def __init__(self, policy: Optional[EscalationPolicy] = None):
        self._policy = policy
        self._lock = threading.Lock()
        self._path: Optional[Path] = None
        self._observer = None

    def load(self, path: Path) -> EscalationPolicy:
        """
        Initial policy load. A missing file means the default policy.

        Raises:
            ConfigurationException: If the file exists but is not a valid policy
        """
        self._path = Path(path)
        policy = self._load_from_file(self._path)
        with self._lock:
            self._policy = policy
        logger.info(
            "Escalation policy loaded",
            extra={"path": str(self._path), "levels": [lvl.level for lvl in policy.levels]}
        )
        return policy

    @staticmethod
    def _load_from_file(path: Path) -> EscalationPolicy:
        if not path.exists():
            logger.warning("Escalation policy file not found, using defaults", extra={"path": str(path)})
            return EscalationPolicy()

        try:
            with open(path, "r") as f:
                data = yaml.safe_load(f) or {}
            return EscalationPolicy(**data.get("escalation", data))
        except (yaml.YAMLError, ValidationError, TypeError) as e:
            raise ConfigurationException(
                f"Invalid escalation policy file: {path}", {"error": str(e)}
            ) from e

    def reload(self) -> bool:
        """Reload the policy from file. Returns False (keeping the old policy) on error."""
        if self._path is None:
            return False

        try:
            new_policy = self._load_from_file(self._path)
        except ConfigurationException as e:
            logger.error(
                "Failed to reload escalation policy, keeping previous",
                extra={"path": str(self._path), "error": e.details.get("error")}
            )
            return False

        with self._lock:
            self._policy = new_policy
        logger.info("Escalation policy reloaded", extra={"levels": [lvl.level for lvl in new_policy.levels]})
        return True

    def start_watching(self) -> None:
        """
        Start watching the policy file for changes.

        Skipped when the file does not exist or inotify is unavailable
        (some container runtimes).
        """
        if self._path is None:
            raise RuntimeError("Policy not loaded. Call load() first.")

        if not self._path.exists():
            logger.info("Escalation policy file absent, not watching", extra={"path": str(self._path)})
            return

        try:
            self._observer = Observer()
            self._observer.schedule(
                PolicyFileHandler(self, self._path),
                str(self._path.resolve().parent),
                recursive=False
            )
            self._observer.start()
            logger.info("Watching escalation policy file", extra={"path": str(self._path)})
        except OSError as e:
            logger.warning("File watching not available, using static policy", extra={"error": str(e)})
            self._observer = None

    def stop_watching(self) -> None:
        """Stop watching (safe to call even if not watching)."""
        if self._observer is not None:
            self._observer.stop()
            self._observer.join(timeout=5)
            self._observer = None

    def get_policy(self) -> EscalationPolicy:
        with self._lock:
            if self._policy is None:
                self._policy = EscalationPolicy()
            return self._policy


# ========== Notification dispatch ==========

class CircuitState:
    """Circuit breaker states."""
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreaker:
    """
    Circuit breaker for the notification webhook.

    States:
    - CLOSED: Normal operation, requests pass through
    - OPEN: After N failures, reject all requests for M seconds
    - HALF_OPEN: After the timeout, allow a trial request
    """

    def __init__(self, failure_threshold: int = 5, recovery_timeout: float = 60.0):
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._opened_at: Optional[float] = None

    @property
    def state(self) -> str:
        if self._state == CircuitState.OPEN and self._opened_at is not None:
            if time.monotonic() - self._opened_at >= self.recovery_timeout:
                self._state = CircuitState.HALF_OPEN
        return self._state

    def allow_request(self) -> bool:
        return self.state in (CircuitState.CLOSED, CircuitState.HALF_OPEN)

    def record_success(self) -> None:
        self._failure_count = 0
        self._state = CircuitState.CLOSED
        self._opened_at = None

    def record_failure(self) -> None:
        self._failure_count += 1
        if self._failure_count >= self.failure_threshold or self._state == CircuitState.HALF_OPEN:
            self._state = CircuitState.OPEN
            self._opened_at = time.monotonic()
            logger.warning(
                "Notification circuit breaker opened",
                extra={"failure_count": self._failure_count, "recovery_timeout": self.recovery_timeout}
            )


def escalation_payload(tenant_id: str, escalation: Escalation) -> Dict[str, Any]:
    """
    JSON body posted to the notification webhook.

    ``idempotency_key`` is the escalation id: an alert re-sent after a lost
    outcome carries the same key, so receivers can drop the duplicate.
    """
    return {
        "event": "sla.escalation",
        "idempotency_key": escalation.id,
        "tenant_id": tenant_id,
        "escalation_id": escalation.id,
        "ticket_id": escalation.ticket_id,
        "sla_definition_id": escalation.sla_definition_id,
        "level": escalation.level,
        "clock_type": escalation.clock_type,
        "severity": escalation.severity,
        "overdue_minutes": round(escalation.overdue_minutes, 2),
        "reason": escalation.reason,
        "escalated_at": escalation.escalated_at.isoformat(),
    }


class WebhookNotificationDispatcher(INotificationDispatcher):
    """
    Posts escalation alerts to a webhook.

    Handles delivery with:
    - Circuit breaker to stop hammering a dead endpoint
    - Exponential backoff retry
    - Per-request timeout
    """

    def __init__(
        self,
        webhook_url: str,
        timeout_seconds: float = 5.0,
        max_retries: int = 3,
        backoff_seconds: float = 1.0,
        client: Optional[httpx.AsyncClient] = None,
        circuit_breaker: Optional[CircuitBreaker] = None,
    ):
        self._webhook_url = webhook_url
        self._timeout = timeout_seconds
        self._max_retries = max_retries
        self._backoff = backoff_seconds
        self._http_client = client
        self._circuit_breaker = circuit_breaker or CircuitBreaker(failure_threshold=5, recovery_timeout=60)

    async def _get_client(self) -> httpx.AsyncClient:
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(timeout=self._timeout)
        return self._http_client

    async def send_escalation_alert(self, tenant_id: str, escalation: Escalation) -> bool:
        """
        Deliver one alert.

        Returns:
            True once the webhook answered 2xx

        Raises:
            DispatchFailure: If the circuit is open or every attempt failed
        """
        if not self._circuit_breaker.allow_request():
            raise DispatchFailure(
                "circuit breaker open", {"tenant_id": tenant_id, "escalation_id": escalation.id}
            )

        payload = escalation_payload(tenant_id, escalation)
        last_error = "no attempt made"

        for attempt in range(self._max_retries):
            try:
                client = await self._get_client()
                response = await client.post(
                    self._webhook_url,
                    json=payload,
                    headers={"Idempotency-Key": str(escalation.id)},
                )
                if response.is_success:
                    self._circuit_breaker.record_success()
                    logger.info(
                        "Escalation alert delivered",
                        extra={
                            "tenant_id": tenant_id,
                            "escalation_id": escalation.id,
                            "ticket_id": escalation.ticket_id,
                            "attempt": attempt + 1,
                        }
                    )
                    return True
                last_error = f"webhook returned {response.status_code}"
                logger.warning(
                    "Notification webhook returned non-2xx",
                    extra={"status_code": response.status_code, "attempt": attempt + 1}
                )
            except httpx.HTTPError as e:
                last_error = str(e) or type(e).__name__
                logger.warning(
                    "Notification webhook request failed",
                    extra={"error": last_error, "attempt": attempt + 1, "escalation_id": escalation.id}
                )

            if attempt < self._max_retries - 1:
                await asyncio.sleep(self._backoff * (2 ** attempt))

        self._circuit_breaker.record_failure()
        raise DispatchFailure(last_error, {"tenant_id": tenant_id, "escalation_id": escalation.id})

    async def close(self) -> None:
        if self._http_client:
            await self._http_client.aclose()
            self._http_client = None


class LogNotificationDispatcher(INotificationDispatcher):
    """Writes escalation alerts to the structured log. Used when no webhook is configured."""

    async def send_escalation_alert(self, tenant_id: str, escalation: Escalation) -> bool:
        logger.warning("Escalation alert", extra=escalation_payload(tenant_id, escalation))
        return True

    async def close(self) -> None:
        return None


# ========== Background scheduling ==========

class SweepScheduler:
    """
    Wrapper for APScheduler running the escalation sweep.

    Manages the lifecycle of the scheduler and its single interval job.
    ``max_instances=1`` keeps cycles from stacking; overlap with a manually
    triggered sweep is still safe.
    """

    JOB_ID = "sla_escalation_sweep"

    def __init__(self, interval_seconds: int = 60):
        self.interval_seconds = interval_seconds
        self._scheduler: Optional[AsyncIOScheduler] = None
        self._running = False

    async def start(self, job_func: Callable[[], Awaitable[Any]]) -> None:
        """Start the scheduler with the given coroutine function."""
        if self._running:
            logger.warning("Sweep scheduler already running")
            return

        self._scheduler = AsyncIOScheduler()
        self._scheduler.add_job(
            job_func,
            "interval",
            seconds=self.interval_seconds,
            id=self.JOB_ID,
            name="SLA Escalation Sweep",
            misfire_grace_time=self.interval_seconds,
            max_instances=1,
            coalesce=True,
            replace_existing=True
        )
        self._scheduler.start()
        self._running = True

        logger.info("Sweep scheduler started", extra={"interval_seconds": self.interval_seconds})

    async def stop(self) -> None:
        """Stop the scheduler gracefully."""
        if not self._running:
            return

        if self._scheduler:
            self._scheduler.shutdown(wait=False)

        self._running = False
        logger.info("Sweep scheduler stopped")

    @property
    def is_running(self) -> bool:
        return self._running
