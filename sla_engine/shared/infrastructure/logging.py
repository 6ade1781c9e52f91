"""
Structured Logging
==================

JSON-structured logging for the SLA engine.

Provides:
- Structured JSON logs with tenant and correlation context
- Redaction of credentials and webhook secrets
- Sweep and request timing utilities

Usage:
    from sla_engine.shared.infrastructure.logging import get_logger

    logger = get_logger(__name__)
    logger.info("Escalation created", extra={"tenant_id": "t1", "ticket_id": "T-1"})
"""

import logging
import sys
import time
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any

from pythonjsonlogger import jsonlogger

_REDACTED = "***REDACTED***"
_SENSITIVE_KEYS = ("password", "secret", "api_key", "authorization", "webhook_url")


class CustomJsonFormatter(jsonlogger.JsonFormatter):
    """
    JSON formatter that stamps every record with service context.

    Adds:
    - UTC timestamp in ISO format
    - service and environment names
    - tenant_id / correlation_id when passed in ``extra``
    """

    def __init__(self, *args: Any, service: str = "sla-engine", environment: str = "unknown", **kwargs: Any):
        super().__init__(*args, **kwargs)
        self.service = service
        self.environment = environment

    def add_fields(
        self,
        log_record: dict[str, Any],
        record: logging.LogRecord,
        message_dict: dict[str, Any],
    ) -> None:
        super().add_fields(log_record, record, message_dict)

        if not log_record.get("timestamp"):
            log_record["timestamp"] = datetime.now(timezone.utc).isoformat()

        log_record["service"] = self.service
        log_record["environment"] = self.environment

        for key in ("tenant_id", "correlation_id"):
            if hasattr(record, key):
                log_record[key] = getattr(record, key)

        for key, value in list(log_record.items()):
            lowered = key.lower()
            if isinstance(value, str) and any(s in lowered for s in _SENSITIVE_KEYS):
                log_record[key] = _REDACTED


def setup_logging(
    level: str = "INFO",
    environment: str = "development",
    service: str = "sla-engine",
) -> None:
    """
    Configure structured JSON logging for the application.

    Args:
        level: Logging level (DEBUG, INFO, WARNING, ERROR)
        environment: Environment name stamped on every record
        service: Service name stamped on every record
    """
    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, level.upper()))
    root_logger.handlers.clear()

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(getattr(logging, level.upper()))
    handler.setFormatter(
        CustomJsonFormatter(
            "%(asctime)s %(name)s %(levelname)s %(message)s",
            datefmt="%Y-%m-%dT%H:%M:%S",
            service=service,
            environment=environment,
        )
    )
    root_logger.addHandler(handler)

    # Silence noisy loggers
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
    logging.getLogger("apscheduler").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)


def get_logger(name: str) -> logging.Logger:
    """Get a logger instance with the given name."""
    return logging.getLogger(name)


@contextmanager
def log_latency(logger: logging.Logger, operation: str, **extra_context: Any):
    """
    Context manager for measuring and logging operation latency.

    Usage:
        with log_latency(logger, "tenant_sweep", tenant_id=tenant_id):
            await scheduler.sweep_tenant(tenant_id)

    Args:
        logger: Logger instance
        operation: Operation name for logging
        **extra_context: Additional context to include in log
    """
    start = time.perf_counter()
    try:
        yield
    finally:
        latency_ms = (time.perf_counter() - start) * 1000
        logger.info(
            f"{operation} completed",
            extra={
                "operation": operation,
                "latency_ms": round(latency_ms, 2),
                **extra_context,
            },
        )
