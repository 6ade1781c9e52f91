"""Shared HTTP plumbing: middleware and exception handlers."""

from sla_engine.shared.api.middleware import (
    CorrelationIDMiddleware,
    LoggingMiddleware,
    register_exception_handlers,
)

__all__ = ["CorrelationIDMiddleware", "LoggingMiddleware", "register_exception_handlers"]
