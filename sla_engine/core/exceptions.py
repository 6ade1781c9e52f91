"""
Core Exceptions
================

Custom exceptions for the SLA engine following clean architecture principles.

These exceptions define domain-specific errors that can be caught and handled
appropriately at the application boundaries (HTTP handlers, sweep loop).
"""

from typing import Optional, List, Dict


class ApplicationException(Exception):
    """Base exception for all application errors."""

    def __init__(self, message: str, details: Optional[dict] = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)


class DomainException(ApplicationException):
    """Base exception for domain logic violations."""


class RepositoryException(ApplicationException):
    """Base exception for repository/data access errors."""


class TransientStoreError(RepositoryException):
    """
    I/O failure while persisting sweep output.

    The sweep is idempotent, so the affected ticket is simply retried
    on the next cycle.
    """


class ConcurrencyConflict(RepositoryException):
    """
    Another writer already created the escalation for this (ticket, level).

    The losing writer treats this as a no-op.
    """

    def __init__(self, ticket_id: str, level: int):
        self.ticket_id = ticket_id
        self.level = level
        super().__init__(
            f"Escalation level {level} already exists for ticket {ticket_id}",
            {"ticket_id": ticket_id, "level": level}
        )


class MetricConflict(RepositoryException):
    """Another writer created the current metric row for this ticket first."""

    def __init__(self, tenant_id: str, ticket_id: str):
        self.tenant_id = tenant_id
        self.ticket_id = ticket_id
        super().__init__(
            f"Current SLA metric already exists for ticket {ticket_id}",
            {"tenant_id": tenant_id, "ticket_id": ticket_id}
        )


class ValidationException(ApplicationException):
    """
    Exception for malformed input to create/update operations.

    Carries field-level errors as a list of ``{"field": ..., "message": ...}``.
    """

    def __init__(
        self,
        message: str,
        errors: Optional[List[Dict[str, str]]] = None,
        details: Optional[dict] = None
    ):
        self.errors = errors or []
        super().__init__(message, details)

    @classmethod
    def for_field(cls, field: str, message: str) -> "ValidationException":
        """Build a validation error for a single field."""
        return cls(message, errors=[{"field": field, "message": message}])


class ResourceNotFoundException(ApplicationException):
    """Exception when a requested resource is not found."""

    def __init__(
        self,
        resource_type: str,
        resource_id: Optional[str] = None,
        details: Optional[dict] = None
    ):
        self.resource_type = resource_type
        self.resource_id = resource_id
        message = f"{resource_type}"
        if resource_id:
            message += f" with id '{resource_id}'"
        message += " not found"
        super().__init__(message, details)


class ConfigurationException(ApplicationException):
    """Exception for configuration errors."""


class ExternalServiceException(ApplicationException):
    """Base exception for external service failures."""

    def __init__(
        self,
        service_name: str,
        message: str,
        details: Optional[dict] = None
    ):
        self.service_name = service_name
        super().__init__(f"{service_name}: {message}", details)


class DispatchFailure(ExternalServiceException):
    """Notification delivery failed. Never affects escalation state."""

    def __init__(self, message: str, details: Optional[dict] = None):
        super().__init__("Notification Dispatcher", message, details)
