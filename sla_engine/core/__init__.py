"""
Core Module
============

Shared core utilities and abstractions used across the application.

This module contains framework-agnostic code that defines the fundamental
building blocks of the system.
"""

from sla_engine.core.exceptions import (
    ApplicationException,
    DomainException,
    RepositoryException,
    TransientStoreError,
    ConcurrencyConflict,
    MetricConflict,
    ValidationException,
    ResourceNotFoundException,
    ConfigurationException,
    ExternalServiceException,
    DispatchFailure,
)

__all__ = [
    "ApplicationException",
    "DomainException",
    "RepositoryException",
    "TransientStoreError",
    "ConcurrencyConflict",
    "MetricConflict",
    "ValidationException",
    "ResourceNotFoundException",
    "ConfigurationException",
    "ExternalServiceException",
    "DispatchFailure",
]
