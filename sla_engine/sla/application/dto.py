"""
SLA Application DTOs
=====================

Data Transfer Objects for the SLA API layer.

These Pydantic models handle serialization/deserialization and validation
for API requests and responses. Response models read straight from the
domain dataclasses (``from_attributes``).
"""

from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


# ========== Type Aliases for Literals ==========
ClockTypeStr = Literal["response", "resolution", "status_timeout"]
EscalationStatusStr = Literal["pending", "acknowledged"]
NotificationStatusStr = Literal["pending", "sent", "failed"]
SeverityStr = Literal["low", "medium", "high", "critical"]

_FIELD_NAME_PATTERN = r"^[A-Za-z_][A-Za-z0-9_.\-]*$"


def _not_null(value):
    if value is None:
        raise ValueError("May be omitted but not null")
    return value


# ========== Request DTOs ==========

class SlaDefinitionCreate(BaseModel):
    """Create an SLA definition. At least one target is required."""
    name: str = Field(..., min_length=1, max_length=255, description="Unique among active SLAs")
    description: Optional[str] = Field(None, max_length=2000)
    level: int = Field(default=1, ge=1, description="Stringency, lower is stricter")
    first_response_target_minutes: Optional[int] = Field(None, gt=0)
    resolution_target_minutes: Optional[int] = Field(None, gt=0)


class SlaDefinitionUpdate(BaseModel):
    """Partial update of an SLA definition."""
    name: Optional[str] = Field(None, min_length=1, max_length=255)
    description: Optional[str] = Field(None, max_length=2000)
    level: Optional[int] = Field(None, ge=1)
    first_response_target_minutes: Optional[int] = Field(None, gt=0)
    resolution_target_minutes: Optional[int] = Field(None, gt=0)
    is_active: Optional[bool] = None

    @field_validator("name", "level", "is_active")
    @classmethod
    def reject_null(cls, v):
        return _not_null(v)


class SlaRuleCreate(BaseModel):
    """Create a rule binding ``field_name == field_value`` to an SLA."""
    field_name: str = Field(..., min_length=1, max_length=100, pattern=_FIELD_NAME_PATTERN)
    field_value: str = Field(..., min_length=1, max_length=255)
    priority: int = Field(default=0, ge=0, description="Lower is evaluated first")


class SlaRuleUpdate(BaseModel):
    field_name: Optional[str] = Field(None, min_length=1, max_length=100, pattern=_FIELD_NAME_PATTERN)
    field_value: Optional[str] = Field(None, min_length=1, max_length=255)
    priority: Optional[int] = Field(None, ge=0)
    is_active: Optional[bool] = None

    @field_validator("field_name", "field_value", "priority", "is_active")
    @classmethod
    def reject_null(cls, v):
        return _not_null(v)


class StatusTimeoutCreate(BaseModel):
    """Pause flag and optional time limit for one status."""
    status_value: str = Field(..., min_length=1, max_length=100)
    is_paused: bool = Field(default=False)
    timeout_minutes: Optional[int] = Field(None, gt=0)


class StatusTimeoutUpdate(BaseModel):
    status_value: Optional[str] = Field(None, min_length=1, max_length=100)
    is_paused: Optional[bool] = None
    timeout_minutes: Optional[int] = Field(None, gt=0)
    is_active: Optional[bool] = None

    @field_validator("status_value", "is_paused", "is_active")
    @classmethod
    def reject_null(cls, v):
        return _not_null(v)


class ResolveRequest(BaseModel):
    """Ticket fields to test against the catalog without touching the ticket store."""
    ticket_id: str = Field(default="preview", min_length=1)
    status: str = Field(default="open", min_length=1)
    fields: Dict[str, Any] = Field(default_factory=dict)


class TicketEventRequest(BaseModel):
    """Notification that ticket fields changed upstream."""
    changed_fields: List[str] = Field(default_factory=list)


# ========== Response DTOs ==========

class _FromDomain(BaseModel):
    model_config = ConfigDict(from_attributes=True)


class SlaDefinitionResponse(_FromDomain):
    id: str
    name: str
    description: Optional[str]
    level: int
    first_response_target_minutes: Optional[int]
    resolution_target_minutes: Optional[int]
    is_active: bool
    created_at: Optional[datetime]
    updated_at: Optional[datetime]


class SlaRuleResponse(_FromDomain):
    id: int
    sla_definition_id: str
    field_name: str
    field_value: str
    priority: int
    is_active: bool
    created_at: Optional[datetime]
    updated_at: Optional[datetime]


class StatusTimeoutResponse(_FromDomain):
    id: str
    sla_definition_id: str
    status_value: str
    is_paused: bool
    timeout_minutes: Optional[int]
    is_active: bool


class EscalationResponse(_FromDomain):
    id: str
    ticket_id: str
    sla_definition_id: str
    level: int
    clock_type: ClockTypeStr
    reason: str
    severity: SeverityStr
    overdue_minutes: float
    escalated_at: datetime
    status: EscalationStatusStr
    acknowledged_at: Optional[datetime]
    acknowledged_by: Optional[str]
    notification_status: NotificationStatusStr
    notification_attempts: int
    notification_attempted_at: Optional[datetime]


class SlaMetricResponse(_FromDomain):
    id: str
    ticket_id: str
    sla_rule_id: int
    sla_definition_id: str
    response_rule_id: Optional[int]
    resolution_rule_id: Optional[int]
    first_response_time: Optional[float]
    first_response_met: Optional[bool]
    resolution_time: Optional[float]
    resolution_met: Optional[bool]
    total_idle_time: float
    overall_compliance: Optional[bool]
    is_superseded: bool
    superseded_at: Optional[datetime]
    finalized_at: Optional[datetime]
    created_at: Optional[datetime]
    updated_at: Optional[datetime]


class ComplianceStatsResponse(_FromDomain):
    """Compliance values are percentages (0-100)."""
    total_tickets: int
    response_compliance: Optional[float]
    resolution_compliance: Optional[float]
    overall_compliance: Optional[float]
    avg_first_response_time: Optional[float]
    avg_resolution_time: Optional[float]
    avg_idle_time: Optional[float]
    sla_met_tickets: int
    sla_violated_tickets: int
    total_escalations: int
    escalation_rate: Optional[float]


class RuleMatchResponse(BaseModel):
    rule_id: int
    sla_definition_id: str
    sla_name: str
    field_name: str
    field_value: str
    priority: int
    level: int


class ResolveResponse(BaseModel):
    applicable: bool
    rules: List[RuleMatchResponse] = Field(default_factory=list)
    primary: Optional[RuleMatchResponse] = None
    response: Optional[RuleMatchResponse] = None
    resolution: Optional[RuleMatchResponse] = None


class ClockResultResponse(_FromDomain):
    clock_type: ClockTypeStr
    sla_definition_id: str
    sla_rule_id: int
    target_minutes: float
    active_minutes: float
    paused_minutes: float
    remaining_minutes: float
    is_breached: bool
    projected_breach_at: Optional[datetime]
    breached_at: Optional[datetime]
    stopped_at: Optional[datetime]


class StatusTimeoutResultResponse(_FromDomain):
    status: str
    timeout_minutes: int
    entered_at: datetime
    minutes_in_status: float
    is_exceeded: bool


class StatusIntervalResponse(_FromDomain):
    status: str
    entered_at: datetime
    exited_at: Optional[datetime]


class TicketClockResponse(_FromDomain):
    ticket_id: str
    computed_at: datetime
    current_status: str
    is_terminal: bool
    applicable: bool
    intervals: List[StatusIntervalResponse]
    response: Optional[ClockResultResponse]
    resolution: Optional[ClockResultResponse]
    current: Optional[ClockResultResponse]
    status_timeout: Optional[StatusTimeoutResultResponse]


class TicketEventResponse(BaseModel):
    ticket_id: str
    re_resolved: bool
    metric: Optional[SlaMetricResponse] = None


class SweepResponse(_FromDomain):
    """Outcome of one tenant sweep."""
    tenant_id: str
    evaluated: int
    escalations_created: int
    conflicts: int
    failures: int
    deferred: int
    redispatched: int
    metrics_refreshed: int


class HealthResponse(BaseModel):
    """Health check response."""
    status: str
    version: str
    scheduler_running: bool
    timestamp: datetime
