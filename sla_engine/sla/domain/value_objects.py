"""
SLA Value Objects
==================

Immutable value objects for the SLA domain.

Value objects are defined by their attributes rather than an identity.
They are immutable and can be freely shared between concurrent sweeps.
"""

from dataclasses import dataclass
from typing import Dict, FrozenSet, List, Optional, Tuple

from pydantic import BaseModel, Field, field_validator

from sla_engine.config import DEFAULT_TRACKED_FIELDS, EscalationSeverity
from sla_engine.sla.domain.entities import SlaDefinition, SlaRule, StatusTimeoutPolicy


# ========== Escalation policy ==========

class EscalationLevelConfig(BaseModel):
    """
    Threshold for a single escalation level.

    Level ``n`` fires once a clock's active minutes reach
    ``target * target_multiplier + offset_minutes``.
    """
    level: int = Field(ge=1, description="Escalation level (1-based)")
    target_multiplier: float = Field(default=1.0, ge=0, description="Multiple of the SLA target")
    offset_minutes: float = Field(default=0.0, ge=0, description="Fixed minutes added to the threshold")

    def threshold_minutes(self, target_minutes: float) -> float:
        return target_minutes * self.target_multiplier + self.offset_minutes


class EscalationPolicy(BaseModel):
    """
    Escalation cascade loaded from YAML.

    Default: level 1 at the target, level 2 at twice the target.
    """
    levels: List[EscalationLevelConfig] = Field(
        default_factory=lambda: [
            EscalationLevelConfig(level=1, target_multiplier=1.0),
            EscalationLevelConfig(level=2, target_multiplier=2.0),
        ],
        description="Escalation levels in ascending order"
    )
    status_timeout_level: int = Field(
        default=1,
        ge=1,
        description="Level raised when a ticket overstays a status timeout"
    )

    @field_validator("levels")
    @classmethod
    def validate_levels(cls, v: List[EscalationLevelConfig]) -> List[EscalationLevelConfig]:
        """Levels must be unique; they are kept in ascending order."""
        if not v:
            raise ValueError("at least one escalation level is required")
        ordered = sorted(v, key=lambda lvl: lvl.level)
        if len({lvl.level for lvl in ordered}) != len(ordered):
            raise ValueError("escalation levels must be unique")
        return ordered

    def level_config(self, level: int) -> Optional[EscalationLevelConfig]:
        for cfg in self.levels:
            if cfg.level == level:
                return cfg
        return None

    def threshold_minutes(self, level: int, target_minutes: float) -> float:
        """
        Active minutes at which ``level`` fires for a clock with this target.

        A level never fires before the levels below it, so its threshold is
        the highest configured threshold up to and including it. Cascades
        whose raw thresholds cross for some targets are therefore valid.
        """
        return max(
            cfg.threshold_minutes(target_minutes) for cfg in self.levels if cfg.level <= level
        )


def classify_severity(overdue_minutes: float, target_minutes: Optional[float]) -> str:
    """
    Map how far past target a clock is onto a severity.

    Over 100% of the target overdue is critical, over 50% high,
    over 25% medium, anything else low.
    """
    if not target_minutes or target_minutes <= 0:
        return EscalationSeverity.LOW
    ratio = overdue_minutes / target_minutes
    if ratio > 1.0:
        return EscalationSeverity.CRITICAL
    if ratio > 0.5:
        return EscalationSeverity.HIGH
    if ratio > 0.25:
        return EscalationSeverity.MEDIUM
    return EscalationSeverity.LOW


# ========== Catalog snapshot ==========

@dataclass(frozen=True)
class CatalogSnapshot:
    """
    Consistent view of one tenant's active SLA catalog.

    Loaded once per sweep or request so every ticket in that pass resolves
    against the same definitions, rules and policies.
    """

    tenant_id: str
    definitions: Tuple[SlaDefinition, ...] = ()
    rules: Tuple[SlaRule, ...] = ()
    policies: Tuple[StatusTimeoutPolicy, ...] = ()

    @property
    def is_empty(self) -> bool:
        return not self.definitions or not self.rules

    def definition(self, definition_id: str) -> Optional[SlaDefinition]:
        for definition in self.definitions:
            if definition.id == definition_id:
                return definition
        return None

    def active_definitions(self) -> Dict[str, SlaDefinition]:
        return {d.id: d for d in self.definitions if d.is_active}

    def active_rules(self) -> List[SlaRule]:
        """Active rules whose definition is also active."""
        definitions = self.active_definitions()
        return [r for r in self.rules if r.is_active and r.sla_definition_id in definitions]

    def policies_for(self, definition_id: Optional[str]) -> Dict[str, StatusTimeoutPolicy]:
        """Active status policies of one definition, keyed by status value."""
        if definition_id is None:
            return {}
        return {
            p.status_value: p
            for p in self.policies
            if p.is_active and p.sla_definition_id == definition_id
        }

    def tracked_fields(self) -> FrozenSet[str]:
        """Ticket fields whose change can move a ticket to a different rule."""
        return frozenset(DEFAULT_TRACKED_FIELDS) | {r.field_name for r in self.active_rules()}
