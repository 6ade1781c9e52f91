"""
Rule Resolver
=============

Decides which SLA applies to a ticket.

Every active rule of every active definition is tested against the ticket;
matching rules are ordered by ``(rule.priority, definition.level, rule.id)``
and the first one wins. The trailing rule id makes the answer reproducible
when priority and level tie.
"""

from dataclasses import dataclass
from typing import FrozenSet, Optional, Tuple, Union

from sla_engine.config import ClockType
from sla_engine.core.exceptions import DomainException
from sla_engine.sla.domain.entities import SlaDefinition, SlaRule, TicketSnapshot
from sla_engine.sla.domain.value_objects import CatalogSnapshot


class NotApplicable:
    """No rule matches the ticket. A valid state, not an error."""

    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __bool__(self) -> bool:
        return False

    def __repr__(self) -> str:
        return "NOT_APPLICABLE"


NOT_APPLICABLE = NotApplicable()


@dataclass(frozen=True)
class RuleMatch:
    """A matching rule together with the definition it belongs to."""

    rule: SlaRule
    definition: SlaDefinition

    @property
    def sort_key(self) -> Tuple[int, int, int]:
        return (self.rule.priority, self.definition.level, self.rule.id)


@dataclass(frozen=True)
class ResolvedSla:
    """
    Result of resolving a ticket against the catalog.

    Attributes:
        matches: Every applicable rule, in precedence order
        primary: The overall winner
        response: First applicable rule whose definition has a response target
        resolution: First applicable rule whose definition has a resolution target
    """

    matches: Tuple[RuleMatch, ...]
    primary: RuleMatch
    response: Optional[RuleMatch]
    resolution: Optional[RuleMatch]

    @property
    def rule(self) -> SlaRule:
        return self.primary.rule

    @property
    def definition(self) -> SlaDefinition:
        return self.primary.definition

    def winner_for(self, clock_type: str) -> Optional[RuleMatch]:
        if clock_type == ClockType.RESPONSE:
            return self.response
        return self.resolution


ResolveResult = Union[ResolvedSla, NotApplicable]


class RuleResolver:
    """
    Pure rule-precedence evaluation over a catalog snapshot.

    Holds no mutable state, so one instance can serve concurrent callers.
    """

    def __init__(self, catalog: CatalogSnapshot):
        self._catalog = catalog
        self._definitions = catalog.active_definitions()
        self._rules = catalog.active_rules()

    @property
    def catalog(self) -> CatalogSnapshot:
        return self._catalog

    def resolve(self, tenant_id: str, ticket: TicketSnapshot) -> ResolveResult:
        """
        Resolve the SLA for one ticket.

        Args:
            tenant_id: Tenant the caller is acting for
            ticket: Ticket snapshot from the Ticket Store

        Returns:
            ResolvedSla, or NOT_APPLICABLE when no rule matches

        Raises:
            DomainException: If the catalog or ticket belongs to another tenant
        """
        if tenant_id != self._catalog.tenant_id or tenant_id != ticket.tenant_id:
            raise DomainException(
                "Tenant mismatch while resolving SLA",
                {"tenant_id": tenant_id, "ticket_id": ticket.id}
            )

        matches = sorted(
            (
                RuleMatch(rule=rule, definition=self._definitions[rule.sla_definition_id])
                for rule in self._rules
                if rule.matches(ticket)
            ),
            key=lambda m: m.sort_key,
        )
        if not matches:
            return NOT_APPLICABLE

        response = next(
            (m for m in matches if m.definition.first_response_target_minutes is not None), None
        )
        resolution = next(
            (m for m in matches if m.definition.resolution_target_minutes is not None), None
        )
        return ResolvedSla(
            matches=tuple(matches),
            primary=matches[0],
            response=response,
            resolution=resolution,
        )

    def tracked_fields(self) -> FrozenSet[str]:
        """Fields whose change requires re-resolution (status is always tracked)."""
        return self._catalog.tracked_fields() | {"status"}
