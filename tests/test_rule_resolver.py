import pytest

from sla_engine.core.exceptions import DomainException
from sla_engine.sla.domain import (
    NOT_APPLICABLE,
    CatalogSnapshot,
    ResolvedSla,
    RuleResolver,
)

from support import OTHER_TENANT, TENANT, make_definition, make_rule, make_ticket


def _catalog(definitions, rules, tenant_id=TENANT) -> CatalogSnapshot:
    return CatalogSnapshot(tenant_id=tenant_id, definitions=tuple(definitions), rules=tuple(rules))


def test_lowest_rule_priority_wins() -> None:
    gold = make_definition("gold", level=1, resolution=240)
    silver = make_definition("silver", level=2, resolution=480)
    catalog = _catalog(
        [gold, silver],
        [
            make_rule(1, "gold", "priority", "high", priority=5),
            make_rule(2, "silver", "category", "billing", priority=1),
        ],
    )

    resolved = RuleResolver(catalog).resolve(TENANT, make_ticket(priority="high", category="billing"))

    assert isinstance(resolved, ResolvedSla)
    assert resolved.rule.id == 2
    assert resolved.definition.id == "silver"
    assert [m.rule.id for m in resolved.matches] == [2, 1]


def test_priority_tie_broken_by_definition_level_then_rule_id() -> None:
    gold = make_definition("gold", level=1, resolution=240)
    silver = make_definition("silver", level=2, resolution=480)
    catalog = _catalog(
        [gold, silver],
        [
            make_rule(7, "silver", "priority", "high"),
            make_rule(9, "gold", "category", "billing"),
            make_rule(3, "gold", "priority", "high"),
        ],
    )

    resolved = RuleResolver(catalog).resolve(TENANT, make_ticket(priority="high", category="billing"))

    assert [m.rule.id for m in resolved.matches] == [3, 9, 7]
    assert resolved.rule.id == 3


def test_resolution_is_deterministic_regardless_of_rule_order() -> None:
    gold = make_definition("gold", level=1, resolution=240)
    rules = [make_rule(i, "gold", "priority", "high") for i in (4, 2, 8, 6)]
    ticket = make_ticket(priority="high")

    forward = RuleResolver(_catalog([gold], rules)).resolve(TENANT, ticket)
    backward = RuleResolver(_catalog([gold], list(reversed(rules)))).resolve(TENANT, ticket)

    assert forward.rule.id == backward.rule.id == 2
    assert [m.rule.id for m in forward.matches] == [m.rule.id for m in backward.matches]


def test_no_matching_rule_is_not_applicable() -> None:
    catalog = _catalog([make_definition("gold", resolution=240)], [make_rule(1, "gold", "priority", "high")])

    resolved = RuleResolver(catalog).resolve(TENANT, make_ticket(priority="low"))

    assert resolved is NOT_APPLICABLE
    assert not resolved


def test_missing_or_null_field_never_matches() -> None:
    catalog = _catalog(
        [make_definition("gold", resolution=240)],
        [make_rule(1, "gold", "category", "None")],
    )
    resolver = RuleResolver(catalog)

    assert resolver.resolve(TENANT, make_ticket(category=None)) is NOT_APPLICABLE
    assert resolver.resolve(TENANT, make_ticket()) is NOT_APPLICABLE


def test_field_values_compare_as_exact_text() -> None:
    catalog = _catalog(
        [make_definition("gold", resolution=240)],
        [make_rule(1, "gold", "tier", "1"), make_rule(2, "gold", "priority", "High")],
    )
    resolver = RuleResolver(catalog)

    assert resolver.resolve(TENANT, make_ticket(tier=1)).rule.id == 1
    assert resolver.resolve(TENANT, make_ticket(priority="high")) is NOT_APPLICABLE


def test_status_is_matchable_without_being_in_fields() -> None:
    catalog = _catalog(
        [make_definition("gold", resolution=240)],
        [make_rule(1, "gold", "status", "pending_vendor")],
    )

    resolved = RuleResolver(catalog).resolve(TENANT, make_ticket(status="pending_vendor"))

    assert resolved.rule.id == 1


def test_inactive_rules_and_definitions_are_ignored() -> None:
    catalog = _catalog(
        [
            make_definition("gold", resolution=240, is_active=False),
            make_definition("silver", level=2, resolution=480),
        ],
        [
            make_rule(1, "gold", "priority", "high"),
            make_rule(2, "silver", "priority", "high", is_active=False),
            make_rule(3, "silver", "priority", "high", priority=9),
        ],
    )

    resolved = RuleResolver(catalog).resolve(TENANT, make_ticket(priority="high"))

    assert [m.rule.id for m in resolved.matches] == [3]


def test_response_and_resolution_winners_can_differ() -> None:
    resolution_only = make_definition("ops", level=1, resolution=240)
    response_only = make_definition("frontline", level=2, response=30)
    catalog = _catalog(
        [resolution_only, response_only],
        [
            make_rule(1, "ops", "priority", "high", priority=0),
            make_rule(2, "frontline", "category", "billing", priority=1),
        ],
    )

    resolved = RuleResolver(catalog).resolve(TENANT, make_ticket(priority="high", category="billing"))

    assert resolved.primary.rule.id == 1
    assert resolved.resolution.rule.id == 1
    assert resolved.response.rule.id == 2


def test_tenant_mismatch_is_rejected() -> None:
    catalog = _catalog([make_definition("gold", resolution=240)], [make_rule(1, "gold")])
    resolver = RuleResolver(catalog)

    with pytest.raises(DomainException):
        resolver.resolve(OTHER_TENANT, make_ticket(tenant_id=OTHER_TENANT, priority="high"))
    with pytest.raises(DomainException):
        resolver.resolve(TENANT, make_ticket(tenant_id=OTHER_TENANT, priority="high"))


def test_tracked_fields_cover_defaults_status_and_rule_fields() -> None:
    catalog = _catalog(
        [make_definition("gold", resolution=240)],
        [make_rule(1, "gold", "customer_tier", "enterprise")],
    )

    tracked = RuleResolver(catalog).tracked_fields()

    assert {"priority", "category", "status", "customer_tier"} <= tracked
