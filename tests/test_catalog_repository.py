import pytest

from sla_engine.sla.infrastructure.repositories import SQLAlchemySlaCatalogRepository

from support import OTHER_TENANT, TENANT, seed_sla


@pytest.mark.asyncio
async def test_read_contract_filters_inactive_rows(session_factory) -> None:
    gold, (gold_rule,) = await seed_sla(
        session_factory, name="Gold", resolution=240, statuses=[("waiting_on_customer", True, None)]
    )
    retired, _ = await seed_sla(session_factory, name="Retired", level=2, resolution=480)
    await seed_sla(session_factory, name="Elsewhere", resolution=60, tenant_id=OTHER_TENANT)

    async with session_factory() as session:
        catalog = SQLAlchemySlaCatalogRepository(session)
        await catalog.update_definition(TENANT, retired.id, {"is_active": False})
        await session.commit()

    async with session_factory() as session:
        catalog = SQLAlchemySlaCatalogRepository(session)
        definitions = await catalog.get_active_definitions(TENANT)
        rules = await catalog.get_active_rules(TENANT)
        gold_rules = await catalog.get_rules_for_definition(TENANT, gold.id)
        policies = await catalog.get_status_policies(TENANT, gold.id)
        tenants = await catalog.list_tenants()
        snapshot = await catalog.load_snapshot(TENANT)

    assert [d.id for d in definitions] == [gold.id]
    assert [r.id for r in rules] == [gold_rule.id]
    assert [r.id for r in gold_rules] == [gold_rule.id]
    assert [p.status_value for p in policies] == ["waiting_on_customer"]
    assert tenants == [TENANT, OTHER_TENANT]
    assert [d.id for d in snapshot.definitions] == [gold.id]
    assert [p.is_paused for p in snapshot.policies] == [True]


@pytest.mark.asyncio
async def test_foreign_tenant_ids_are_invisible(session_factory) -> None:
    gold, (rule,) = await seed_sla(session_factory, resolution=240)

    async with session_factory() as session:
        catalog = SQLAlchemySlaCatalogRepository(session)

        assert await catalog.get_definition(OTHER_TENANT, gold.id) is None
        assert await catalog.get_rule(OTHER_TENANT, rule.id) is None
        assert await catalog.get_definition(TENANT, "not-a-uuid") is None
        assert (await catalog.load_snapshot(OTHER_TENANT)).is_empty
