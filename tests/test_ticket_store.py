import pytest

from sla_engine.sla.infrastructure.models import TicketModel, TicketStatusChangeModel
from sla_engine.sla.infrastructure.repositories import SQLAlchemyTicketStore

from support import OTHER_TENANT, T0, TENANT, at, seed_sla


async def _insert_tickets(session_factory) -> None:
    async with session_factory() as session:
        session.add_all([
            TicketModel(id="T-1", tenant_id=TENANT, status="open", initial_status="new",
                        priority="high", custom_fields={"tier": "gold"}, created_at=T0, updated_at=T0),
            TicketModel(id="T-2", tenant_id=TENANT, status="closed", priority="high",
                        created_at=T0, updated_at=T0),
            TicketModel(id="T-3", tenant_id=OTHER_TENANT, status="open", priority="high",
                        created_at=T0, updated_at=T0),
        ])
        await session.flush()
        session.add_all([
            TicketStatusChangeModel(tenant_id=TENANT, ticket_id="T-1", status="open", entered_at=at(30)),
            TicketStatusChangeModel(tenant_id=TENANT, ticket_id="T-1", status="in_progress", entered_at=at(10)),
        ])
        await session.commit()


@pytest.mark.asyncio
async def test_open_tickets_require_an_active_rule(session_factory) -> None:
    await _insert_tickets(session_factory)
    store = SQLAlchemyTicketStore(session_factory)

    assert await store.get_open_tickets_with_active_sla(TENANT) == []

    await seed_sla(session_factory, resolution=240)
    tickets = await store.get_open_tickets_with_active_sla(TENANT)

    assert [t.id for t in tickets] == ["T-1"]
    ticket = tickets[0]
    assert ticket.created_at == T0
    assert ticket.initial_status == "new"
    assert ticket.field_value("tier") == "gold"
    assert ticket.field_value("priority") == "high"


@pytest.mark.asyncio
async def test_status_history_is_ordered_by_time(session_factory) -> None:
    await _insert_tickets(session_factory)
    store = SQLAlchemyTicketStore(session_factory)

    history = await store.get_status_history(TENANT, "T-1")

    assert [(c.status, c.entered_at) for c in history] == [("in_progress", at(10)), ("open", at(30))]
    assert await store.get_status_history(OTHER_TENANT, "T-1") == []


@pytest.mark.asyncio
async def test_get_ticket_is_tenant_scoped(session_factory) -> None:
    await _insert_tickets(session_factory)
    store = SQLAlchemyTicketStore(session_factory)

    assert (await store.get_ticket(TENANT, "T-2")).status == "closed"
    assert await store.get_ticket(TENANT, "T-3") is None
