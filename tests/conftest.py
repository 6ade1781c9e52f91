import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import create_async_engine

from sla_engine.infrastructure.database import build_session_factory, create_tables

from support import InMemoryTicketStore, RecordingNotifier


@pytest_asyncio.fixture
async def engine(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'sla.db'}")
    await create_tables(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return build_session_factory(engine)


@pytest.fixture
def ticket_store():
    return InMemoryTicketStore()


@pytest.fixture
def notifier():
    return RecordingNotifier()
