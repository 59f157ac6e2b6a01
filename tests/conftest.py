from unittest.mock import AsyncMock, MagicMock

import databases
import pytest
import pytest_asyncio

from docjobs.database import create_tables
from docjobs.services.event_channel import RedisEventChannel
from docjobs.services.job_store import JobStore


@pytest.fixture
def database_url(tmp_path):
    return f"sqlite:///{tmp_path / 'docjobs-test.db'}"


@pytest_asyncio.fixture
async def database(database_url):
    await create_tables(database_url)
    db = databases.Database(database_url)
    await db.connect()
    yield db
    await db.disconnect()


@pytest_asyncio.fixture
async def job_store(database):
    return JobStore(database)


@pytest.fixture
def event_channel():
    """Event channel with Redis mocked out; inspect `publish.call_args_list`."""
    channel = MagicMock(spec=RedisEventChannel)
    channel.publish = AsyncMock()
    return channel
