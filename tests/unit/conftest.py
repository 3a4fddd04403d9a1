"""
Unit Test Fixtures

Every store runs against a real SQLite file under tmp_path through the
same DatabaseAdapter used in production. Time is controlled with FakeClock.
"""

from datetime import datetime, timedelta, timezone

import pytest
import pytest_asyncio

from src.core.config import GatewaySettings
from src.core.database import DatabaseAdapter, DatabaseConfig, ensure_schema


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture
def clock():
    return FakeClock(datetime(2024, 3, 1, 8, 0, 0, tzinfo=timezone.utc))


@pytest.fixture
def settings():
    return GatewaySettings()


@pytest_asyncio.fixture
async def db(tmp_path, settings):
    """Connected adapter with every gateway table created."""
    adapter = DatabaseAdapter(DatabaseConfig(
        backend="sqlite",
        sqlite_path=str(tmp_path / "gateway_test.db"),
        command_timeout=5
    ))
    await adapter.connect()
    await ensure_schema(adapter, **settings.schema_tables())
    yield adapter
    await adapter.disconnect()


class BrokenDatabase:
    """Adapter stand-in whose every call fails like an unreachable store."""

    def __init__(self, error: Exception = None):
        self.error = error or ConnectionError("store unreachable")
        self.calls = 0

    async def _fail(self, *args, **kwargs):
        self.calls += 1
        raise self.error

    fetch = _fail
    fetchrow = _fail
    fetchval = _fail
    execute = _fail


@pytest.fixture
def broken_db():
    return BrokenDatabase()


HL7_SAMPLE = (
    "MSH|^~\\&|LABSYS|LAB|GATEWAY|HOSP|20240301080000||ORU^R01|MSG0001|P|2.5\r"
    "PID|1||123456^^^HOSP^MR||DOE^JANE\r"
    "OBX|1|NM|GLU^Glucose||5.4|mmol/L|3.9-5.8|N|||F"
)


@pytest.fixture
def hl7_message():
    return HL7_SAMPLE
