import os
import tempfile
from pathlib import Path

import pytest

_TMP = Path(tempfile.mkdtemp(prefix="pos-core-tests-"))

os.environ.setdefault("ENV_MODE", "development")
os.environ.setdefault("DATABASE_URL", f"sqlite+aiosqlite:///{_TMP / 'app.db'}")
os.environ.setdefault("DATA_DIRECTORY", str(_TMP / "data"))
os.environ.setdefault("BLOCK_MIRROR_PATH", str(_TMP / "data" / "blocked_tables.json"))
os.environ.setdefault("CELERY_TASK_ALWAYS_EAGER", "true")
# Nothing listens here; the health probe reports redis as unhealthy quickly.
os.environ.setdefault("REDIS_URL", "redis://127.0.0.1:6390/0")

from app.database import build_engine, build_session_maker, init_db  # noqa: E402
from app.services.activity import ActivityLogger  # noqa: E402
from app.services.auth import CashierAuthService  # noqa: E402
from app.services.events import InMemoryEventBus, Topic  # noqa: E402
from app.services.orders import OrderService  # noqa: E402
from app.services.shifts import ShiftLedger  # noqa: E402
from app.services.tables import TableBlockRegistry, TableService  # noqa: E402


@pytest.fixture()
async def engine(tmp_path):
    """Fresh SQLite database per test."""
    eng = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'pos.db'}")
    await init_db(bind=eng)
    yield eng
    await eng.dispose()


@pytest.fixture()
def session_maker(engine):
    return build_session_maker(engine)


@pytest.fixture()
async def db(session_maker):
    async with session_maker() as session:
        yield session


@pytest.fixture()
async def bus():
    event_bus = InMemoryEventBus(queue_size=64)
    await event_bus.start()
    yield event_bus
    await event_bus.shutdown()


@pytest.fixture()
def listener(bus):
    """A connection subscribed to every topic."""
    subscriber = bus.connect()
    for topic in Topic:
        bus.subscribe(subscriber, topic)
    return subscriber


@pytest.fixture()
def blocks(bus):
    return TableBlockRegistry(bus)


@pytest.fixture()
def activity(session_maker):
    return ActivityLogger(session_maker)


@pytest.fixture()
def orders(db, bus, blocks, activity):
    return OrderService(db, bus, blocks, activity)


@pytest.fixture()
def tables(db, bus, blocks, activity):
    return TableService(db, bus, blocks, activity)


@pytest.fixture()
def ledger(db, activity, monkeypatch):
    exported = []
    monkeypatch.setattr("app.services.shifts.ledger.queue_shift_export", exported.append)
    service = ShiftLedger(db, activity)
    service.exported = exported
    return service


@pytest.fixture()
def auth(db, activity):
    return CashierAuthService(db, activity)
