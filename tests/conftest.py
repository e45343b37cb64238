import os
import sqlite3
from datetime import datetime, timezone
from contextlib import contextmanager
from typing import Callable, ContextManager, Generator, List, Tuple

import pytest
from fastapi.testclient import TestClient

os.environ.setdefault("DATABASE_URL", "sqlite:///./test_lounge.db")
os.environ.setdefault("RATE_LIMITING_ENABLED", "false")
os.environ.setdefault("NOTIFICATIONS_ENABLED", "false")

from lounge.config import reset_settings_cache  # noqa: E402

reset_settings_cache()

from lounge.cache import snapshot_cache  # noqa: E402
from lounge.catalog import MachineCatalog  # noqa: E402
from lounge.database import Base, SessionLocal, engine  # noqa: E402
from lounge.dependencies import get_notifier  # noqa: E402
from lounge.domain import MachineCategory, Reservation  # noqa: E402
from lounge.lifecycle import ReservationLifecycle  # noqa: E402
from lounge.store import SqlReservationStore  # noqa: E402
from lounge.validator import ConflictValidator  # noqa: E402
from services.machines.app import app as machines_app  # noqa: E402
from services.reservations.app import app as reservations_app  # noqa: E402


class RecordingNotifier:
    def __init__(self) -> None:
        self.events: List[Tuple[str, Reservation]] = []

    def publish(self, event: str, reservation: Reservation) -> None:
        self.events.append((event, reservation))

    @property
    def names(self) -> List[str]:
        return [name for name, _ in self.events]


def utc(*args: int) -> datetime:
    return datetime(*args, tzinfo=timezone.utc)


@pytest.fixture(autouse=True, scope="function")
def _create_test_database() -> Generator[None, None, None]:
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    snapshot_cache.clear()
    yield
    snapshot_cache.clear()
    Base.metadata.drop_all(bind=engine)


@pytest.fixture()
def db_session() -> Generator:
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture()
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture()
def store(db_session) -> SqlReservationStore:
    return SqlReservationStore(db_session)


@pytest.fixture()
def validator(store, notifier) -> ConflictValidator:
    return ConflictValidator(store, notifier=notifier)


@pytest.fixture()
def lifecycle(store, validator, notifier) -> ReservationLifecycle:
    return ReservationLifecycle(store, validator=validator, notifier=notifier)


@pytest.fixture()
def make_machines(db_session) -> Callable[..., List[int]]:
    catalog = MachineCatalog(db_session)
    counter = {"n": 0}

    def _make(count: int = 1, category: MachineCategory = MachineCategory.CONSOLE) -> List[int]:
        ids = []
        for _ in range(count):
            counter["n"] += 1
            ids.append(catalog.provision(category, f"SN-{counter['n']:04d}", "PS5").id)
        return ids

    return _make


@pytest.fixture()
def machines_client() -> Generator[TestClient, None, None]:
    with TestClient(machines_app) as client:
        yield client


@pytest.fixture()
def reservations_client(notifier) -> Generator[TestClient, None, None]:
    reservations_app.dependency_overrides[get_notifier] = lambda: notifier
    with TestClient(reservations_app) as client:
        yield client
    reservations_app.dependency_overrides.pop(get_notifier, None)



@pytest.fixture()
def exclusive_lock() -> Callable[[], ContextManager[None]]:
    """Hold SQLite's exclusive file lock from a foreign connection."""
    if engine.dialect.name != "sqlite":
        pytest.skip("exclusive file lock is SQLite specific")

    @contextmanager
    def _hold() -> Generator[None, None, None]:
        blocker = sqlite3.connect(engine.url.database, isolation_level=None)
        blocker.execute("BEGIN EXCLUSIVE")
        try:
            yield
        finally:
            blocker.execute("ROLLBACK")
            blocker.close()

    return _hold
