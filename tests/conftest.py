# tests/conftest.py

import pytest
from sqlalchemy.orm import sessionmaker
from starlette.testclient import TestClient

from reservation_scheduler.api import deps
from reservation_scheduler.background_tasks.reservation_tasks import ReservationSweeper
from reservation_scheduler.core.clock import ManualClock
from reservation_scheduler.crud.crud_reservation_store import SQLReservationStore
from reservation_scheduler.crud.memory_store import InMemoryReservationStore
from reservation_scheduler.db.base_class import Base
from reservation_scheduler.db.init_db import init_db
from reservation_scheduler.db.session import build_engine
from reservation_scheduler.main import app
from reservation_scheduler.services.priority_queue import PriorityQueueEngine
from reservation_scheduler.services.reservation_lifecycle import (
    ReservationLifecycleManager,
)
from reservation_scheduler.utils.notifications import RecordingNotificationDispatcher
from tests.utils.reservation import START


# --- Store Setup ---
@pytest.fixture(scope="function")
def sql_session_factory():
    """A fresh in-memory SQLite database per test."""
    engine = build_engine("sqlite://")
    init_db(engine)
    yield sessionmaker(autocommit=False, autoflush=False, bind=engine)
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture(scope="function")
def sql_store(sql_session_factory):
    return SQLReservationStore(sql_session_factory)


@pytest.fixture(scope="function", params=["memory", "sql"])
def store(request):
    """Runs the test once against each store implementation."""
    if request.param == "memory":
        return InMemoryReservationStore()
    return request.getfixturevalue("sql_store")


@pytest.fixture(scope="function")
def file_sql_store(tmp_path):
    """
    SQLite on disk. Unlike the in-memory database every thread gets its own
    connection, so concurrent writers really contend for the database.
    """
    engine = build_engine(f"sqlite:///{tmp_path / 'reservations.db'}")
    init_db(engine)
    yield SQLReservationStore(
        sessionmaker(autocommit=False, autoflush=False, bind=engine)
    )
    engine.dispose()


@pytest.fixture(scope="function", params=["memory", "file_sql"])
def shared_store(request):
    """A store that several threads (or lifecycle managers) can share."""
    if request.param == "memory":
        return InMemoryReservationStore()
    return request.getfixturevalue("file_sql_store")


# --- Core Components ---
@pytest.fixture
def clock():
    return ManualClock(START)


@pytest.fixture
def dispatcher():
    return RecordingNotificationDispatcher()


@pytest.fixture
def queue(store, dispatcher, clock):
    return PriorityQueueEngine(
        store,
        dispatcher,
        clock,
        lookback_days=30,
        saturation_months=12,
        grace_hours=24,
    )


@pytest.fixture
def lifecycle(store, queue, dispatcher, clock):
    return ReservationLifecycleManager(
        store,
        queue,
        dispatcher,
        clock,
        max_extensions=2,
    )


@pytest.fixture
def sweeper(lifecycle):
    return ReservationSweeper(lifecycle, expiring_soon_hours=6, grace_policy="requeue")


# --- Test Client Fixtures ---
@pytest.fixture(scope="function")
def test_client(lifecycle, queue, sweeper):
    """
    A TestClient wired to the test components instead of the process-wide ones.
    The lifespan is not entered, so no background scheduler is started.
    """
    app.dependency_overrides[deps.get_lifecycle] = lambda: lifecycle
    app.dependency_overrides[deps.get_queue] = lambda: queue
    app.dependency_overrides[deps.get_sweeper] = lambda: sweeper

    yield TestClient(app)

    app.dependency_overrides.clear()
