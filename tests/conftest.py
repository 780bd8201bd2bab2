"""Shared fixtures for the job alerts tests."""

from datetime import datetime, timedelta, timezone

import pytest

from jobalerts.domain.models import Alert
from jobalerts.logging.context import clear_log_context
from jobalerts.persistence import AlertRepository, close_database, get_session, init_database

from tests.helpers import FakeClock, FakeSearchIndex

NOW = datetime(2025, 1, 6, 8, 0, tzinfo=timezone.utc)


@pytest.fixture(autouse=True)
def _clean_log_context():
    clear_log_context()
    yield
    clear_log_context()


@pytest.fixture
def database():
    """Fresh in-memory database, closed after the test."""
    init_database("sqlite:///:memory:")
    yield
    close_database()


@pytest.fixture
def file_database(tmp_path):
    """SQLite file database, for tests that share it between threads or runtimes."""
    init_database(f"sqlite:///{tmp_path / 'queue.db'}")
    yield
    close_database()


@pytest.fixture
def clock():
    return FakeClock(NOW)


@pytest.fixture
def search_index():
    return FakeSearchIndex()


@pytest.fixture
def add_alert(database):
    """Factory persisting an alert and returning it with its id."""

    def _add_alert(**overrides) -> Alert:
        fields = {
            "owner_id": 1,
            "name": "Seattle JS",
            "search_query": "javascript developer",
            "city": "Seattle",
            "frequency": "daily",
            "last_sent_at": NOW - timedelta(hours=48),
        }
        fields.update(overrides)
        with get_session() as session:
            return AlertRepository(session).add(Alert(**fields), NOW - timedelta(days=30))

    return _add_alert
