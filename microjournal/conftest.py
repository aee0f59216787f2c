# microjournal/conftest.py
import os
from datetime import datetime, timezone

import pytest
from sqlalchemy import insert

os.environ.setdefault("SKIP_ENV_VALIDATION", "1")


@pytest.fixture(autouse=True)
def reset_metrics():
    """Counters are process-wide; start every test from zero."""
    from microjournal.core.metrics import METRICS

    METRICS.reset()
    yield
    METRICS.reset()


@pytest.fixture
def db(tmp_path):
    """
    Fresh SQLite database per test.

    A file (not :memory:) so that concurrent writers in the streak tests go
    through real SQLite locking.
    """
    from microjournal.core.database import create_all_tables, dispose_engine, init_engine

    init_engine(f"sqlite:///{tmp_path / 'journal.db'}")
    create_all_tables()
    yield
    dispose_engine()


@pytest.fixture
def make_user(db):
    """Insert a user row; returns its id."""
    from microjournal.core.database import get_db_session, users

    def _make(user_id, tz="America/New_York", display_name=None):
        with get_db_session() as session:
            session.execute(
                insert(users).values(
                    id=user_id,
                    username=f"user{user_id}",
                    display_name=display_name,
                    timezone=tz,
                    created_at=datetime.now(timezone.utc),
                )
            )
        return user_id

    return _make


class FrozenClock:
    """Callable clock tests can move forward."""

    def __init__(self, instant):
        self.instant = instant

    def __call__(self):
        return self.instant

    def set(self, instant):
        self.instant = instant


@pytest.fixture
def clock():
    return FrozenClock(datetime(2024, 1, 10, 17, 0, tzinfo=timezone.utc))
