import os
from datetime import timedelta

import pytest

os.environ.setdefault("API_BEARER_TOKEN", "test-token")
os.environ.setdefault("ADMIN_PASSWORD", "test-admin")

from integration_outbox import db
from integration_outbox.db_models import Base, utc_now


class FakeClock:
    """Wall clock and monotonic clock that only move when something sleeps."""

    def __init__(self):
        self.current = utc_now()
        self.mono = 0.0
        self.sleeps = []

    def now(self):
        return self.current

    def monotonic(self):
        return self.mono

    def advance(self, seconds):
        self.mono += seconds
        self.current += timedelta(seconds=seconds)

    async def sleep(self, seconds):
        self.sleeps.append(seconds)
        self.advance(seconds)


@pytest.fixture()
def database(tmp_path, monkeypatch):
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path / 'outbox.db'}")
    db.reset_engine()
    engine = db.get_engine()
    Base.metadata.create_all(engine)
    yield engine
    db.reset_engine()


@pytest.fixture()
def clock():
    return FakeClock()
