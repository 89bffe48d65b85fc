import os
import sys
from datetime import datetime, timedelta, timezone

import pytest

sys.path.append(os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

from reportgate import access_store, db, report_store
from reportgate.access_service import AccessControlService
from reportgate.errors import StoreUnavailable

OWNER_EMAIL = 'owner@inspections.example'


class UnavailableStore:
    """Stands in for a store whose database is down."""

    def __init__(self):
        self.calls = []

    def _fail(self, name, *args, **kwargs):
        self.calls.append(name)
        raise StoreUnavailable('connection refused')

    def load(self, report_key):
        return self._fail('load', report_key)

    def save(self, report_key, policy):
        return self._fail('save', report_key, policy)

    def increment_access(self, report_key, **kwargs):
        return self._fail('increment_access', report_key, **kwargs)

    def remove(self, report_key):
        return self._fail('remove', report_key)


class FrozenClock:
    def __init__(self, start):
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now = self.now + timedelta(**kwargs)


@pytest.fixture(autouse=True)
def database(tmp_path, monkeypatch):
    monkeypatch.setattr(db, 'DB_PATH', tmp_path / 'reportgate.db')
    report_store.init_db()
    access_store.init_db()
    yield db.DB_PATH


@pytest.fixture
def report():
    return report_store.create_report(
        title='Roof inspection - Nordvej 12',
        building_address='Nordvej 12, 8000 Aarhus',
        owner_email=OWNER_EMAIL,
    )


@pytest.fixture
def store():
    return access_store.AccessControlStore()


@pytest.fixture
def clock():
    return FrozenClock(datetime(2026, 6, 1, 12, 0, tzinfo=timezone.utc))


@pytest.fixture
def service(store, clock):
    return AccessControlService(store, clock=clock)
