"""
Shared fixtures for the points ledger tests.

Service, store and route tests run against the in-process stores so they
need no database. PostgreSQL tests live in test_postgres_store.py and skip
unless DATABASE_URL is configured.
"""

import pytest

from credit_ledger.config import config
from credit_ledger.services.memory_store import MemoryLedgerStore, MemoryIdentityStore
from credit_ledger.services.identity_service import IdentityResolver
from credit_ledger.services.points_service import PointsService
from credit_ledger.services.reconciliation_service import ReconciliationService


ADMIN_TOKEN = "test-admin-token"


@pytest.fixture(autouse=True)
def _ledger_config(monkeypatch):
    """Pin the settings the tests depend on, whatever the local .env says."""
    monkeypatch.setattr(config, "SIGNUP_BONUS_POINTS", 30)
    monkeypatch.setattr(config, "RECONCILE_INTEGRITY_EPSILON", 1)
    monkeypatch.setattr(config, "ALERT_WEBHOOK_URL", "")
    monkeypatch.setattr(config, "ALERT_ON_DRY_RUN", False)
    monkeypatch.setattr(config, "ADMIN_TOKEN", ADMIN_TOKEN)


@pytest.fixture
def ledger():
    return MemoryLedgerStore()


@pytest.fixture
def identity_store():
    return MemoryIdentityStore()


@pytest.fixture
def resolver(identity_store):
    return IdentityResolver(identity_store)


@pytest.fixture
def points(ledger, resolver):
    return PointsService(ledger, resolver)


@pytest.fixture
def reconciliation(ledger, identity_store):
    return ReconciliationService(ledger, identity_store)


@pytest.fixture
def app(ledger, identity_store):
    from credit_ledger.app import create_app

    app = create_app(ledger_store=ledger, identity_store=identity_store)
    app.config["TESTING"] = True
    return app


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def admin_headers():
    return {"X-Admin-Token": ADMIN_TOKEN}
