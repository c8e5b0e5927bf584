"""Services package for the points ledger."""

import threading

from credit_ledger.db import USE_DB

_store_lock = threading.Lock()
_ledger_store = None
_identity_store = None


def get_ledger_store():
    """PostgreSQL ledger when DATABASE_URL is configured, else the process-wide memory ledger."""
    global _ledger_store
    with _store_lock:
        if _ledger_store is None:
            if USE_DB:
                from credit_ledger.services.ledger_store import PostgresLedgerStore
                _ledger_store = PostgresLedgerStore()
            else:
                from credit_ledger.services.memory_store import MemoryLedgerStore
                _ledger_store = MemoryLedgerStore()
            print(f"[LEDGER] Using {type(_ledger_store).__name__}")
        return _ledger_store


def get_identity_store():
    global _identity_store
    with _store_lock:
        if _identity_store is None:
            if USE_DB:
                from credit_ledger.services.identity_store import PostgresIdentityStore
                _identity_store = PostgresIdentityStore()
            else:
                from credit_ledger.services.memory_store import MemoryIdentityStore
                _identity_store = MemoryIdentityStore()
        return _identity_store


def reset_stores():
    """Drop the cached stores (tests)."""
    global _ledger_store, _identity_store
    with _store_lock:
        _ledger_store = None
        _identity_store = None


from credit_ledger.services.identity_service import IdentityResolver  # noqa: E402
from credit_ledger.services.points_service import PointsService  # noqa: E402
from credit_ledger.services.reconciliation_service import ReconciliationService  # noqa: E402

__all__ = [
    "get_ledger_store",
    "get_identity_store",
    "reset_stores",
    "IdentityResolver",
    "PointsService",
    "ReconciliationService",
]
