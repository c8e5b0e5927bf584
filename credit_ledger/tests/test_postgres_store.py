"""
Tests for the PostgreSQL stores.

These need a database: they skip unless DATABASE_URL is set and
LEDGER_BACKEND is not "memory". Every test works on fresh uuid-based ids so
runs don't interfere with each other or with real data. The lost-race
tests stub the storage calls and run everywhere.

Run locally:
    DATABASE_URL=postgresql://... python -m pytest credit_ledger/tests/test_postgres_store.py -v
"""

from __future__ import annotations

import threading
import uuid

import pytest

from credit_ledger.db import USE_DB, ensure_schema
from credit_ledger.errors import DuplicateOperation, InsufficientBalance
from credit_ledger.models import Account, GenerationTask, TaskStatus, Transaction, TransactionType


def _id(prefix: str) -> str:
    return f"test-{prefix}-{uuid.uuid4().hex[:8]}"


@pytest.fixture(scope="module")
def pg_ledger():
    if not USE_DB:
        pytest.skip("Database not available")
    from credit_ledger.services.ledger_store import PostgresLedgerStore

    ensure_schema()
    return PostgresLedgerStore()


@pytest.fixture(scope="module")
def pg_identity():
    if not USE_DB:
        pytest.skip("Database not available")
    from credit_ledger.services.identity_store import PostgresIdentityStore

    return PostgresIdentityStore()


class TestPostgresLedger:

    def test_redelivery_applies_once(self, pg_ledger):
        account = _id("acct")

        first = pg_ledger.add_points(account, 800, TransactionType.SUBSCRIPTION_GRANT, "evt-123")
        second = pg_ledger.add_points(account, 800, TransactionType.SUBSCRIPTION_GRANT, "evt-123")

        assert first.already_applied is False
        assert second.already_applied is True
        assert second.transaction.id == first.transaction.id
        assert pg_ledger.get_account(account).balance == 800

    def test_deduct_refused_below_cost(self, pg_ledger):
        account = _id("acct")
        pg_ledger.add_points(account, 3, TransactionType.PURCHASE, "pay-1")

        with pytest.raises(InsufficientBalance) as exc_info:
            pg_ledger.deduct_points(account, 5, TransactionType.GENERATION_DEDUCTION, "gen-1")

        assert exc_info.value.shortfall == 2
        assert pg_ledger.get_account(account).balance == 3
        assert pg_ledger.find_transaction(account, TransactionType.GENERATION_DEDUCTION, "gen-1") is None

    def test_concurrent_deductions_never_overdraw(self, pg_ledger):
        account = _id("acct")
        pg_ledger.add_points(account, 12, TransactionType.PURCHASE, "pay-1")
        outcomes = []

        def charge(n):
            try:
                pg_ledger.deduct_points(account, 5, TransactionType.GENERATION_DEDUCTION, f"gen-{n}")
                outcomes.append("ok")
            except InsufficientBalance:
                outcomes.append("refused")

        threads = [threading.Thread(target=charge, args=(n,)) for n in range(3)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert sorted(outcomes) == ["ok", "ok", "refused"]
        account_row = pg_ledger.get_account(account)
        assert account_row.balance == 2
        assert account_row.balance == account_row.lifetime_earned - account_row.lifetime_spent
        assert pg_ledger.get_ledger_sum(account) == 2

    def test_collapse_duplicate_grants(self, pg_ledger):
        account = _id("acct")
        cycle = f"{account}:2026-09"
        for n in range(3):
            pg_ledger.add_points(
                account, 800, TransactionType.SUBSCRIPTION_GRANT, f"evt-{n}",
                metadata={"tier": "pro"}, billing_cycle_id=cycle,
            )
        pg_ledger.deduct_points(account, 5, TransactionType.GENERATION_DEDUCTION, "gen-1")

        groups = pg_ledger.find_duplicate_grants(account_id=account)
        keep = groups[0]["transactions"][0]
        plan = pg_ledger.collapse_duplicate_grants(account, cycle, keep.id)

        assert plan["repaired"] is True
        assert pg_ledger.get_account(account).balance == 795
        assert pg_ledger.find_duplicate_grants(account_id=account) == []
        assert pg_ledger.get_ledger_sum(account) == 795

        redelivered = pg_ledger.add_points(
            account, 800, TransactionType.SUBSCRIPTION_GRANT, "evt-1",
            metadata={"tier": "pro"}, billing_cycle_id=cycle,
        )
        assert redelivered.already_applied is True
        assert redelivered.transaction.affects_balance is False
        assert pg_ledger.get_account(account).balance == 795

    def test_audit_transaction_leaves_balance(self, pg_ledger):
        account = _id("acct")
        pg_ledger.add_points(account, 100, TransactionType.PURCHASE, "pay-1")

        tx = pg_ledger.record_audit_transaction(
            account, -20, TransactionType.GENERATION_DEDUCTION, "task-1", metadata={"retroactive": True},
        )
        again = pg_ledger.record_audit_transaction(
            account, -20, TransactionType.GENERATION_DEDUCTION, "task-1", metadata={"retroactive": True},
        )

        assert tx.affects_balance is False
        assert again is None
        assert pg_ledger.get_account(account).balance == 100

    def test_generation_task_lifecycle(self, pg_ledger):
        account = _id("acct")
        ref = _id("task")

        assert pg_ledger.record_generation_task(GenerationTask(
            task_reference=ref, generation_type="sora2Video", account_id=account,
        )) is True
        pg_ledger.update_generation_task_status(ref, TaskStatus.SUCCEEDED)

        unbilled = [t.task_reference for t in pg_ledger.list_unbilled_generation_tasks(limit=1000)]
        assert ref in unbilled
        scoped = pg_ledger.list_unbilled_generation_tasks(limit=1, account_id=account)
        assert [t.task_reference for t in scoped] == [ref]
        assert pg_ledger.get_generation_task(ref).status == TaskStatus.SUCCEEDED


class TestPostgresIdentity:

    def test_mapping_is_never_rewritten(self, pg_identity):
        primary = _id("legacy")

        assert pg_identity.create_mapping(primary, "canonical-1") == ("canonical-1", True)
        assert pg_identity.create_mapping(primary, "canonical-2") == ("canonical-1", False)
        assert pg_identity.get_mapping(primary) == "canonical-1"

    def test_discrepancy_recorded_once(self, pg_identity):
        presented = _id("legacy")

        assert pg_identity.record_identity_discrepancy(presented, "a", "b") is True
        assert pg_identity.record_identity_discrepancy(presented, "a", "b") is False


class TestLostIdempotencyRace:
    """The insert lost to a concurrent writer on the same key. Runs without a database."""

    @pytest.fixture
    def raced_store(self, monkeypatch):
        from credit_ledger.services.ledger_store import PostgresLedgerStore

        store = PostgresLedgerStore()
        winner = Transaction(
            id=42, account_id="acct-1", amount=800, balance_after=800,
            type=TransactionType.SUBSCRIPTION_GRANT, reference="evt-123",
        )

        def lose_race(account_id, delta, type, reference, metadata, billing_cycle_id):
            raise DuplicateOperation(account_id=account_id, type=type, reference=reference)

        monkeypatch.setattr(store, "ensure_account", lambda account_id: Account(account_id=account_id))
        monkeypatch.setattr(store, "_apply_delta", lose_race)
        monkeypatch.setattr(store, "find_transaction", lambda account_id, type, reference: winner)
        monkeypatch.setattr(
            store, "get_account", lambda account_id: Account(account_id=account_id, balance=800, lifetime_earned=800)
        )
        return store

    def test_returns_winner_as_already_applied(self, raced_store):
        result = raced_store.add_points("acct-1", 800, TransactionType.SUBSCRIPTION_GRANT, "evt-123")

        assert result.already_applied is True
        assert result.transaction.id == 42
        assert result.balance == 800

    def test_log_names_winning_transaction(self, raced_store, capsys):
        raced_store.add_points("acct-1", 800, TransactionType.SUBSCRIPTION_GRANT, "evt-123")

        out = capsys.readouterr().out
        assert "Duplicate operation short-circuited" in out
        assert "transaction=42" in out
        assert "transaction=None" not in out
