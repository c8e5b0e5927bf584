"""
In-process ledger and identity stores.

Used when no DATABASE_URL is configured (local development) and by the test
suite. Same contract as the PostgreSQL stores:

  - a per-account lock stands in for SELECT ... FOR UPDATE
  - the (account_id, type, reference) key index stands in for
    uq_transactions_idempotency

State lives only as long as the process.
"""

import itertools
import threading
from dataclasses import replace
from typing import Optional, Dict, Any, List, Tuple

from credit_ledger.db import now_utc
from credit_ledger.errors import InsufficientBalance
from credit_ledger.models import (
    Account,
    AccountStatus,
    GenerationTask,
    LedgerResult,
    TaskStatus,
    Transaction,
    TransactionType,
)
from credit_ledger.services.ledger_store import plan_grant_collapse, reversal_metadata
from credit_ledger.services.identity_store import HINT_METADATA_KEY


def _copy_tx(tx: Transaction) -> Transaction:
    return replace(tx, metadata=dict(tx.metadata))


class MemoryLedgerStore:

    def __init__(self):
        self._lock = threading.Lock()
        self._account_locks: Dict[str, threading.Lock] = {}
        self._accounts: Dict[str, Account] = {}
        self._transactions: Dict[str, List[Transaction]] = {}
        self._keys: Dict[Tuple[str, str, str], Transaction] = {}
        self._ids = itertools.count(1)
        self._tasks: Dict[str, GenerationTask] = {}
        self._runs: List[Dict[str, Any]] = []

    def _account_lock(self, account_id: str) -> threading.Lock:
        with self._lock:
            return self._account_locks.setdefault(account_id, threading.Lock())

    def _new_transaction(self, account_id, amount, balance_after, type, reference,
                         metadata=None, billing_cycle_id=None, affects_balance=True) -> Transaction:
        tx = Transaction(
            id=next(self._ids),
            account_id=account_id,
            amount=amount,
            balance_after=balance_after,
            type=type,
            reference=reference,
            metadata=dict(metadata or {}),
            billing_cycle_id=billing_cycle_id,
            affects_balance=affects_balance,
            created_at=now_utc(),
        )
        self._keys[(account_id, type, reference)] = tx
        self._transactions.setdefault(account_id, []).append(tx)
        return tx

    # ─────────────────────────────────────────────────────────────
    # Read Operations
    # ─────────────────────────────────────────────────────────────

    def get_account(self, account_id: str) -> Optional[Account]:
        with self._account_lock(account_id):
            account = self._accounts.get(account_id)
            return replace(account) if account else None

    def ensure_account(self, account_id: str) -> Account:
        with self._lock:
            account = self._accounts.get(account_id)
            if account is None:
                now = now_utc()
                account = Account(account_id=account_id, created_at=now, updated_at=now)
                self._accounts[account_id] = account
            return replace(account)

    def list_accounts(self, limit: int = 1000, offset: int = 0) -> List[Account]:
        # Copied one account at a time, each under its own lock.
        accounts = []
        for account_id in self.list_account_ids(limit=limit, offset=offset):
            account = self.get_account(account_id)
            if account is not None:
                accounts.append(account)
        return accounts

    def list_account_ids(self, limit: int = 1000, offset: int = 0) -> List[str]:
        with self._lock:
            return sorted(self._accounts)[offset:offset + limit]

    def find_transaction(self, account_id: str, type: str, reference: str) -> Optional[Transaction]:
        with self._account_lock(account_id):
            tx = self._keys.get((account_id, type, reference))
            return _copy_tx(tx) if tx else None

    def list_transactions(self, account_id: str, limit: int = 50, offset: int = 0) -> List[Transaction]:
        """Transactions for an account, most recent first."""
        with self._account_lock(account_id):
            ledger = sorted(self._transactions.get(account_id, []), key=lambda tx: tx.id, reverse=True)
            return [_copy_tx(tx) for tx in ledger[offset:offset + limit]]

    def get_last_transaction_id(self, account_id: str):
        with self._account_lock(account_id):
            ledger = self._transactions.get(account_id)
            return max(tx.id for tx in ledger) if ledger else None

    def get_ledger_sum(self, account_id: str) -> int:
        with self._account_lock(account_id):
            return sum(tx.amount for tx in self._transactions.get(account_id, []) if tx.affects_balance)

    # ─────────────────────────────────────────────────────────────
    # Atomic Primitives
    # ─────────────────────────────────────────────────────────────

    def add_points(
        self,
        account_id: str,
        amount: int,
        type: str,
        reference: str,
        metadata: Optional[Dict[str, Any]] = None,
        billing_cycle_id: Optional[str] = None,
    ) -> LedgerResult:
        if amount <= 0:
            raise ValueError(f"Amount must be positive, got {amount}")
        if type not in TransactionType.GRANTS:
            raise ValueError(f"Not a grant transaction type: {type}")
        return self._apply_delta(account_id, amount, type, reference, metadata, billing_cycle_id)

    def deduct_points(
        self,
        account_id: str,
        cost: int,
        type: str,
        reference: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> LedgerResult:
        if cost <= 0:
            raise ValueError(f"Cost must be positive, got {cost}")
        if type not in TransactionType.DEDUCTIONS:
            raise ValueError(f"Not a deduction transaction type: {type}")
        return self._apply_delta(account_id, -cost, type, reference, metadata, None)

    def _apply_delta(self, account_id, delta, type, reference, metadata, billing_cycle_id) -> LedgerResult:
        self.ensure_account(account_id)
        with self._account_lock(account_id):
            account = self._accounts[account_id]

            existing = self._keys.get((account_id, type, reference))
            if existing:
                return LedgerResult(transaction=_copy_tx(existing), balance=account.balance, already_applied=True)

            if delta < 0 and account.balance < -delta:
                raise InsufficientBalance(account_id, account.balance, -delta)

            old_balance = account.balance
            account.balance += delta
            if delta > 0:
                account.lifetime_earned += delta
            else:
                account.lifetime_spent += -delta
            account.updated_at = now_utc()

            tx = self._new_transaction(
                account_id, delta, account.balance, type, reference, metadata, billing_cycle_id
            )
            print(
                f"[LEDGER] Transaction: account={account_id}, type={type}, reference={reference}, "
                f"delta={delta:+d}, balance: {old_balance} -> {account.balance}"
            )
            return LedgerResult(transaction=_copy_tx(tx), balance=account.balance)

    # ─────────────────────────────────────────────────────────────
    # Account Attributes
    # ─────────────────────────────────────────────────────────────

    def set_account_tier(self, account_id: str, tier: str, status: str) -> Account:
        self.ensure_account(account_id)
        with self._account_lock(account_id):
            account = self._accounts[account_id]
            account.tier = tier
            account.status = status
            account.updated_at = now_utc()
            return replace(account)

    def seed_account(
        self,
        account_id: str,
        balance: int = 0,
        lifetime_earned: int = 0,
        lifetime_spent: int = 0,
        tier: str = "free",
        status: str = AccountStatus.ACTIVE,
    ) -> Account:
        """Write account totals directly, as legacy data would have them. No ledger rows."""
        self.ensure_account(account_id)
        with self._account_lock(account_id):
            account = self._accounts[account_id]
            account.balance = balance
            account.lifetime_earned = lifetime_earned
            account.lifetime_spent = lifetime_spent
            account.tier = tier
            account.status = status
            return replace(account)

    # ─────────────────────────────────────────────────────────────
    # Reconciliation Support
    # ─────────────────────────────────────────────────────────────

    def record_audit_transaction(
        self,
        account_id: str,
        amount: int,
        type: str,
        reference: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Optional[Transaction]:
        self.ensure_account(account_id)
        with self._account_lock(account_id):
            if (account_id, type, reference) in self._keys:
                return None
            balance = self._accounts[account_id].balance
            tx = self._new_transaction(
                account_id, amount, balance, type, reference, metadata, affects_balance=False
            )
            return _copy_tx(tx)

    def find_duplicate_grants(self, account_id: Optional[str] = None, limit: int = 1000) -> List[Dict[str, Any]]:
        account_ids = [account_id] if account_id else self.list_account_ids(limit=len(self._accounts))
        result = []
        for acct in account_ids:
            with self._account_lock(acct):
                cycles: Dict[str, List[Transaction]] = {}
                for tx in self._transactions.get(acct, []):
                    if (tx.type == TransactionType.SUBSCRIPTION_GRANT
                            and tx.affects_balance and tx.billing_cycle_id):
                        cycles.setdefault(tx.billing_cycle_id, []).append(tx)
            for cycle_id in sorted(cycles):
                grants = cycles[cycle_id]
                if len(grants) > 1:
                    grants.sort(key=lambda tx: (tx.created_at, tx.id))
                    result.append({
                        "account_id": acct,
                        "billing_cycle_id": cycle_id,
                        "transactions": [_copy_tx(tx) for tx in grants],
                    })
        return result[:limit]

    def collapse_duplicate_grants(
        self,
        account_id: str,
        billing_cycle_id: str,
        keep_transaction_id,
        reason: str = "duplicate_subscription_grant",
    ) -> Dict[str, Any]:
        if account_id not in self._accounts:
            raise ValueError(f"Account not found: {account_id}")
        with self._account_lock(account_id):
            account = self._accounts[account_id]
            ledger = sorted(
                (tx for tx in self._transactions.get(account_id, []) if tx.affects_balance),
                key=lambda tx: (tx.created_at, tx.id),
            )
            grants = [
                tx for tx in ledger
                if tx.type == TransactionType.SUBSCRIPTION_GRANT and tx.billing_cycle_id == billing_cycle_id
            ]
            plan = plan_grant_collapse(replace(account), ledger, grants, keep_transaction_id)
            if not plan["repaired"]:
                return plan

            removed_ids = set(plan["removed_transaction_ids"])
            removed = [tx for tx in grants if tx.id in removed_ids]
            # Kept in the key index so redelivered references stay applied.
            for tx in removed:
                tx.affects_balance = False
                tx.metadata.update({"reversed": True, "reversal_reason": reason})

            account.balance = plan["new_balance"]
            account.lifetime_earned = plan["new_lifetime_earned"]
            account.lifetime_spent = plan["new_lifetime_spent"]
            account.updated_at = now_utc()

            for tx in removed:
                reference = f"reversal:{tx.id}"
                if (account_id, TransactionType.ADMIN_ADJUSTMENT, reference) in self._keys:
                    continue
                self._new_transaction(
                    account_id,
                    -tx.amount,
                    account.balance,
                    TransactionType.ADMIN_ADJUSTMENT,
                    reference,
                    reversal_metadata(tx, keep_transaction_id, reason),
                    billing_cycle_id=billing_cycle_id,
                    affects_balance=False,
                )

        print(
            f"[LEDGER] Collapsed duplicate grants: account={account_id}, cycle={billing_cycle_id}, "
            f"removed={len(removed)}, balance: {plan['old_balance']} -> {plan['new_balance']}"
        )
        return plan

    # ─────────────────────────────────────────────────────────────
    # Generation Tasks
    # ─────────────────────────────────────────────────────────────

    def record_generation_task(self, task: GenerationTask) -> bool:
        with self._lock:
            if task.task_reference in self._tasks:
                return False
            self._tasks[task.task_reference] = replace(task, created_at=task.created_at or now_utc())
            return True

    def get_generation_task(self, task_reference: str) -> Optional[GenerationTask]:
        with self._lock:
            task = self._tasks.get(task_reference)
            return replace(task) if task else None

    def update_generation_task_status(self, task_reference: str, status: str) -> bool:
        if status not in TaskStatus.ALL:
            raise ValueError(f"Unknown task status: {status}")
        with self._lock:
            task = self._tasks.get(task_reference)
            if task is None:
                return False
            task.status = status
            task.completed_at = None if status == TaskStatus.PENDING else now_utc()
            return True

    def list_unbilled_generation_tasks(
        self, limit: int = 100, account_id: Optional[str] = None
    ) -> List[GenerationTask]:
        with self._lock:
            tasks = sorted(self._tasks.values(), key=lambda t: t.created_at)
        unbilled = [
            replace(task) for task in tasks
            if task.status == TaskStatus.SUCCEEDED
            and task.account_id
            and (account_id is None or task.account_id == account_id)
            and (task.account_id, TransactionType.GENERATION_DEDUCTION, task.task_reference) not in self._keys
        ]
        return unbilled[:limit]

    # ─────────────────────────────────────────────────────────────
    # Reconciliation Runs
    # ─────────────────────────────────────────────────────────────

    def record_reconciliation_run(self, run: Dict[str, Any]):
        with self._lock:
            run_id = len(self._runs) + 1
            self._runs.append(dict(run, id=run_id))
            return run_id

    def list_reconciliation_runs(self) -> List[Dict[str, Any]]:
        with self._lock:
            return [dict(run) for run in self._runs]


class MemoryIdentityStore:

    def __init__(self):
        self._lock = threading.Lock()
        self._identities: Dict[str, Dict[str, Any]] = {}
        self._mappings: Dict[str, str] = {}
        self._subscriptions: Dict[str, List[Dict[str, Any]]] = {}
        self._discrepancies: Dict[Tuple[str, str, str], Dict[str, Any]] = {}

    def get_mapping(self, primary_id: str) -> Optional[str]:
        return self._mappings.get(primary_id)

    def create_mapping(self, primary_id: str, secondary_id: str) -> Tuple[str, bool]:
        with self._lock:
            existing = self._mappings.get(primary_id)
            if existing is not None:
                return existing, False
            self._mappings[primary_id] = secondary_id
            return secondary_id, True

    def get_subscription_hint(self, presented_id: str) -> Optional[str]:
        subscriptions = self._subscriptions.get(presented_id)
        if not subscriptions:
            return None
        latest = subscriptions[-1]
        hint = (latest.get("metadata") or {}).get(HINT_METADATA_KEY)
        return str(hint) if hint else None

    def record_identity_discrepancy(self, presented_id: str, mapped_id: str, hinted_id: str) -> bool:
        key = (presented_id, mapped_id, hinted_id)
        with self._lock:
            if key in self._discrepancies:
                return False
            self._discrepancies[key] = {
                "presented_id": presented_id,
                "mapped_id": mapped_id,
                "hinted_id": hinted_id,
                "detected_at": now_utc(),
            }
            return True

    def list_identity_discrepancies(self, limit: int = 1000) -> List[Dict[str, Any]]:
        with self._lock:
            rows = sorted(self._discrepancies.values(), key=lambda d: d["detected_at"])
            return [dict(row) for row in rows[:limit]]

    def list_unmapped_identities(self, limit: int = 1000) -> List[Dict[str, Any]]:
        with self._lock:
            rows = [
                dict(identity) for primary_id, identity in self._identities.items()
                if primary_id not in self._mappings
            ]
        rows.sort(key=lambda i: i["created_at"])
        return rows[:limit]

    # Writers for data owned by other systems (identity provider, billing).

    def add_identity(self, primary_id: str, email: Optional[str] = None) -> None:
        with self._lock:
            self._identities.setdefault(primary_id, {
                "primary_id": primary_id,
                "email": email,
                "created_at": now_utc(),
            })

    def put_subscription(
        self,
        user_id: str,
        tier: str = "free",
        status: str = "active",
        resolved_account_id: Optional[str] = None,
    ) -> None:
        metadata = {HINT_METADATA_KEY: resolved_account_id} if resolved_account_id else {}
        with self._lock:
            self._subscriptions.setdefault(user_id, []).append({
                "user_id": user_id,
                "tier": tier,
                "status": status,
                "metadata": metadata,
                "updated_at": now_utc(),
            })
