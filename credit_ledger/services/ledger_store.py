"""
Ledger Store - durable account balances and the append-only transaction log.

═══════════════════════════════════════════════════════════════════════════════
SOURCE OF TRUTH
═══════════════════════════════════════════════════════════════════════════════

  BALANCES:     accounts.balance / lifetime_earned / lifetime_spent
                → mutated only inside the same storage transaction that
                  appends the matching transactions row

  IDEMPOTENCY:  uq_transactions_idempotency (account_id, type, reference)
                → one committed transaction per key, enforced by PostgreSQL

  INVARIANT:    accounts.balance == lifetime_earned - lifetime_spent

═══════════════════════════════════════════════════════════════════════════════

Atomicity is per account: every write locks the account row
(SELECT ... FOR UPDATE) before reading the balance, so concurrent deducts on
one account serialize and can never push the balance negative. No write ever
touches two accounts.
"""

from functools import wraps
from typing import Optional, Dict, Any, List

from psycopg.types.json import Jsonb

from credit_ledger.db import (
    transaction,
    fetch_one,
    fetch_all,
    fetch_scalar,
    query_one,
    query_all,
    Tables,
    DatabaseError,
)
from credit_ledger.errors import DuplicateOperation, InsufficientBalance, StorageError
from credit_ledger.models import (
    Account,
    GenerationTask,
    LedgerResult,
    TaskStatus,
    Transaction,
    TransactionType,
)


def _storage_errors(func):
    """Surface database failures as retryable StorageError."""
    @wraps(func)
    def wrapper(*args, **kwargs):
        try:
            return func(*args, **kwargs)
        except DatabaseError as e:
            print(f"[LEDGER] Storage failure in {func.__name__}: {e}")
            raise StorageError(f"{func.__name__} failed: {e}", original_error=e)
    return wrapper


_ACCOUNT_COLUMNS = (
    "account_id, balance, lifetime_earned, lifetime_spent, tier, status, created_at, updated_at"
)
_TRANSACTION_COLUMNS = (
    "id, account_id, amount, balance_after, type, reference, billing_cycle_id, "
    "affects_balance, metadata, created_at"
)


class PostgresLedgerStore:
    """
    PostgreSQL-backed ledger.

    CRITICAL: All balance mutations MUST go through add_points(),
    deduct_points() or collapse_duplicate_grants() to keep the account row
    and the transaction log consistent.
    """

    # ─────────────────────────────────────────────────────────────
    # Read Operations
    # ─────────────────────────────────────────────────────────────

    @_storage_errors
    def get_account(self, account_id: str) -> Optional[Account]:
        row = query_one(
            f"SELECT {_ACCOUNT_COLUMNS} FROM {Tables.ACCOUNTS} WHERE account_id = %s",
            (account_id,),
        )
        return Account.from_row(row) if row else None

    @_storage_errors
    def ensure_account(self, account_id: str) -> Account:
        """
        Get the account, creating it with a zero balance if it doesn't exist.
        Safe under concurrency: the insert is ON CONFLICT DO NOTHING.
        """
        with transaction() as cur:
            cur.execute(
                f"""
                INSERT INTO {Tables.ACCOUNTS} (account_id)
                VALUES (%s)
                ON CONFLICT (account_id) DO NOTHING
                """,
                (account_id,),
            )
            cur.execute(
                f"SELECT {_ACCOUNT_COLUMNS} FROM {Tables.ACCOUNTS} WHERE account_id = %s",
                (account_id,),
            )
            return Account.from_row(fetch_one(cur))

    @_storage_errors
    def list_accounts(self, limit: int = 1000, offset: int = 0) -> List[Account]:
        rows = query_all(
            f"""
            SELECT {_ACCOUNT_COLUMNS}
            FROM {Tables.ACCOUNTS}
            ORDER BY account_id
            LIMIT %s OFFSET %s
            """,
            (limit, offset),
        )
        return [Account.from_row(row) for row in rows]

    @_storage_errors
    def list_account_ids(self, limit: int = 1000, offset: int = 0) -> List[str]:
        rows = query_all(
            f"SELECT account_id FROM {Tables.ACCOUNTS} ORDER BY account_id LIMIT %s OFFSET %s",
            (limit, offset),
        )
        return [str(row["account_id"]) for row in rows]

    @_storage_errors
    def find_transaction(self, account_id: str, type: str, reference: str) -> Optional[Transaction]:
        row = query_one(
            f"""
            SELECT {_TRANSACTION_COLUMNS}
            FROM {Tables.TRANSACTIONS}
            WHERE account_id = %s AND type = %s AND reference = %s
            """,
            (account_id, type, reference),
        )
        return Transaction.from_row(row) if row else None

    @_storage_errors
    def list_transactions(self, account_id: str, limit: int = 50, offset: int = 0) -> List[Transaction]:
        """Transactions for an account, most recent first."""
        rows = query_all(
            f"""
            SELECT {_TRANSACTION_COLUMNS}
            FROM {Tables.TRANSACTIONS}
            WHERE account_id = %s
            ORDER BY id DESC
            LIMIT %s OFFSET %s
            """,
            (account_id, limit, offset),
        )
        return [Transaction.from_row(row) for row in rows]

    @_storage_errors
    def get_last_transaction_id(self, account_id: str):
        row = query_one(
            f"""
            SELECT id FROM {Tables.TRANSACTIONS}
            WHERE account_id = %s
            ORDER BY id DESC
            LIMIT 1
            """,
            (account_id,),
        )
        return row["id"] if row else None

    @_storage_errors
    def get_ledger_sum(self, account_id: str) -> int:
        """Sum of all balance-affecting transactions. Should equal accounts.balance."""
        row = query_one(
            f"""
            SELECT COALESCE(SUM(amount), 0) AS total
            FROM {Tables.TRANSACTIONS}
            WHERE account_id = %s AND affects_balance
            """,
            (account_id,),
        )
        return int(row.get("total", 0) or 0) if row else 0

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
        """
        Credit an account. Idempotent on (account_id, type, reference).

        Raises:
            ValueError: If amount is not positive or type is not a grant type
            StorageError: On database failure (safe to retry)
        """
        if amount <= 0:
            raise ValueError(f"Amount must be positive, got {amount}")
        if type not in TransactionType.GRANTS:
            raise ValueError(f"Not a grant transaction type: {type}")
        return self._apply_with_idempotency(
            account_id, amount, type, reference, metadata, billing_cycle_id
        )

    def deduct_points(
        self,
        account_id: str,
        cost: int,
        type: str,
        reference: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> LedgerResult:
        """
        Debit an account. Idempotent on (account_id, type, reference).
        The balance check and the decrement happen under the same row lock.

        Raises:
            InsufficientBalance: If balance < cost (nothing is mutated)
            ValueError: If cost is not positive or type is not a deduction type
            StorageError: On database failure (safe to retry)
        """
        if cost <= 0:
            raise ValueError(f"Cost must be positive, got {cost}")
        if type not in TransactionType.DEDUCTIONS:
            raise ValueError(f"Not a deduction transaction type: {type}")
        return self._apply_with_idempotency(account_id, -cost, type, reference, metadata, None)

    @_storage_errors
    def _apply_with_idempotency(self, account_id, delta, type, reference, metadata, billing_cycle_id):
        # The account row exists before the locked transaction so that a
        # refused deduction still leaves the account created.
        self.ensure_account(account_id)
        try:
            return self._apply_delta(account_id, delta, type, reference, metadata, billing_cycle_id)
        except DuplicateOperation as dup:
            # Lost the race on the idempotency key; the winner's row is committed.
            existing = self.find_transaction(account_id, type, reference)
            if existing is not None:
                dup.existing_transaction_id = existing.id
            account = self.get_account(account_id)
            print(
                f"[LEDGER] Duplicate operation short-circuited: account={account_id}, "
                f"type={type}, reference={reference}, transaction={dup.existing_transaction_id}"
            )
            return LedgerResult(transaction=existing, balance=account.balance, already_applied=True)

    def _apply_delta(self, account_id, delta, type, reference, metadata, billing_cycle_id) -> LedgerResult:
        with transaction() as cur:
            # 1. Lock the account row
            cur.execute(
                f"""
                SELECT {_ACCOUNT_COLUMNS}
                FROM {Tables.ACCOUNTS}
                WHERE account_id = %s
                FOR UPDATE
                """,
                (account_id,),
            )
            account = Account.from_row(fetch_one(cur))

            # 2. Idempotency short-circuit
            cur.execute(
                f"""
                SELECT {_TRANSACTION_COLUMNS}
                FROM {Tables.TRANSACTIONS}
                WHERE account_id = %s AND type = %s AND reference = %s
                """,
                (account_id, type, reference),
            )
            existing = fetch_one(cur)
            if existing:
                return LedgerResult(
                    transaction=Transaction.from_row(existing),
                    balance=account.balance,
                    already_applied=True,
                )

            # 3. Balance check for debits
            if delta < 0 and account.balance < -delta:
                raise InsufficientBalance(account_id, account.balance, -delta)

            new_balance = account.balance + delta
            new_earned = account.lifetime_earned + (delta if delta > 0 else 0)
            new_spent = account.lifetime_spent + (-delta if delta < 0 else 0)

            # 4. Append the transaction; the unique index is the final arbiter
            cur.execute(
                f"""
                INSERT INTO {Tables.TRANSACTIONS}
                    (account_id, amount, balance_after, type, reference,
                     billing_cycle_id, affects_balance, metadata, created_at)
                VALUES (%s, %s, %s, %s, %s, %s, TRUE, %s, NOW())
                ON CONFLICT (account_id, type, reference) DO NOTHING
                RETURNING {_TRANSACTION_COLUMNS}
                """,
                (account_id, delta, new_balance, type, reference,
                 billing_cycle_id, Jsonb(metadata or {})),
            )
            row = fetch_one(cur)
            if row is None:
                raise DuplicateOperation(account_id=account_id, type=type, reference=reference)

            # 5. Update the account in the same transaction
            cur.execute(
                f"""
                UPDATE {Tables.ACCOUNTS}
                SET balance = %s, lifetime_earned = %s, lifetime_spent = %s, updated_at = NOW()
                WHERE account_id = %s
                """,
                (new_balance, new_earned, new_spent, account_id),
            )

            print(
                f"[LEDGER] Transaction: account={account_id}, type={type}, reference={reference}, "
                f"delta={delta:+d}, balance: {account.balance} -> {new_balance}"
            )
            return LedgerResult(transaction=Transaction.from_row(row), balance=new_balance)

    # ─────────────────────────────────────────────────────────────
    # Account Attributes
    # ─────────────────────────────────────────────────────────────

    @_storage_errors
    def set_account_tier(self, account_id: str, tier: str, status: str) -> Account:
        self.ensure_account(account_id)
        with transaction() as cur:
            cur.execute(
                f"""
                UPDATE {Tables.ACCOUNTS}
                SET tier = %s, status = %s, updated_at = NOW()
                WHERE account_id = %s
                RETURNING {_ACCOUNT_COLUMNS}
                """,
                (tier, status, account_id),
            )
            return Account.from_row(fetch_one(cur))

    # ─────────────────────────────────────────────────────────────
    # Reconciliation Support
    # ─────────────────────────────────────────────────────────────

    @_storage_errors
    def record_audit_transaction(
        self,
        account_id: str,
        amount: int,
        type: str,
        reference: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Optional[Transaction]:
        """
        Append a non-deducting record (affects_balance = FALSE).
        balance_after is the current balance. Returns None if the key exists.
        """
        self.ensure_account(account_id)
        with transaction() as cur:
            cur.execute(
                f"SELECT balance FROM {Tables.ACCOUNTS} WHERE account_id = %s FOR UPDATE",
                (account_id,),
            )
            balance = int(fetch_scalar(cur) or 0)
            cur.execute(
                f"""
                INSERT INTO {Tables.TRANSACTIONS}
                    (account_id, amount, balance_after, type, reference,
                     affects_balance, metadata, created_at)
                VALUES (%s, %s, %s, %s, %s, FALSE, %s, NOW())
                ON CONFLICT (account_id, type, reference) DO NOTHING
                RETURNING {_TRANSACTION_COLUMNS}
                """,
                (account_id, amount, balance, type, reference, Jsonb(metadata or {})),
            )
            row = fetch_one(cur)
            return Transaction.from_row(row) if row else None

    @_storage_errors
    def find_duplicate_grants(self, account_id: Optional[str] = None, limit: int = 1000) -> List[Dict[str, Any]]:
        """
        Billing cycles with more than one balance-affecting subscription grant.

        Returns:
            List of {account_id, billing_cycle_id, transactions} ordered oldest first
        """
        account_filter = "AND account_id = %s" if account_id else ""
        params = (TransactionType.SUBSCRIPTION_GRANT,) + ((account_id,) if account_id else ()) + (limit,)
        groups = query_all(
            f"""
            SELECT account_id, billing_cycle_id, COUNT(*) AS grant_count
            FROM {Tables.TRANSACTIONS}
            WHERE type = %s
              AND affects_balance
              AND billing_cycle_id IS NOT NULL
              {account_filter}
            GROUP BY account_id, billing_cycle_id
            HAVING COUNT(*) > 1
            ORDER BY account_id, billing_cycle_id
            LIMIT %s
            """,
            params,
        )

        result = []
        for group in groups:
            rows = query_all(
                f"""
                SELECT {_TRANSACTION_COLUMNS}
                FROM {Tables.TRANSACTIONS}
                WHERE account_id = %s AND type = %s AND billing_cycle_id = %s AND affects_balance
                ORDER BY created_at, id
                """,
                (group["account_id"], TransactionType.SUBSCRIPTION_GRANT, group["billing_cycle_id"]),
            )
            result.append({
                "account_id": str(group["account_id"]),
                "billing_cycle_id": group["billing_cycle_id"],
                "transactions": [Transaction.from_row(row) for row in rows],
            })
        return result

    @_storage_errors
    def collapse_duplicate_grants(
        self,
        account_id: str,
        billing_cycle_id: str,
        keep_transaction_id,
        reason: str = "duplicate_subscription_grant",
    ) -> Dict[str, Any]:
        """
        Keep one subscription grant for a billing cycle and recompute the
        account from the remaining balance-affecting transactions.

        The other grants are not deleted: they are flipped to
        affects_balance = FALSE, so a redelivered event with the same
        reference is still reported as already applied. Each removed grant
        also leaves a non-deducting admin_adjustment reversal
        record (reference "reversal:<removed id>"). The whole repair is one
        storage transaction on one account.

        Returns:
            Dict with repaired, requires_manual_review, kept_transaction_id,
            removed_transaction_ids, old/new balance, earned and spent
        """
        with transaction() as cur:
            cur.execute(
                f"""
                SELECT {_ACCOUNT_COLUMNS}
                FROM {Tables.ACCOUNTS}
                WHERE account_id = %s
                FOR UPDATE
                """,
                (account_id,),
            )
            row = fetch_one(cur)
            if not row:
                raise ValueError(f"Account not found: {account_id}")
            account = Account.from_row(row)

            cur.execute(
                f"""
                SELECT {_TRANSACTION_COLUMNS}
                FROM {Tables.TRANSACTIONS}
                WHERE account_id = %s AND affects_balance
                ORDER BY created_at, id
                """,
                (account_id,),
            )
            ledger = [Transaction.from_row(r) for r in fetch_all(cur)]
            grants = [
                tx for tx in ledger
                if tx.type == TransactionType.SUBSCRIPTION_GRANT and tx.billing_cycle_id == billing_cycle_id
            ]
            plan = plan_grant_collapse(account, ledger, grants, keep_transaction_id)
            if not plan["repaired"]:
                return plan

            removed_ids = plan["removed_transaction_ids"]
            # The rows stay so their idempotency keys keep absorbing redeliveries.
            cur.execute(
                f"""
                UPDATE {Tables.TRANSACTIONS}
                SET affects_balance = FALSE,
                    metadata = metadata || %s
                WHERE id = ANY(%s)
                """,
                (Jsonb({"reversed": True, "reversal_reason": reason}), removed_ids),
            )
            for removed in (tx for tx in grants if tx.id in removed_ids):
                cur.execute(
                    f"""
                    INSERT INTO {Tables.TRANSACTIONS}
                        (account_id, amount, balance_after, type, reference,
                         billing_cycle_id, affects_balance, metadata, created_at)
                    VALUES (%s, %s, %s, %s, %s, %s, FALSE, %s, NOW())
                    ON CONFLICT (account_id, type, reference) DO NOTHING
                    """,
                    (
                        account_id,
                        -removed.amount,
                        plan["new_balance"],
                        TransactionType.ADMIN_ADJUSTMENT,
                        f"reversal:{removed.id}",
                        billing_cycle_id,
                        Jsonb(reversal_metadata(removed, keep_transaction_id, reason)),
                    ),
                )
            cur.execute(
                f"""
                UPDATE {Tables.ACCOUNTS}
                SET balance = %s, lifetime_earned = %s, lifetime_spent = %s, updated_at = NOW()
                WHERE account_id = %s
                """,
                (plan["new_balance"], plan["new_lifetime_earned"], plan["new_lifetime_spent"], account_id),
            )

        print(
            f"[LEDGER] Collapsed duplicate grants: account={account_id}, cycle={billing_cycle_id}, "
            f"removed={len(removed_ids)}, balance: {plan['old_balance']} -> {plan['new_balance']}"
        )
        return plan

    # ─────────────────────────────────────────────────────────────
    # Generation Tasks
    # ─────────────────────────────────────────────────────────────

    @_storage_errors
    def record_generation_task(self, task: GenerationTask) -> bool:
        """Insert a task row. Returns False if the task_reference already exists."""
        with transaction() as cur:
            cur.execute(
                f"""
                INSERT INTO {Tables.GENERATION_TASKS}
                    (task_reference, presented_identity, account_id, generation_type, status, created_at)
                VALUES (%s, %s, %s, %s, %s, NOW())
                ON CONFLICT (task_reference) DO NOTHING
                """,
                (task.task_reference, task.presented_identity, task.account_id,
                 task.generation_type, task.status),
            )
            return cur.rowcount == 1

    @_storage_errors
    def get_generation_task(self, task_reference: str) -> Optional[GenerationTask]:
        row = query_one(
            f"SELECT * FROM {Tables.GENERATION_TASKS} WHERE task_reference = %s",
            (task_reference,),
        )
        return GenerationTask.from_row(row) if row else None

    @_storage_errors
    def update_generation_task_status(self, task_reference: str, status: str) -> bool:
        if status not in TaskStatus.ALL:
            raise ValueError(f"Unknown task status: {status}")
        with transaction() as cur:
            cur.execute(
                f"""
                UPDATE {Tables.GENERATION_TASKS}
                SET status = %s,
                    completed_at = CASE WHEN %s = 'pending' THEN NULL ELSE NOW() END
                WHERE task_reference = %s
                """,
                (status, status, task_reference),
            )
            return cur.rowcount == 1

    @_storage_errors
    def list_unbilled_generation_tasks(
        self, limit: int = 100, account_id: Optional[str] = None
    ) -> List[GenerationTask]:
        """
        Succeeded tasks with no generation_deduction transaction for their reference.

        account_id narrows the search before the limit applies.
        """
        rows = query_all(
            f"""
            SELECT t.*
            FROM {Tables.GENERATION_TASKS} t
            WHERE t.status = %s
              AND t.account_id IS NOT NULL
              AND (%s::text IS NULL OR t.account_id = %s)
              AND NOT EXISTS (
                  SELECT 1 FROM {Tables.TRANSACTIONS} x
                  WHERE x.account_id = t.account_id
                    AND x.type = %s
                    AND x.reference = t.task_reference
              )
            ORDER BY t.created_at
            LIMIT %s
            """,
            (TaskStatus.SUCCEEDED, account_id, account_id, TransactionType.GENERATION_DEDUCTION, limit),
        )
        return [GenerationTask.from_row(row) for row in rows]

    # ─────────────────────────────────────────────────────────────
    # Reconciliation Runs
    # ─────────────────────────────────────────────────────────────

    @_storage_errors
    def record_reconciliation_run(self, run: Dict[str, Any]):
        with transaction() as cur:
            cur.execute(
                f"""
                INSERT INTO {Tables.RECONCILIATION_RUNS}
                    (mode, started_at, completed_at, violations, repairs_applied, summary)
                VALUES (%s, %s, %s, %s, %s, %s)
                RETURNING id
                """,
                (
                    run["mode"],
                    run["started_at"],
                    run.get("completed_at"),
                    run.get("violations", 0),
                    run.get("repairs_applied", 0),
                    Jsonb(run.get("summary") or {}),
                ),
            )
            return fetch_scalar(cur)


# ─────────────────────────────────────────────────────────────
# Shared repair arithmetic (used by both store implementations)
# ─────────────────────────────────────────────────────────────

def plan_grant_collapse(
    account: Account,
    ledger: List[Transaction],
    grants: List[Transaction],
    keep_transaction_id,
) -> Dict[str, Any]:
    """
    Work out the post-repair totals from the remaining balance-affecting
    transactions. Nothing is written here.
    """
    plan = {
        "account_id": account.account_id,
        "repaired": False,
        "requires_manual_review": False,
        "kept_transaction_id": keep_transaction_id,
        "removed_transaction_ids": [],
        "old_balance": account.balance,
        "new_balance": account.balance,
        "old_lifetime_earned": account.lifetime_earned,
        "new_lifetime_earned": account.lifetime_earned,
        "old_lifetime_spent": account.lifetime_spent,
        "new_lifetime_spent": account.lifetime_spent,
    }
    if len(grants) <= 1:
        plan["reason"] = "already_collapsed"
        return plan
    if keep_transaction_id not in {tx.id for tx in grants}:
        raise ValueError(f"Transaction {keep_transaction_id} is not a grant in this billing cycle")

    removed_ids = [tx.id for tx in grants if tx.id != keep_transaction_id]
    remaining = [tx for tx in ledger if tx.id not in removed_ids]
    earned = sum(tx.amount for tx in remaining if tx.amount > 0)
    spent = -sum(tx.amount for tx in remaining if tx.amount < 0)
    new_balance = earned - spent

    plan["removed_transaction_ids"] = removed_ids
    if new_balance < 0:
        plan["requires_manual_review"] = True
        plan["reason"] = "recomputed_balance_negative"
        plan["computed_balance"] = new_balance
        return plan

    plan.update({
        "repaired": True,
        "new_balance": new_balance,
        "new_lifetime_earned": earned,
        "new_lifetime_spent": spent,
    })
    return plan


def reversal_metadata(removed: Transaction, keep_transaction_id, reason: str) -> Dict[str, Any]:
    return {
        "reconciliation": True,
        "reason": reason,
        "reversal_of": str(removed.id),
        "removed_reference": removed.reference,
        "removed_amount": removed.amount,
        "kept_transaction_id": str(keep_transaction_id),
        "non_deducting": True,
    }
