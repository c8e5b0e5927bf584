"""
Domain errors for the points ledger.

Every error carries a stable ``code`` used by the HTTP layer and by
reconciliation reports. Database-level failures live in ``credit_ledger.db``;
the stores wrap them as StorageError before they reach callers.
"""

from typing import Optional


class LedgerError(Exception):
    """Base class for ledger errors."""

    code = "LEDGER_ERROR"

    def to_dict(self) -> dict:
        return {"code": self.code, "message": str(self)}


class IdentityNotResolved(LedgerError):
    """No canonical account could be derived from the presented identity."""

    code = "IDENTITY_NOT_RESOLVED"

    def __init__(self, presented_id: Optional[str] = None):
        self.presented_id = presented_id
        super().__init__(f"Could not resolve identity: {presented_id!r}")


class IdentityConflict(LedgerError):
    """A primary id is already linked to a different secondary id."""

    code = "IDENTITY_CONFLICT"

    def __init__(self, primary_id: str, existing_secondary_id: str, requested_secondary_id: str):
        self.primary_id = primary_id
        self.existing_secondary_id = existing_secondary_id
        self.requested_secondary_id = requested_secondary_id
        super().__init__(
            f"Identity {primary_id} is already linked to {existing_secondary_id}, "
            f"refusing to relink to {requested_secondary_id}"
        )


class InsufficientBalance(LedgerError):
    """Deduction refused; nothing was mutated."""

    code = "INSUFFICIENT_BALANCE"

    def __init__(self, account_id: str, balance: int, required: int):
        self.account_id = account_id
        self.balance = balance
        self.required = required
        self.shortfall = required - balance
        super().__init__(
            f"Insufficient balance for {account_id}: balance={balance}, "
            f"required={required}, shortfall={self.shortfall}"
        )

    def to_dict(self) -> dict:
        data = super().to_dict()
        data.update({
            "balance": self.balance,
            "required": self.required,
            "shortfall": self.shortfall,
        })
        return data


class DuplicateOperation(LedgerError):
    """
    The idempotency key (account, type, reference) already has a committed
    transaction. Callers treat this as success.
    """

    code = "DUPLICATE_OPERATION"

    def __init__(self, existing_transaction_id=None, account_id: str = None,
                 type: str = None, reference: str = None):
        self.existing_transaction_id = existing_transaction_id
        self.account_id = account_id
        self.type = type
        self.reference = reference
        super().__init__(
            f"Operation already applied: account={account_id}, type={type}, "
            f"reference={reference}, transaction={existing_transaction_id}"
        )


class ConfigError(LedgerError, ValueError):
    """Unknown generation type, tier or pack. Fatal to the caller, never retried."""

    code = "CONFIG_ERROR"

    def __init__(self, kind: str, value):
        self.kind = kind
        self.value = value
        super().__init__(f"Unknown {kind}: {value!r}")


class StorageError(LedgerError):
    """Transient storage failure. Safe to retry: operations are idempotent."""

    code = "STORAGE_ERROR"

    def __init__(self, message: str, original_error: Exception = None):
        super().__init__(message)
        self.original_error = original_error


class TaskNotFound(LedgerError):
    """Completion received for a generation task that was never recorded."""

    code = "TASK_NOT_FOUND"

    def __init__(self, task_reference: str):
        self.task_reference = task_reference
        super().__init__(f"Generation task not found: {task_reference!r}")
