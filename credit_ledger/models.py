"""
Ledger records shared by the stores and services.

Rows come back from PostgreSQL as dicts (psycopg dict_row); the stores turn
them into these dataclasses so the in-memory and PostgreSQL stores hand the
services identical shapes.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional, Dict, Any


class TransactionType:
    """Valid transaction types."""
    SIGNUP_BONUS = "signup_bonus"
    SUBSCRIPTION_GRANT = "subscription_grant"
    PURCHASE = "purchase"
    GENERATION_DEDUCTION = "generation_deduction"
    REFUND = "refund"
    ADMIN_ADJUSTMENT = "admin_adjustment"

    GRANTS = {SIGNUP_BONUS, SUBSCRIPTION_GRANT, PURCHASE, REFUND, ADMIN_ADJUSTMENT}
    DEDUCTIONS = {GENERATION_DEDUCTION}
    ALL = GRANTS | DEDUCTIONS


class AccountStatus:
    ACTIVE = "active"
    INACTIVE = "inactive"
    CANCELLED = "cancelled"


class TaskStatus:
    PENDING = "pending"
    SUCCEEDED = "succeeded"
    FAILED = "failed"

    ALL = {PENDING, SUCCEEDED, FAILED}


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


@dataclass
class Account:
    account_id: str
    balance: int = 0
    lifetime_earned: int = 0
    lifetime_spent: int = 0
    tier: str = "free"
    status: str = AccountStatus.ACTIVE
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "Account":
        return cls(
            account_id=str(row["account_id"]),
            balance=int(row.get("balance") or 0),
            lifetime_earned=int(row.get("lifetime_earned") or 0),
            lifetime_spent=int(row.get("lifetime_spent") or 0),
            tier=row.get("tier") or "free",
            status=row.get("status") or AccountStatus.ACTIVE,
            created_at=row.get("created_at"),
            updated_at=row.get("updated_at"),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "account_id": self.account_id,
            "balance": self.balance,
            "lifetime_earned": self.lifetime_earned,
            "lifetime_spent": self.lifetime_spent,
            "tier": self.tier,
            "status": self.status,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }


@dataclass
class Transaction:
    id: Any
    account_id: str
    amount: int
    balance_after: int
    type: str
    reference: str
    metadata: Dict[str, Any] = field(default_factory=dict)
    billing_cycle_id: Optional[str] = None
    affects_balance: bool = True
    created_at: Optional[datetime] = None

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "Transaction":
        return cls(
            id=row["id"],
            account_id=str(row["account_id"]),
            amount=int(row["amount"]),
            balance_after=int(row["balance_after"]),
            type=row["type"],
            reference=row["reference"],
            metadata=row.get("metadata") or {},
            billing_cycle_id=row.get("billing_cycle_id"),
            affects_balance=bool(row.get("affects_balance", True)),
            created_at=row.get("created_at"),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": str(self.id),
            "account_id": self.account_id,
            "amount": self.amount,
            "balance_after": self.balance_after,
            "type": self.type,
            "reference": self.reference,
            "metadata": self.metadata,
            "billing_cycle_id": self.billing_cycle_id,
            "affects_balance": self.affects_balance,
            "created_at": _iso(self.created_at),
        }


@dataclass
class LedgerResult:
    """Outcome of add_points / deduct_points."""
    transaction: Transaction
    balance: int
    already_applied: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "transaction": self.transaction.to_dict(),
            "balance": self.balance,
            "already_applied": self.already_applied,
        }


@dataclass
class GenerationTask:
    task_reference: str
    generation_type: str
    account_id: Optional[str] = None
    presented_identity: Optional[str] = None
    status: str = TaskStatus.PENDING
    created_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "GenerationTask":
        return cls(
            task_reference=row["task_reference"],
            generation_type=row["generation_type"],
            account_id=row.get("account_id"),
            presented_identity=row.get("presented_identity"),
            status=row.get("status") or TaskStatus.PENDING,
            created_at=row.get("created_at"),
            completed_at=row.get("completed_at"),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "task_reference": self.task_reference,
            "generation_type": self.generation_type,
            "account_id": self.account_id,
            "presented_identity": self.presented_identity,
            "status": self.status,
            "created_at": _iso(self.created_at),
            "completed_at": _iso(self.completed_at),
        }
