"""
Points Service - grant/deduct orchestration on top of the Ledger Store.

Every operation runs:  resolve identity → (deductions) cost lookup → store primitive

    Requested
        ├─ key (account, type, reference) exists  → Already-Applied (success, no change)
        ├─ new                                    → Applied
        └─ InsufficientBalance | ConfigError | StorageError → Failed

Balances are always read from the store; nothing here caches them.

Usage:
    from credit_ledger.services.points_service import PointsService

    points = PointsService()
    points.add_points("user-1", 800, TransactionType.SUBSCRIPTION_GRANT, "evt-123")
    points.deduct_points("user-1", "nanoBananaImage", "gen-1")
"""

from typing import Optional, Dict, Any, List

from credit_ledger.errors import ConfigError, InsufficientBalance, TaskNotFound
from credit_ledger.models import (
    AccountStatus,
    GenerationTask,
    LedgerResult,
    TaskStatus,
    TransactionType,
)
from credit_ledger.services.cost_schedule import (
    FREE_TIER,
    KNOWN_TIERS,
    get_generation_cost,
    get_points_pack,
    get_signup_bonus,
    get_tier_allocation,
    is_paid_tier,
)
from credit_ledger.services.identity_service import IdentityResolver


class PointsService:
    """Service for balance reads and idempotent grants/deductions."""

    def __init__(self, ledger=None, resolver: Optional[IdentityResolver] = None):
        if ledger is None:
            from credit_ledger.services import get_ledger_store
            ledger = get_ledger_store()
        self.ledger = ledger
        self.resolver = resolver or IdentityResolver()

    # ─────────────────────────────────────────────────────────────
    # Identity & Reads
    # ─────────────────────────────────────────────────────────────

    def resolve_identity(self, presented_id: str) -> str:
        return self.resolver.resolve_identity(presented_id)

    def get_balance(self, account_id: str) -> Dict[str, Any]:
        """
        Current balance of the canonical account behind account_id.

        as_of_transaction_id is the newest transaction the numbers derive
        from (None for an account with no ledger rows yet).
        """
        resolved = self.resolve_identity(account_id)
        account = self.ledger.get_account(resolved)
        as_of = self.ledger.get_last_transaction_id(resolved) if account else None
        if account is None:
            return {
                "account_id": resolved,
                "balance": 0,
                "lifetime_earned": 0,
                "lifetime_spent": 0,
                "tier": FREE_TIER,
                "status": AccountStatus.ACTIVE,
                "as_of_transaction_id": None,
            }
        return {
            "account_id": resolved,
            "balance": account.balance,
            "lifetime_earned": account.lifetime_earned,
            "lifetime_spent": account.lifetime_spent,
            "tier": account.tier,
            "status": account.status,
            "as_of_transaction_id": str(as_of) if as_of is not None else None,
        }

    def get_transaction_history(self, account_id: str, limit: int = 50, offset: int = 0) -> List[Dict[str, Any]]:
        resolved = self.resolve_identity(account_id)
        limit = max(1, min(int(limit), 200))
        offset = max(0, int(offset))
        return [tx.to_dict() for tx in self.ledger.list_transactions(resolved, limit=limit, offset=offset)]

    def can_afford_generation(self, account_id: str, generation_type: str) -> Dict[str, Any]:
        """
        Raises:
            ConfigError: If generation_type is unknown
        """
        cost = get_generation_cost(generation_type)
        balance = self.get_balance(account_id)["balance"]
        return {
            "can_afford": balance >= cost,
            "balance": balance,
            "cost": cost,
            "shortfall": max(0, cost - balance),
        }

    # ─────────────────────────────────────────────────────────────
    # Core Primitives
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
        Credit the canonical account. Redelivery of the same (type, reference)
        returns the original transaction with already_applied=True.
        """
        if not reference:
            raise ValueError("reference is required for idempotency")
        return self._grant(
            self.resolve_identity(account_id), amount, type, reference, metadata, billing_cycle_id
        )

    def deduct_points(
        self,
        account_id: str,
        generation_type: str,
        reference: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> LedgerResult:
        """
        Charge one generation.

        Raises:
            ConfigError: Unknown generation type (checked before any storage access)
            InsufficientBalance: Balance below cost; nothing mutated
            StorageError: Store unavailable; safe to retry with the same reference
        """
        if not reference:
            raise ValueError("reference is required for idempotency")
        cost = get_generation_cost(generation_type)
        return self._charge(self.resolve_identity(account_id), generation_type, cost, reference, metadata)

    # Helpers below take an already resolved account id and never resolve again.

    def _grant(self, resolved, amount, type, reference, metadata=None, billing_cycle_id=None) -> LedgerResult:
        result = self.ledger.add_points(
            resolved, amount, type, reference, metadata=metadata, billing_cycle_id=billing_cycle_id
        )
        if result.already_applied:
            print(f"[POINTS] Already applied: {type} {reference} for {resolved} (balance={result.balance})")
        return result

    def _charge(self, resolved, generation_type, cost, reference, metadata=None) -> LedgerResult:
        meta = {"generation_type": generation_type, "cost": cost}
        meta.update(metadata or {})
        try:
            result = self.ledger.deduct_points(
                resolved, cost, TransactionType.GENERATION_DEDUCTION, reference, metadata=meta
            )
        except InsufficientBalance as e:
            print(f"[POINTS] Insufficient balance: {resolved} has {e.balance}, needs {e.required} for {generation_type}")
            raise

        if result.already_applied:
            print(f"[POINTS] Already charged: {reference} for {resolved} (balance={result.balance})")
        return result

    # ─────────────────────────────────────────────────────────────
    # Grants
    # ─────────────────────────────────────────────────────────────

    def grant_signup_bonus(self, account_id: str) -> Optional[LedgerResult]:
        """One signup bonus per account. Returns None when the bonus is disabled."""
        bonus = get_signup_bonus()
        if bonus <= 0:
            return None
        resolved = self.resolve_identity(account_id)
        return self._grant(
            resolved,
            bonus,
            TransactionType.SIGNUP_BONUS,
            f"signup:{resolved}",
            metadata={"source": "signup"},
        )

    def grant_subscription_points(
        self,
        account_id: str,
        tier: str,
        billing_cycle_id: str,
        reference: Optional[str] = None,
        allocation: Optional[int] = None,
    ) -> LedgerResult:
        """
        Grant one billing cycle's allocation. The reference defaults to the
        billing cycle id, so a cycle is granted at most once.

        Raises:
            ConfigError: If tier is not a paid tier and no allocation is given
        """
        if allocation is None:
            allocation = get_tier_allocation(tier)
        if not (reference or billing_cycle_id):
            raise ValueError("billing_cycle_id or reference is required")
        return self._grant_cycle(self.resolve_identity(account_id), tier, billing_cycle_id, reference, allocation)

    def _grant_cycle(self, resolved, tier, billing_cycle_id, reference=None, allocation=None) -> LedgerResult:
        if allocation is None:
            allocation = get_tier_allocation(tier)
        return self._grant(
            resolved,
            allocation,
            TransactionType.SUBSCRIPTION_GRANT,
            reference or billing_cycle_id,
            metadata={"tier": tier, "billing_cycle_id": billing_cycle_id},
            billing_cycle_id=billing_cycle_id,
        )

    def purchase_points_pack(self, account_id: str, pack_id: str, payment_reference: str) -> LedgerResult:
        pack = get_points_pack(pack_id)
        return self.add_points(
            account_id,
            pack["total"],
            TransactionType.PURCHASE,
            payment_reference,
            metadata={"pack_id": pack_id, "points": pack["points"], "bonus": pack["bonus"]},
        )

    def refund_points(self, account_id: str, amount: int, reference: str, reason: str) -> LedgerResult:
        if not reference:
            raise ValueError("reference is required for idempotency")
        return self._refund(self.resolve_identity(account_id), amount, reference, reason)

    def _refund(self, resolved, amount, reference, reason) -> LedgerResult:
        result = self._grant(resolved, amount, TransactionType.REFUND, reference, metadata={"reason": reason})
        if not result.already_applied:
            print(f"[POINTS] Refunded {amount} to {resolved}: {reason}")
        return result

    def admin_adjust(self, account_id: str, amount: int, reference: str, reason: str) -> LedgerResult:
        """Credit-only manual adjustment. Debits go through deduct_points."""
        if amount <= 0:
            raise ValueError("Admin adjustments must be positive")
        return self.add_points(
            account_id,
            amount,
            TransactionType.ADMIN_ADJUSTMENT,
            reference,
            metadata={"reason": reason, "source": "admin"},
        )

    # ─────────────────────────────────────────────────────────────
    # Inbound Events
    # ─────────────────────────────────────────────────────────────

    def handle_subscription_event(self, event: Dict[str, Any]) -> Dict[str, Any]:
        """
        Subscription renewal/activation:
            {event_id, account_hint, tier, billing_cycle_id, allocation}

        Events may arrive duplicated or out of order; the billing cycle id is
        the idempotency reference (event_id when absent).
        """
        event_id = event.get("event_id")
        account_hint = event.get("account_hint")
        tier = event.get("tier") or FREE_TIER
        billing_cycle_id = event.get("billing_cycle_id")
        allocation = event.get("allocation")

        if tier not in KNOWN_TIERS:
            raise ConfigError("tier", tier)
        if not (billing_cycle_id or event_id):
            raise ValueError("subscription event needs billing_cycle_id or event_id")

        account_id = self.resolve_identity(account_hint)
        status = event.get("status") or AccountStatus.ACTIVE
        self.ledger.set_account_tier(account_id, tier, status)

        response = {"account_id": account_id, "tier": tier, "status": status, "granted": False}
        if not is_paid_tier(tier) or status != AccountStatus.ACTIVE:
            print(f"[POINTS] Subscription {event_id}: {account_id} now {tier}/{status}, nothing to grant")
            response["balance"] = self.ledger.ensure_account(account_id).balance
            return response

        result = self._grant_cycle(
            account_id,
            tier,
            billing_cycle_id=billing_cycle_id or event_id,
            reference=billing_cycle_id or event_id,
            allocation=int(allocation) if allocation is not None else None,
        )
        response.update({
            "granted": not result.already_applied,
            "already_applied": result.already_applied,
            "balance": result.balance,
            "transaction": result.transaction.to_dict(),
        })
        return response

    def handle_purchase_event(self, event: Dict[str, Any]) -> Dict[str, Any]:
        """Purchase confirmation: {payment_reference, account_hint, pack_id}."""
        payment_reference = event.get("payment_reference")
        if not payment_reference:
            raise ValueError("payment_reference is required")
        result = self.purchase_points_pack(event.get("account_hint"), event.get("pack_id"), payment_reference)
        return result.to_dict()

    def handle_generation_request(self, request: Dict[str, Any]) -> LedgerResult:
        """
        Generation request: {presented_identity, generation_type, task_reference}.
        The task reference is the deduction's idempotency reference.
        """
        presented = request.get("presented_identity")
        generation_type = request.get("generation_type")
        task_reference = request.get("task_reference")
        if not task_reference:
            raise ValueError("task_reference is required")

        cost = get_generation_cost(generation_type)
        account_id = self.resolve_identity(presented)
        result = self._charge(account_id, generation_type, cost, task_reference)
        self.ledger.record_generation_task(GenerationTask(
            task_reference=task_reference,
            generation_type=generation_type,
            account_id=account_id,
            presented_identity=presented,
            status=TaskStatus.PENDING,
        ))
        return result

    def handle_generation_complete(self, event: Dict[str, Any]) -> Dict[str, Any]:
        """
        Generation completion: {task_reference, status}.
        A failed generation refunds its deduction once (reference = task reference).
        """
        task_reference = event.get("task_reference")
        status = event.get("status")
        if status not in (TaskStatus.SUCCEEDED, TaskStatus.FAILED):
            raise ValueError(f"Unsupported completion status: {status}")

        task = self.ledger.get_generation_task(task_reference)
        if task is None:
            raise TaskNotFound(task_reference)
        self.ledger.update_generation_task_status(task_reference, status)

        response = {"task_reference": task_reference, "status": status, "refunded": False}
        if status == TaskStatus.FAILED:
            deduction = self.ledger.find_transaction(
                task.account_id, TransactionType.GENERATION_DEDUCTION, task_reference
            )
            if deduction is not None and deduction.affects_balance:
                # task.account_id was resolved when the task was charged
                result = self._refund(
                    task.account_id, -deduction.amount, task_reference, f"generation failed: {task.generation_type}"
                )
                response.update({"refunded": not result.already_applied, "balance": result.balance})
        return response
