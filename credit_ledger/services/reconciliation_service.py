"""
Reconciliation Service - audit and repair of the points ledger.

Runs daily (scripts/daily_reconciliation.py) or on demand
(POST /internal/reconcile). Two modes:

    dry_run  - detect and report only
    apply    - detect, then apply the safe repairs

Checks:
    1. integrity_violation     |balance - (earned - spent)| > epsilon   error     flag only
    2. zero_balance_paid_tier  active paid account at 0 points          critical  flag only
    3. ledger_drift            balance != sum of ledger rows            warning   flag only
    4. duplicate_grant         >1 subscription grant per billing cycle  error     repaired
    5. missing_deduction       succeeded task with no deduction row     error     repaired
    6. missing_mapping         legacy identity with no mapping row      warning   flag only
    7. identity_discrepancy    mapping and hint disagreed               warning   flag only

Accounts are read as a snapshot first; every repair is its own per-account
storage transaction, so stopping between accounts leaves nothing half-done.
A failing check or repair is recorded in report.errors and the run goes on.

Usage:
    from credit_ledger.services.reconciliation_service import ReconciliationService

    report = ReconciliationService().run_reconciliation(mode="dry_run")
    print(report.health, report.violations)
"""

from dataclasses import dataclass, field
from typing import Optional, Dict, Any, List

import requests

from credit_ledger.config import config
from credit_ledger.db import now_utc
from credit_ledger.errors import ConfigError
from credit_ledger.models import Account, AccountStatus, TransactionType
from credit_ledger.services.cost_schedule import get_generation_cost, get_tier_allocation, is_paid_tier


MODE_DRY_RUN = "dry_run"
MODE_APPLY = "apply"
MODES = (MODE_DRY_RUN, MODE_APPLY)


class Severity:
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


class FindingKind:
    INTEGRITY_VIOLATION = "integrity_violation"
    ZERO_BALANCE_PAID_TIER = "zero_balance_paid_tier"
    LEDGER_DRIFT = "ledger_drift"
    DUPLICATE_GRANT = "duplicate_grant"
    MISSING_DEDUCTION = "missing_deduction"
    MISSING_MAPPING = "missing_mapping"
    IDENTITY_DISCREPANCY = "identity_discrepancy"


class Health:
    HEALTHY = "healthy"
    WARNING = "warning"
    CRITICAL = "critical"


@dataclass
class Finding:
    kind: str
    severity: str
    account_id: Optional[str]
    message: str
    details: Dict[str, Any] = field(default_factory=dict)
    repaired: bool = False
    requires_manual_review: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind,
            "severity": self.severity,
            "account_id": self.account_id,
            "message": self.message,
            "details": self.details,
            "repaired": self.repaired,
            "requires_manual_review": self.requires_manual_review,
        }


@dataclass
class ReconciliationReport:
    mode: str
    started_at: Any
    completed_at: Any = None
    accounts_checked: int = 0
    findings: List[Finding] = field(default_factory=list)
    errors: List[Dict[str, Any]] = field(default_factory=list)
    cancelled: bool = False
    run_id: Any = None

    @property
    def violations(self) -> List[Finding]:
        return self.findings

    @property
    def repairs_applied(self) -> int:
        return sum(1 for f in self.findings if f.repaired)

    @property
    def health(self) -> str:
        if any(f.severity == Severity.CRITICAL for f in self.findings):
            return Health.CRITICAL
        if self.findings or self.errors:
            return Health.WARNING
        return Health.HEALTHY

    def count_by_kind(self) -> Dict[str, int]:
        counts: Dict[str, int] = {}
        for finding in self.findings:
            counts[finding.kind] = counts.get(finding.kind, 0) + 1
        return counts

    def to_dict(self) -> Dict[str, Any]:
        return {
            "run_id": str(self.run_id) if self.run_id is not None else None,
            "mode": self.mode,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "health": self.health,
            "accounts_checked": self.accounts_checked,
            "violations": len(self.findings),
            "repairs_applied": self.repairs_applied,
            "by_kind": self.count_by_kind(),
            "findings": [f.to_dict() for f in self.findings],
            "errors": self.errors,
            "cancelled": self.cancelled,
        }


def _short(value: Optional[str]) -> str:
    if not value:
        return "-"
    return f"{value[:8]}..." if len(value) > 8 else value


class ReconciliationService:
    """
    Detects ledger inconsistencies and applies safe, idempotent repairs.
    Findings are accumulated, never raised.
    """

    MAX_FIXES_PER_RUN = 100  # Limit repairs per run to prevent runaway

    def __init__(self, ledger=None, identity_store=None):
        if ledger is None or identity_store is None:
            from credit_ledger.services import get_ledger_store, get_identity_store
            ledger = ledger or get_ledger_store()
            identity_store = identity_store or get_identity_store()
        self.ledger = ledger
        self.identity_store = identity_store

    # ─────────────────────────────────────────────────────────────
    # Main Entry Points
    # ─────────────────────────────────────────────────────────────

    def run_reconciliation(
        self,
        mode: str = MODE_DRY_RUN,
        account_id: Optional[str] = None,
        cancel_event=None,
        send_alert: bool = True,
    ) -> ReconciliationReport:
        """
        Run all checks; in apply mode also repair.

        Args:
            mode: dry_run or apply
            account_id: Restrict the run to one account
            cancel_event: threading.Event checked between accounts
            send_alert: Post a summary to ALERT_WEBHOOK_URL on critical findings

        Returns:
            ReconciliationReport with violations and repairs_applied
        """
        if mode not in MODES:
            raise ValueError(f"Unknown reconciliation mode: {mode}")
        apply = mode == MODE_APPLY

        report = ReconciliationReport(mode=mode, started_at=now_utc())
        scope = f"account={_short(account_id)}" if account_id else "all accounts"
        print(f"[RECONCILE] Starting reconciliation run (mode={mode}, {scope})")

        # 1. Snapshot
        try:
            if account_id:
                account = self.ledger.get_account(account_id)
                accounts = [account] if account else []
            else:
                accounts = self.ledger.list_accounts(limit=config.RECONCILE_MAX_ACCOUNTS)
        except Exception as e:
            print(f"[RECONCILE] ERROR reading account snapshot: {e}")
            report.errors.append({"check": "snapshot", "error": str(e)})
            accounts = []

        # 2. Per-account balance checks
        for account in accounts:
            if self._cancelled(cancel_event, report):
                break
            try:
                self._check_account(account, report)
            except Exception as e:
                print(f"[RECONCILE] ERROR checking account {_short(account.account_id)}: {e}")
                report.errors.append({"check": "account", "account_id": account.account_id, "error": str(e)})
            report.accounts_checked += 1

        # 3. Duplicate subscription grants
        if not report.cancelled:
            try:
                self._check_duplicate_grants(report, apply, account_id, cancel_event)
            except Exception as e:
                print(f"[RECONCILE] ERROR in duplicate_grants: {e}")
                report.errors.append({"check": FindingKind.DUPLICATE_GRANT, "error": str(e)})

        # 4. Succeeded generations that were never charged
        if not report.cancelled:
            try:
                self._check_missing_deductions(report, apply, account_id)
            except Exception as e:
                print(f"[RECONCILE] ERROR in missing_deductions: {e}")
                report.errors.append({"check": FindingKind.MISSING_DEDUCTION, "error": str(e)})

        # 5. Identity checks (whole-system only)
        if not report.cancelled and not account_id:
            try:
                self._check_missing_mappings(report)
            except Exception as e:
                print(f"[RECONCILE] ERROR in missing_mappings: {e}")
                report.errors.append({"check": FindingKind.MISSING_MAPPING, "error": str(e)})
            try:
                self._check_identity_discrepancies(report)
            except Exception as e:
                print(f"[RECONCILE] ERROR in identity_discrepancies: {e}")
                report.errors.append({"check": FindingKind.IDENTITY_DISCREPANCY, "error": str(e)})

        report.completed_at = now_utc()
        duration_ms = int((report.completed_at - report.started_at).total_seconds() * 1000)
        print(
            f"[RECONCILE] Complete: health={report.health}, accounts={report.accounts_checked}, "
            f"violations={len(report.findings)}, repairs={report.repairs_applied}, "
            f"errors={len(report.errors)}, duration={duration_ms}ms"
        )

        self._record_run(report)
        if send_alert:
            self._send_admin_alert(report)
        return report

    def reconcile_account(self, account_id: str, mode: str = MODE_DRY_RUN) -> ReconciliationReport:
        """Run the account-scoped checks for a single account."""
        return self.run_reconciliation(mode=mode, account_id=account_id, send_alert=False)

    @staticmethod
    def _cancelled(cancel_event, report: ReconciliationReport) -> bool:
        if cancel_event is not None and cancel_event.is_set():
            if not report.cancelled:
                print("[RECONCILE] Cancelled between accounts")
            report.cancelled = True
        return report.cancelled

    # ─────────────────────────────────────────────────────────────
    # Per-account Checks
    # ─────────────────────────────────────────────────────────────

    def _check_account(self, account: Account, report: ReconciliationReport) -> None:
        expected = account.lifetime_earned - account.lifetime_spent
        if abs(account.balance - expected) > config.RECONCILE_INTEGRITY_EPSILON:
            print(
                f"[RECONCILE] Integrity violation: {_short(account.account_id)} balance={account.balance} "
                f"earned-spent={expected}"
            )
            report.findings.append(Finding(
                kind=FindingKind.INTEGRITY_VIOLATION,
                severity=Severity.ERROR,
                account_id=account.account_id,
                message=f"balance {account.balance} != lifetime_earned - lifetime_spent ({expected})",
                details={
                    "balance": account.balance,
                    "lifetime_earned": account.lifetime_earned,
                    "lifetime_spent": account.lifetime_spent,
                    "difference": account.balance - expected,
                },
            ))

        if is_paid_tier(account.tier) and account.status == AccountStatus.ACTIVE and account.balance == 0:
            print(f"[RECONCILE] CRITICAL: paid account {_short(account.account_id)} ({account.tier}) has 0 points")
            report.findings.append(Finding(
                kind=FindingKind.ZERO_BALANCE_PAID_TIER,
                severity=Severity.CRITICAL,
                account_id=account.account_id,
                message=f"active {account.tier} subscriber has a zero balance",
                details={"tier": account.tier, "lifetime_earned": account.lifetime_earned},
            ))

        # Accounts that predate the ledger have no rows to compare against.
        if self.ledger.get_last_transaction_id(account.account_id) is None:
            return
        ledger_sum = self.ledger.get_ledger_sum(account.account_id)
        if ledger_sum != account.balance:
            report.findings.append(Finding(
                kind=FindingKind.LEDGER_DRIFT,
                severity=Severity.WARNING,
                account_id=account.account_id,
                message=f"balance {account.balance} differs from ledger sum {ledger_sum}",
                details={"balance": account.balance, "ledger_sum": ledger_sum, "drift": account.balance - ledger_sum},
            ))

    # ─────────────────────────────────────────────────────────────
    # Duplicate Grants
    # ─────────────────────────────────────────────────────────────

    def _check_duplicate_grants(self, report, apply: bool, account_id: Optional[str], cancel_event) -> None:
        groups = self.ledger.find_duplicate_grants(account_id=account_id)
        if groups:
            print(f"[RECONCILE] Found {len(groups)} billing cycles with duplicate grants")

        fixes = 0
        for group in groups:
            if self._cancelled(cancel_event, report):
                return
            grants = group["transactions"]
            keep = self._choose_grant_to_keep(grants, group["account_id"])
            finding = Finding(
                kind=FindingKind.DUPLICATE_GRANT,
                severity=Severity.ERROR,
                account_id=group["account_id"],
                message=f"{len(grants)} subscription grants for billing cycle {group['billing_cycle_id']}",
                details={
                    "billing_cycle_id": group["billing_cycle_id"],
                    "grant_count": len(grants),
                    "transaction_ids": [str(tx.id) for tx in grants],
                    "amounts": [tx.amount for tx in grants],
                    "keep_transaction_id": str(keep.id),
                    "excess_points": sum(tx.amount for tx in grants if tx.id != keep.id),
                },
            )
            report.findings.append(finding)

            if not apply:
                continue
            if fixes >= self.MAX_FIXES_PER_RUN:
                finding.details["skipped"] = "max_fixes_per_run"
                continue

            try:
                result = self.ledger.collapse_duplicate_grants(
                    group["account_id"], group["billing_cycle_id"], keep.id
                )
            except Exception as e:
                print(f"[RECONCILE] ERROR collapsing grants for {_short(group['account_id'])}: {e}")
                report.errors.append({
                    "check": FindingKind.DUPLICATE_GRANT,
                    "account_id": group["account_id"],
                    "error": str(e),
                })
                continue

            finding.details["repair"] = {
                "old_balance": result["old_balance"],
                "new_balance": result["new_balance"],
                "new_lifetime_earned": result["new_lifetime_earned"],
                "new_lifetime_spent": result["new_lifetime_spent"],
                "removed_transaction_ids": [str(i) for i in result["removed_transaction_ids"]],
                "reason": result.get("reason"),
            }
            if result.get("requires_manual_review"):
                finding.requires_manual_review = True
                print(
                    f"[RECONCILE] Manual review: collapsing {_short(group['account_id'])} "
                    f"would leave a negative balance"
                )
            elif result.get("repaired"):
                finding.repaired = True
                fixes += 1

    def _choose_grant_to_keep(self, grants, account_id: str):
        """Earliest grant matching the tier allocation, else the earliest grant."""
        tier = (grants[0].metadata or {}).get("tier")
        if not tier:
            account = self.ledger.get_account(account_id)
            tier = account.tier if account else None
        try:
            allocation = get_tier_allocation(tier)
        except ConfigError:
            return grants[0]
        for tx in grants:
            if tx.amount == allocation:
                return tx
        return grants[0]

    # ─────────────────────────────────────────────────────────────
    # Missing Deductions
    # ─────────────────────────────────────────────────────────────

    def _check_missing_deductions(self, report, apply: bool, account_id: Optional[str]) -> None:
        tasks = self.ledger.list_unbilled_generation_tasks(
            limit=self.MAX_FIXES_PER_RUN, account_id=account_id or None
        )
        if tasks:
            print(f"[RECONCILE] Found {len(tasks)} succeeded generations without a deduction")

        for task in tasks:
            finding = Finding(
                kind=FindingKind.MISSING_DEDUCTION,
                severity=Severity.ERROR,
                account_id=task.account_id,
                message=f"generation {task.task_reference} succeeded without a deduction",
                details={"task_reference": task.task_reference, "generation_type": task.generation_type},
            )
            report.findings.append(finding)

            try:
                cost = get_generation_cost(task.generation_type)
            except ConfigError as e:
                finding.requires_manual_review = True
                finding.details["error"] = str(e)
                continue
            finding.details["cost"] = cost

            if not apply:
                continue

            # The record documents the charge; the balance is left untouched.
            try:
                tx = self.ledger.record_audit_transaction(
                    task.account_id,
                    -cost,
                    TransactionType.GENERATION_DEDUCTION,
                    task.task_reference,
                    metadata={
                        "retroactive": True,
                        "balance_already_adjusted": True,
                        "generation_type": task.generation_type,
                        "cost": cost,
                        "reason": "missing_deduction_reconciled",
                    },
                )
            except Exception as e:
                print(f"[RECONCILE] ERROR recording deduction for {task.task_reference}: {e}")
                report.errors.append({
                    "check": FindingKind.MISSING_DEDUCTION,
                    "task_reference": task.task_reference,
                    "error": str(e),
                })
                continue

            finding.repaired = True
            if tx is not None:
                finding.details["transaction_id"] = str(tx.id)
                print(f"[RECONCILE] Recorded retroactive deduction for {task.task_reference} ({cost} pts)")

    # ─────────────────────────────────────────────────────────────
    # Identity Checks
    # ─────────────────────────────────────────────────────────────

    def _check_missing_mappings(self, report: ReconciliationReport) -> None:
        unmapped = self.identity_store.list_unmapped_identities(limit=config.RECONCILE_MAX_ACCOUNTS)
        if unmapped:
            print(f"[RECONCILE] WARNING: {len(unmapped)} identities without a mapping")
        for identity in unmapped:
            report.findings.append(Finding(
                kind=FindingKind.MISSING_MAPPING,
                severity=Severity.WARNING,
                account_id=identity["primary_id"],
                message="legacy identity has no mapping row",
                details={"email": identity.get("email")},
            ))

    def _check_identity_discrepancies(self, report: ReconciliationReport) -> None:
        for row in self.identity_store.list_identity_discrepancies(limit=config.RECONCILE_MAX_ACCOUNTS):
            report.findings.append(Finding(
                kind=FindingKind.IDENTITY_DISCREPANCY,
                severity=Severity.WARNING,
                account_id=row["mapped_id"],
                message=f"mapping and subscription hint disagree for {row['presented_id']}",
                details={
                    "presented_id": row["presented_id"],
                    "mapped_id": row["mapped_id"],
                    "hinted_id": row["hinted_id"],
                },
            ))

    # ─────────────────────────────────────────────────────────────
    # Run Recording & Alerts
    # ─────────────────────────────────────────────────────────────

    def _record_run(self, report: ReconciliationReport) -> None:
        try:
            report.run_id = self.ledger.record_reconciliation_run({
                "mode": report.mode,
                "started_at": report.started_at,
                "completed_at": report.completed_at,
                "violations": len(report.findings),
                "repairs_applied": report.repairs_applied,
                "summary": {
                    "health": report.health,
                    "accounts_checked": report.accounts_checked,
                    "by_kind": report.count_by_kind(),
                    "errors": len(report.errors),
                    "cancelled": report.cancelled,
                },
            })
        except Exception as e:
            print(f"[RECONCILE] Failed to record run: {e}")
            report.errors.append({"check": "record_run", "error": str(e)})

    def _send_admin_alert(self, report: ReconciliationReport) -> bool:
        """POST a summary to ALERT_WEBHOOK_URL. Never raises."""
        if not config.ALERT_WEBHOOK_URL:
            return False
        if report.health != Health.CRITICAL:
            return False
        if report.mode != MODE_APPLY and not config.ALERT_ON_DRY_RUN:
            return False

        critical = [f.to_dict() for f in report.findings if f.severity == Severity.CRITICAL]
        payload = {
            "text": f"Points ledger reconciliation: {len(critical)} critical findings",
            "health": report.health,
            "mode": report.mode,
            "violations": len(report.findings),
            "repairs_applied": report.repairs_applied,
            "by_kind": report.count_by_kind(),
            "critical": critical[:20],
        }
        try:
            resp = requests.post(config.ALERT_WEBHOOK_URL, json=payload, timeout=config.ALERT_TIMEOUT_SECONDS)
            resp.raise_for_status()
        except requests.RequestException as e:
            print(f"[ALERT] Failed to send reconciliation alert: {e}")
            return False
        print("[ALERT] Reconciliation alert sent")
        return True
