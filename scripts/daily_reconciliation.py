#!/usr/bin/env python3
"""
Daily Ledger Reconciliation Script
-----------------------------------
Audits every account: integrity (balance == earned - spent), paid accounts at
zero, ledger drift, duplicate subscription grants, succeeded generations that
were never charged, and identity mapping gaps.

Run daily via cron:
    0 4 * * * cd /path/to/credit-ledger && python scripts/daily_reconciliation.py --apply >> /var/log/ledger-reconcile.log 2>&1

Or manually:
    # Report only (default)
    python scripts/daily_reconciliation.py

    # Apply the safe repairs
    python scripts/daily_reconciliation.py --apply

    # One account
    python scripts/daily_reconciliation.py --account <account_id>

    # Machine-readable report
    python scripts/daily_reconciliation.py --json

Exit codes:
    0  healthy or warnings only
    1  critical findings (or repair errors)
    2  the run itself crashed

Environment variables:
    DATABASE_URL: PostgreSQL connection string
    ALERT_WEBHOOK_URL: optional, receives a summary on critical findings
"""
import argparse
import json
import os
import sys
from datetime import datetime, timezone

# Add parent directory to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))


def main():
    parser = argparse.ArgumentParser(
        description="Run the daily points ledger reconciliation",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--apply",
        action="store_true",
        help="Apply repairs (default is dry-run)",
    )
    parser.add_argument(
        "--account",
        type=str,
        help="Reconcile a single account id",
    )
    parser.add_argument(
        "--json",
        action="store_true",
        help="Print the full report as JSON",
    )
    parser.add_argument(
        "--verbose",
        "-v",
        action="store_true",
        help="Print every finding",
    )
    args = parser.parse_args()

    mode = "apply" if args.apply else "dry_run"
    start_time = datetime.now(timezone.utc)
    if not args.json:
        print(f"[{start_time.isoformat()}] Points Ledger Reconciliation")
        print(f"  Mode: {mode}")
        print()

    try:
        from credit_ledger.db import USE_DB, init_db
        from credit_ledger.services.reconciliation_service import ReconciliationService, Health

        if USE_DB:
            init_db()

        service = ReconciliationService()
        if args.account:
            report = service.reconcile_account(args.account, mode=mode)
        else:
            report = service.run_reconciliation(mode=mode)

        if args.json:
            print(json.dumps(report.to_dict(), indent=2, default=str))
        else:
            print_report(report, args.verbose)
            duration = (datetime.now(timezone.utc) - start_time).total_seconds()
            print()
            print(f"[{datetime.now(timezone.utc).isoformat()}] Reconciliation completed in {duration:.1f}s")

        if report.health == Health.CRITICAL or report.errors:
            sys.exit(1)

    except Exception as e:
        print(f"ERROR: Reconciliation failed: {e}")
        import traceback
        traceback.print_exc()
        sys.exit(2)


def print_report(report, verbose: bool):
    icons = {"healthy": "✓", "warning": "⚠", "critical": "✗"}
    print(f"  Health:            {icons.get(report.health, '?')} {report.health}")
    print(f"  Accounts checked:  {report.accounts_checked}")
    print(f"  Violations:        {len(report.violations)}")
    print(f"  Repairs applied:   {report.repairs_applied}")
    print(f"  Errors:            {len(report.errors)}")
    if report.cancelled:
        print("  Run was cancelled before completion")

    counts = report.count_by_kind()
    if counts:
        print()
        print("  By kind:")
        for kind, count in sorted(counts.items()):
            print(f"    {kind:24s} {count}")

    manual = [f for f in report.findings if f.requires_manual_review]
    if manual:
        print()
        print(f"  {len(manual)} findings need manual review:")
        for finding in manual:
            print(f"    - {finding.kind} {finding.account_id}: {finding.message}")

    if verbose and report.findings:
        print()
        print("  Findings:")
        for finding in report.findings:
            status = "repaired" if finding.repaired else finding.severity
            print(f"    [{status}] {finding.kind} {finding.account_id}: {finding.message}")

    for error in report.errors:
        print(f"  ERROR in {error.get('check')}: {error.get('error')}")


if __name__ == "__main__":
    main()
