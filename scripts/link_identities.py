#!/usr/bin/env python3
"""
Link Identities Script
----------------------
Creates primary -> secondary identity mappings, one pair or a CSV batch.
Existing identical links are skipped; a primary already linked to a
different account is reported as a conflict and left untouched.

Usage:
    # Single pair
    python scripts/link_identities.py --primary <legacy_id> --secondary <account_id>

    # Batch (CSV with header primary_id,secondary_id)
    python scripts/link_identities.py --csv mappings.csv

    # Show what would happen
    python scripts/link_identities.py --csv mappings.csv --dry-run

Exit codes:
    0  all pairs linked or already linked
    1  at least one conflict or invalid row
    2  the run itself crashed

Environment variables:
    DATABASE_URL: PostgreSQL connection string
"""
import argparse
import csv
import os
import sys

# Add parent directory to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))


def read_pairs(path: str):
    with open(path, newline="", encoding="utf-8") as f:
        for row in csv.DictReader(f):
            yield (row.get("primary_id") or "").strip(), (row.get("secondary_id") or "").strip()


def link_pairs(resolver, pairs, dry_run: bool = False) -> dict:
    """Link each pair; returns counts of created, skipped, conflicts and invalid rows."""
    from credit_ledger.errors import IdentityConflict, IdentityNotResolved

    counts = {"created": 0, "skipped": 0, "conflicts": 0, "invalid": 0}
    pairs = list(pairs)
    for i, (primary_id, secondary_id) in enumerate(pairs, start=1):
        progress = f"[{i}/{len(pairs)}]"
        if dry_run:
            existing = resolver.store.get_mapping(primary_id) if primary_id else None
            if not primary_id or not secondary_id:
                counts["invalid"] += 1
                print(f"{progress} ✗ Invalid row: primary={primary_id!r} secondary={secondary_id!r}")
            elif existing is None:
                counts["created"] += 1
                print(f"{progress} would link {primary_id} -> {secondary_id}")
            elif existing == secondary_id:
                counts["skipped"] += 1
                print(f"{progress} ✓ Already linked {primary_id}")
            else:
                counts["conflicts"] += 1
                print(f"{progress} ✗ Conflict: {primary_id} is linked to {existing}")
            continue

        try:
            created = resolver.link_identity(primary_id, secondary_id)
        except IdentityNotResolved:
            counts["invalid"] += 1
            print(f"{progress} ✗ Invalid row: primary={primary_id!r} secondary={secondary_id!r}")
            continue
        except IdentityConflict as e:
            counts["conflicts"] += 1
            print(f"{progress} ✗ Conflict: {e}")
            continue

        if created:
            counts["created"] += 1
            print(f"{progress} Linked {primary_id} -> {secondary_id}")
        else:
            counts["skipped"] += 1
            print(f"{progress} ✓ Already linked {primary_id}")
    return counts


def main():
    parser = argparse.ArgumentParser(
        description="Create identity mappings",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("--primary", type=str, help="Legacy (primary) id")
    parser.add_argument("--secondary", type=str, help="Canonical (secondary) account id")
    parser.add_argument("--csv", type=str, help="CSV file with primary_id,secondary_id columns")
    parser.add_argument("--dry-run", action="store_true", help="Report without writing")
    args = parser.parse_args()

    if args.csv and (args.primary or args.secondary):
        parser.error("use either --csv or --primary/--secondary")
    if not args.csv and not (args.primary and args.secondary):
        parser.error("--primary and --secondary are both required")

    try:
        from credit_ledger.db import USE_DB, init_db
        from credit_ledger.services.identity_service import IdentityResolver

        if USE_DB:
            init_db()

        pairs = read_pairs(args.csv) if args.csv else [(args.primary, args.secondary)]
        counts = link_pairs(IdentityResolver(), pairs, dry_run=args.dry_run)

        print()
        print(
            f"Created: {counts['created']}, skipped: {counts['skipped']}, "
            f"conflicts: {counts['conflicts']}, invalid: {counts['invalid']}"
        )
        if counts["conflicts"] or counts["invalid"]:
            sys.exit(1)

    except Exception as e:
        print(f"ERROR: Linking failed: {e}")
        import traceback
        traceback.print_exc()
        sys.exit(2)


if __name__ == "__main__":
    main()
