"""
Identity Store - identity mappings, subscription hints and discrepancy records.

Tables:
    identities              - every id issued by the primary identity system
    identity_mappings       - primary_id -> secondary_id (the canonical account)
    subscriptions           - written by the billing integration; metadata may
                              carry a resolved_account_id hint
    identity_discrepancies  - mapping and hint disagreed (mapping won)

A mapping, once written, is never silently rewritten. create_mapping() uses
INSERT ... ON CONFLICT DO NOTHING so a racing second link observes the first.
"""

from typing import Optional, Dict, Any, List, Tuple

from credit_ledger.db import transaction, fetch_one, query_one, query_all, Tables, DatabaseError
from credit_ledger.errors import StorageError


HINT_METADATA_KEY = "resolved_account_id"


class PostgresIdentityStore:

    def get_mapping(self, primary_id: str) -> Optional[str]:
        try:
            row = query_one(
                f"SELECT secondary_id FROM {Tables.IDENTITY_MAPPINGS} WHERE primary_id = %s",
                (primary_id,),
            )
        except DatabaseError as e:
            raise StorageError(f"get_mapping failed: {e}", original_error=e)
        return str(row["secondary_id"]) if row else None

    def create_mapping(self, primary_id: str, secondary_id: str) -> Tuple[str, bool]:
        """
        Link primary_id to secondary_id if no mapping exists.

        Returns:
            (secondary_id now on record, created)
        """
        try:
            with transaction() as cur:
                cur.execute(
                    f"""
                    INSERT INTO {Tables.IDENTITY_MAPPINGS}
                        (primary_id, secondary_id, sync_status, created_at, last_synced_at)
                    VALUES (%s, %s, 'active', NOW(), NOW())
                    ON CONFLICT (primary_id) DO NOTHING
                    RETURNING secondary_id
                    """,
                    (primary_id, secondary_id),
                )
                row = fetch_one(cur)
                if row:
                    return str(row["secondary_id"]), True

                cur.execute(
                    f"""
                    UPDATE {Tables.IDENTITY_MAPPINGS}
                    SET last_synced_at = NOW()
                    WHERE primary_id = %s
                    RETURNING secondary_id
                    """,
                    (primary_id,),
                )
                existing = fetch_one(cur)
                return str(existing["secondary_id"]), False
        except DatabaseError as e:
            raise StorageError(f"create_mapping failed: {e}", original_error=e)

    def get_subscription_hint(self, presented_id: str) -> Optional[str]:
        """Hint from the most recently updated subscription of presented_id."""
        try:
            row = query_one(
                f"""
                SELECT metadata->>'{HINT_METADATA_KEY}' AS hint
                FROM {Tables.SUBSCRIPTIONS}
                WHERE user_id = %s
                ORDER BY updated_at DESC
                LIMIT 1
                """,
                (presented_id,),
            )
        except DatabaseError as e:
            raise StorageError(f"get_subscription_hint failed: {e}", original_error=e)
        if not row or not row.get("hint"):
            return None
        return str(row["hint"])

    def record_identity_discrepancy(self, presented_id: str, mapped_id: str, hinted_id: str) -> bool:
        """Returns True if this (presented, mapped, hinted) triple is new."""
        try:
            with transaction() as cur:
                cur.execute(
                    f"""
                    INSERT INTO {Tables.IDENTITY_DISCREPANCIES}
                        (presented_id, mapped_id, hinted_id, detected_at)
                    VALUES (%s, %s, %s, NOW())
                    ON CONFLICT ON CONSTRAINT uq_identity_discrepancy DO NOTHING
                    """,
                    (presented_id, mapped_id, hinted_id),
                )
                return cur.rowcount == 1
        except DatabaseError as e:
            raise StorageError(f"record_identity_discrepancy failed: {e}", original_error=e)

    def list_identity_discrepancies(self, limit: int = 1000) -> List[Dict[str, Any]]:
        try:
            return query_all(
                f"""
                SELECT presented_id, mapped_id, hinted_id, detected_at
                FROM {Tables.IDENTITY_DISCREPANCIES}
                ORDER BY detected_at
                LIMIT %s
                """,
                (limit,),
            )
        except DatabaseError as e:
            raise StorageError(f"list_identity_discrepancies failed: {e}", original_error=e)

    def list_unmapped_identities(self, limit: int = 1000) -> List[Dict[str, Any]]:
        """Known primary ids with no mapping row."""
        try:
            return query_all(
                f"""
                SELECT i.primary_id, i.email, i.created_at
                FROM {Tables.IDENTITIES} i
                LEFT JOIN {Tables.IDENTITY_MAPPINGS} m ON m.primary_id = i.primary_id
                WHERE m.primary_id IS NULL
                ORDER BY i.created_at
                LIMIT %s
                """,
                (limit,),
            )
        except DatabaseError as e:
            raise StorageError(f"list_unmapped_identities failed: {e}", original_error=e)
