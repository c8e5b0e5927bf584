"""
Identity Resolver - maps any presented user id to its canonical account id.

Two id namespaces coexist after the identity migration: legacy *primary* ids
and canonical *secondary* ids. Every ledger operation resolves first.

Resolution order (fixed):
    1. identity_mappings row      primary_id -> secondary_id
    2. subscription hint          metadata.resolved_account_id (only if no mapping)
    3. self                       the presented id is itself the account

When a mapping and a hint both exist and disagree, the mapping wins and the
disagreement is recorded in identity_discrepancies for reconciliation.
Resolving never creates a mapping; link_identity() is the only writer.

Usage:
    from credit_ledger.services.identity_service import IdentityResolver

    resolver = IdentityResolver()
    account_id = resolver.resolve_identity(request_user_id)
"""

from typing import Optional, Tuple

from credit_ledger.errors import IdentityNotResolved, IdentityConflict, StorageError


SOURCE_MAPPING = "mapping"
SOURCE_SUBSCRIPTION_HINT = "subscription_hint"
SOURCE_SELF = "self"


def _short(identity_id: str) -> str:
    return f"{identity_id[:8]}..." if len(identity_id) > 8 else identity_id


class IdentityResolver:
    """Single entry point for identity resolution."""

    def __init__(self, store=None):
        if store is None:
            from credit_ledger.services import get_identity_store
            store = get_identity_store()
        self.store = store

    def resolve_identity(self, presented_id: Optional[str]) -> str:
        """
        Canonical account id for presented_id.

        Raises:
            IdentityNotResolved: If presented_id is blank
            StorageError: If the identity store is unavailable
        """
        account_id, _ = self.resolve_with_source(presented_id)
        return account_id

    def resolve_with_source(self, presented_id: Optional[str]) -> Tuple[str, str]:
        """
        Returns:
            (account_id, source) where source is mapping, subscription_hint or self
        """
        presented_id = (presented_id or "").strip()
        if not presented_id:
            raise IdentityNotResolved(presented_id)

        mapped_id = self.store.get_mapping(presented_id)
        hinted_id = self.store.get_subscription_hint(presented_id)

        if mapped_id:
            if hinted_id and hinted_id != mapped_id:
                self._flag_discrepancy(presented_id, mapped_id, hinted_id)
            return mapped_id, SOURCE_MAPPING

        if hinted_id:
            return hinted_id, SOURCE_SUBSCRIPTION_HINT

        return presented_id, SOURCE_SELF

    def _flag_discrepancy(self, presented_id: str, mapped_id: str, hinted_id: str) -> None:
        # A failed write must not block resolution; the mapping is authoritative.
        try:
            created = self.store.record_identity_discrepancy(presented_id, mapped_id, hinted_id)
        except StorageError as e:
            print(f"[IDENTITY] WARNING: could not record discrepancy for {_short(presented_id)}: {e}")
            return
        if created:
            print(
                f"[IDENTITY] Discrepancy: presented={_short(presented_id)} "
                f"mapping={_short(mapped_id)} hint={_short(hinted_id)} (mapping wins)"
            )

    def link_identity(self, primary_id: str, secondary_id: str) -> bool:
        """
        Create the primary -> secondary mapping.

        Idempotent for the same pair. Never overwrites an existing mapping.

        Returns:
            True if a new mapping was written, False if it already existed

        Raises:
            IdentityNotResolved: If either id is blank
            IdentityConflict: If primary_id is already linked elsewhere
        """
        primary_id = (primary_id or "").strip()
        secondary_id = (secondary_id or "").strip()
        if not primary_id:
            raise IdentityNotResolved(primary_id)
        if not secondary_id:
            raise IdentityNotResolved(secondary_id)

        current, created = self.store.create_mapping(primary_id, secondary_id)
        if current != secondary_id:
            raise IdentityConflict(primary_id, current, secondary_id)

        if created:
            print(f"[IDENTITY] Linked {_short(primary_id)} -> {_short(secondary_id)}")
        return created
