"""
Tests for identity resolution and linking.

Resolution order: mapping, then subscription hint, then the presented id.

Run locally:
    python -m pytest credit_ledger/tests/test_identity_service.py -v
"""

import pytest

from credit_ledger.errors import IdentityConflict, IdentityNotResolved, StorageError
from credit_ledger.services.identity_service import (
    IdentityResolver,
    SOURCE_MAPPING,
    SOURCE_SELF,
    SOURCE_SUBSCRIPTION_HINT,
)
from credit_ledger.services.memory_store import MemoryIdentityStore


class TestResolveIdentity:

    def test_unmapped_id_resolves_to_itself(self, resolver):
        assert resolver.resolve_with_source("user-1") == ("user-1", SOURCE_SELF)

    def test_mapping_wins(self, resolver, identity_store):
        identity_store.create_mapping("legacy-1", "canonical-1")
        assert resolver.resolve_with_source("legacy-1") == ("canonical-1", SOURCE_MAPPING)

    def test_hint_used_only_without_mapping(self, resolver, identity_store):
        identity_store.put_subscription("legacy-2", tier="pro", resolved_account_id="canonical-2")
        assert resolver.resolve_with_source("legacy-2") == ("canonical-2", SOURCE_SUBSCRIPTION_HINT)

    def test_latest_subscription_hint_is_used(self, resolver, identity_store):
        identity_store.put_subscription("legacy-2", resolved_account_id="old-canonical")
        identity_store.put_subscription("legacy-2", resolved_account_id="new-canonical")
        assert resolver.resolve_identity("legacy-2") == "new-canonical"

    def test_subscription_without_hint_falls_back_to_self(self, resolver, identity_store):
        identity_store.put_subscription("user-3", tier="pro")
        assert resolver.resolve_with_source("user-3") == ("user-3", SOURCE_SELF)

    def test_resolution_is_deterministic(self, resolver, identity_store):
        identity_store.create_mapping("legacy-1", "canonical-1")
        identity_store.put_subscription("legacy-1", resolved_account_id="canonical-1")
        results = {resolver.resolve_identity("legacy-1") for _ in range(5)}
        assert results == {"canonical-1"}

    def test_resolving_never_creates_mappings(self, resolver, identity_store):
        identity_store.put_subscription("legacy-2", resolved_account_id="canonical-2")
        resolver.resolve_identity("legacy-2")
        resolver.resolve_identity("user-9")
        assert identity_store.get_mapping("legacy-2") is None
        assert identity_store.get_mapping("user-9") is None

    @pytest.mark.parametrize("blank", [None, "", "   "])
    def test_blank_id_is_not_resolved(self, resolver, blank):
        with pytest.raises(IdentityNotResolved):
            resolver.resolve_identity(blank)

    def test_presented_id_is_stripped(self, resolver):
        assert resolver.resolve_identity("  user-1 ") == "user-1"


class TestDiscrepancies:

    def test_disagreement_is_recorded_once(self, resolver, identity_store):
        identity_store.create_mapping("legacy-1", "canonical-1")
        identity_store.put_subscription("legacy-1", resolved_account_id="canonical-OTHER")

        assert resolver.resolve_identity("legacy-1") == "canonical-1"
        assert resolver.resolve_identity("legacy-1") == "canonical-1"

        rows = identity_store.list_identity_discrepancies()
        assert len(rows) == 1
        assert rows[0]["presented_id"] == "legacy-1"
        assert rows[0]["mapped_id"] == "canonical-1"
        assert rows[0]["hinted_id"] == "canonical-OTHER"

    def test_agreement_records_nothing(self, resolver, identity_store):
        identity_store.create_mapping("legacy-1", "canonical-1")
        identity_store.put_subscription("legacy-1", resolved_account_id="canonical-1")
        resolver.resolve_identity("legacy-1")
        assert identity_store.list_identity_discrepancies() == []

    def test_failed_discrepancy_write_does_not_block_resolution(self):
        class FlakyStore(MemoryIdentityStore):
            def record_identity_discrepancy(self, *args):
                raise StorageError("down")

        store = FlakyStore()
        store.create_mapping("legacy-1", "canonical-1")
        store.put_subscription("legacy-1", resolved_account_id="canonical-OTHER")
        assert IdentityResolver(store).resolve_identity("legacy-1") == "canonical-1"


class TestLinkIdentity:

    def test_link_creates_mapping(self, resolver):
        assert resolver.link_identity("legacy-1", "canonical-1") is True
        assert resolver.resolve_identity("legacy-1") == "canonical-1"

    def test_relinking_same_pair_is_idempotent(self, resolver):
        resolver.link_identity("legacy-1", "canonical-1")
        assert resolver.link_identity("legacy-1", "canonical-1") is False

    def test_conflicting_link_is_refused(self, resolver, identity_store):
        resolver.link_identity("legacy-1", "canonical-1")

        with pytest.raises(IdentityConflict) as exc_info:
            resolver.link_identity("legacy-1", "canonical-2")

        assert exc_info.value.existing_secondary_id == "canonical-1"
        assert exc_info.value.requested_secondary_id == "canonical-2"
        assert identity_store.get_mapping("legacy-1") == "canonical-1"

    def test_blank_ids_rejected(self, resolver):
        with pytest.raises(IdentityNotResolved):
            resolver.link_identity("", "canonical-1")
        with pytest.raises(IdentityNotResolved):
            resolver.link_identity("legacy-1", " ")
