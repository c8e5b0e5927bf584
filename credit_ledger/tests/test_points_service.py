"""
Tests for PointsService: identity-aware grants, deductions and inbound events.

Run locally:
    python -m pytest credit_ledger/tests/test_points_service.py -v
"""

import pytest

from credit_ledger.errors import ConfigError, InsufficientBalance, StorageError, TaskNotFound
from credit_ledger.models import TaskStatus, TransactionType
from credit_ledger.services.memory_store import MemoryLedgerStore
from credit_ledger.services.points_service import PointsService


class TestEndToEnd:

    def test_grant_deduct_redeliver(self, points):
        """+800 evt-123 -> 800; gen-1 (5) -> 795; redelivered evt-123 -> still 795."""
        first = points.add_points("user-1", 800, TransactionType.SUBSCRIPTION_GRANT, "evt-123")
        assert first.balance == 800

        charge = points.deduct_points("user-1", "nanoBananaImage", "gen-1")
        assert charge.balance == 795

        redelivered = points.add_points("user-1", 800, TransactionType.SUBSCRIPTION_GRANT, "evt-123")
        assert redelivered.already_applied is True
        assert redelivered.balance == 795
        assert points.get_balance("user-1")["balance"] == 795

    def test_legacy_id_operates_on_canonical_account(self, points, identity_store, ledger):
        identity_store.create_mapping("legacy-1", "canonical-1")

        points.add_points("legacy-1", 100, TransactionType.PURCHASE, "pay-1")
        points.deduct_points("canonical-1", "sora2Video", "gen-1")

        assert ledger.get_account("legacy-1") is None
        assert points.get_balance("legacy-1")["balance"] == 80
        assert points.get_balance("canonical-1")["account_id"] == "canonical-1"


class TestGetBalance:

    def test_unknown_account_reads_as_empty(self, points, ledger):
        balance = points.get_balance("nobody")
        assert balance["balance"] == 0
        assert balance["tier"] == "free"
        assert balance["as_of_transaction_id"] is None
        assert ledger.get_account("nobody") is None

    def test_as_of_tracks_last_transaction(self, points):
        points.add_points("user-1", 100, TransactionType.PURCHASE, "pay-1")
        charge = points.deduct_points("user-1", "nanoBananaImage", "gen-1")

        balance = points.get_balance("user-1")
        assert balance["as_of_transaction_id"] == str(charge.transaction.id)
        assert balance["lifetime_earned"] == 100
        assert balance["lifetime_spent"] == 5


class TestDeductPoints:

    def test_unknown_generation_type_touches_nothing(self, points, ledger):
        with pytest.raises(ConfigError):
            points.deduct_points("user-1", "unknownModel", "gen-1")
        assert ledger.get_account("user-1") is None

    def test_insufficient_balance_reports_shortfall(self, points):
        points.add_points("user-1", 15, TransactionType.PURCHASE, "pay-1")
        with pytest.raises(InsufficientBalance) as exc_info:
            points.deduct_points("user-1", "sora2Video", "gen-1")
        assert exc_info.value.shortfall == 5
        assert points.get_balance("user-1")["balance"] == 15

    def test_deduction_metadata_carries_generation_type(self, points):
        points.add_points("user-1", 100, TransactionType.PURCHASE, "pay-1")
        result = points.deduct_points("user-1", "sora2ProVideo", "gen-1", metadata={"prompt_id": "p-7"})
        assert result.transaction.metadata["generation_type"] == "sora2ProVideo"
        assert result.transaction.metadata["cost"] == 80
        assert result.transaction.metadata["prompt_id"] == "p-7"

    def test_reference_required(self, points):
        with pytest.raises(ValueError):
            points.deduct_points("user-1", "nanoBananaImage", "")

    def test_storage_error_propagates(self, resolver):
        class DownLedger(MemoryLedgerStore):
            def deduct_points(self, *args, **kwargs):
                raise StorageError("connection refused")

        service = PointsService(DownLedger(), resolver)
        with pytest.raises(StorageError):
            service.deduct_points("user-1", "nanoBananaImage", "gen-1")

    def test_can_afford_generation(self, points):
        points.add_points("user-1", 10, TransactionType.PURCHASE, "pay-1")
        assert points.can_afford_generation("user-1", "nanoBananaImage")["can_afford"] is True
        check = points.can_afford_generation("user-1", "sora2Video")
        assert check == {"can_afford": False, "balance": 10, "cost": 20, "shortfall": 10}


class TestGrants:

    def test_signup_bonus_once(self, points):
        first = points.grant_signup_bonus("user-1")
        second = points.grant_signup_bonus("user-1")
        assert first.balance == 30
        assert second.already_applied is True
        assert points.get_balance("user-1")["balance"] == 30

    def test_signup_bonus_disabled(self, points, monkeypatch):
        from credit_ledger.config import config
        monkeypatch.setattr(config, "SIGNUP_BONUS_POINTS", 0)
        assert points.grant_signup_bonus("user-1") is None

    def test_purchase_pack_credits_bonus(self, points):
        result = points.purchase_points_pack("user-1", "pack_200", "pay-abc")
        assert result.balance == 220
        assert result.transaction.metadata["pack_id"] == "pack_200"

        replay = points.purchase_points_pack("user-1", "pack_200", "pay-abc")
        assert replay.already_applied is True
        assert replay.balance == 220

    def test_unknown_pack(self, points):
        with pytest.raises(ConfigError):
            points.purchase_points_pack("user-1", "pack_nope", "pay-abc")

    def test_admin_adjust_is_credit_only(self, points):
        assert points.admin_adjust("user-1", 50, "ticket-1", "goodwill").balance == 50
        with pytest.raises(ValueError):
            points.admin_adjust("user-1", -50, "ticket-2", "clawback")

    def test_refund(self, points):
        points.add_points("user-1", 20, TransactionType.PURCHASE, "pay-1")
        points.deduct_points("user-1", "sora2Video", "gen-1")
        assert points.refund_points("user-1", 20, "gen-1", "provider outage").balance == 20

    def test_history_limit_is_clamped(self, points):
        for n in range(3):
            points.add_points("user-1", 10, TransactionType.PURCHASE, f"pay-{n}")
        assert len(points.get_transaction_history("user-1", limit=0)) == 1
        assert len(points.get_transaction_history("user-1", limit=500)) == 3


class TestSubscriptionEvents:

    def _event(self, **overrides):
        event = {
            "event_id": "evt-123",
            "account_hint": "user-1",
            "tier": "pro",
            "billing_cycle_id": "sub_1:2026-10",
        }
        event.update(overrides)
        return event

    def test_grants_tier_allocation_and_sets_tier(self, points, ledger):
        response = points.handle_subscription_event(self._event())

        assert response["granted"] is True
        assert response["balance"] == 800
        account = ledger.get_account("user-1")
        assert account.tier == "pro"
        assert account.status == "active"

    def test_same_cycle_with_new_event_id_grants_once(self, points):
        points.handle_subscription_event(self._event())
        response = points.handle_subscription_event(self._event(event_id="evt-124"))

        assert response["granted"] is False
        assert response["already_applied"] is True
        assert points.get_balance("user-1")["balance"] == 800

    def test_out_of_order_cycles_each_grant_once(self, points):
        points.handle_subscription_event(self._event(event_id="e2", billing_cycle_id="sub_1:2026-11"))
        points.handle_subscription_event(self._event(event_id="e1", billing_cycle_id="sub_1:2026-10"))
        points.handle_subscription_event(self._event(event_id="e2", billing_cycle_id="sub_1:2026-11"))
        assert points.get_balance("user-1")["balance"] == 1600

    def test_explicit_allocation_overrides_tier(self, points):
        response = points.handle_subscription_event(self._event(allocation=400))
        assert response["balance"] == 400

    def test_event_id_used_when_cycle_missing(self, points, ledger):
        points.handle_subscription_event(self._event(billing_cycle_id=None))
        assert ledger.find_transaction("user-1", TransactionType.SUBSCRIPTION_GRANT, "evt-123") is not None

    def test_free_tier_updates_tier_without_grant(self, points, ledger):
        points.handle_subscription_event(self._event())
        response = points.handle_subscription_event(self._event(event_id="evt-200", tier="free", billing_cycle_id=None))

        assert response["granted"] is False
        assert ledger.get_account("user-1").tier == "free"
        assert points.get_balance("user-1")["balance"] == 800

    def test_cancelled_status_grants_nothing(self, points):
        response = points.handle_subscription_event(self._event(status="cancelled"))
        assert response["granted"] is False
        assert response["balance"] == 0

    def test_unknown_tier(self, points):
        with pytest.raises(ConfigError):
            points.handle_subscription_event(self._event(tier="platinum"))

    def test_hint_resolves_through_mapping(self, points, identity_store, ledger):
        identity_store.create_mapping("legacy-1", "canonical-1")
        points.handle_subscription_event(self._event(account_hint="legacy-1"))
        assert ledger.get_account("canonical-1").balance == 800


class TestGenerationEvents:

    def test_request_deducts_and_records_task(self, points, ledger):
        points.add_points("user-1", 100, TransactionType.PURCHASE, "pay-1")
        result = points.handle_generation_request({
            "presented_identity": "user-1",
            "generation_type": "sora2Video",
            "task_reference": "task-1",
        })

        assert result.balance == 80
        task = ledger.get_generation_task("task-1")
        assert task.account_id == "user-1"
        assert task.status == TaskStatus.PENDING

    def test_refused_request_records_no_task(self, points, ledger):
        with pytest.raises(InsufficientBalance):
            points.handle_generation_request({
                "presented_identity": "user-1",
                "generation_type": "sora2Video",
                "task_reference": "task-1",
            })
        assert ledger.get_generation_task("task-1") is None

    def test_failed_generation_refunds_once(self, points):
        points.add_points("user-1", 100, TransactionType.PURCHASE, "pay-1")
        points.handle_generation_request({
            "presented_identity": "user-1",
            "generation_type": "sora2ProVideo",
            "task_reference": "task-1",
        })

        first = points.handle_generation_complete({"task_reference": "task-1", "status": "failed"})
        second = points.handle_generation_complete({"task_reference": "task-1", "status": "failed"})

        assert first["refunded"] is True
        assert second["refunded"] is False
        assert points.get_balance("user-1")["balance"] == 100

    def test_succeeded_generation_keeps_charge(self, points, ledger):
        points.add_points("user-1", 100, TransactionType.PURCHASE, "pay-1")
        points.handle_generation_request({
            "presented_identity": "user-1",
            "generation_type": "nanoBananaImage",
            "task_reference": "task-1",
        })
        response = points.handle_generation_complete({"task_reference": "task-1", "status": "succeeded"})

        assert response["refunded"] is False
        assert ledger.get_generation_task("task-1").status == TaskStatus.SUCCEEDED
        assert points.get_balance("user-1")["balance"] == 95

    def test_unknown_task(self, points):
        with pytest.raises(TaskNotFound):
            points.handle_generation_complete({"task_reference": "ghost", "status": "failed"})

    def test_bad_status(self, points):
        with pytest.raises(ValueError):
            points.handle_generation_complete({"task_reference": "task-1", "status": "pending"})


class TestSingleResolution:
    """
    legacy-L maps to canon-C, and canon-C carries a stale subscription hint
    pointing at stale-D. Resolving canon-C a second time would land on stale-D.
    """

    @pytest.fixture
    def chained(self, identity_store, ledger):
        identity_store.create_mapping("legacy-L", "canon-C")
        identity_store.put_subscription("canon-C", tier="pro", resolved_account_id="stale-D")
        ledger.add_points("canon-C", 100, TransactionType.PURCHASE, "pay-1")

    def test_generation_request_charges_mapped_account(self, points, ledger, chained):
        result = points.handle_generation_request({
            "presented_identity": "legacy-L",
            "generation_type": "sora2Video",
            "task_reference": "task-1",
        })

        assert result.transaction.account_id == "canon-C"
        assert result.balance == 80
        assert ledger.get_account("stale-D") is None
        task = ledger.get_generation_task("task-1")
        assert task.account_id == "canon-C"
        assert task.presented_identity == "legacy-L"

    def test_failed_generation_refunds_mapped_account(self, points, ledger, chained):
        points.handle_generation_request({
            "presented_identity": "legacy-L",
            "generation_type": "sora2Video",
            "task_reference": "task-1",
        })

        response = points.handle_generation_complete({"task_reference": "task-1", "status": "failed"})

        assert response["refunded"] is True
        assert response["balance"] == 100
        assert ledger.get_account("canon-C").balance == 100
        assert ledger.find_transaction("canon-C", TransactionType.REFUND, "task-1") is not None
        assert ledger.get_account("stale-D") is None

    def test_subscription_event_grants_mapped_account(self, points, ledger, chained):
        response = points.handle_subscription_event({
            "event_id": "evt-1",
            "account_hint": "legacy-L",
            "tier": "pro",
            "billing_cycle_id": "sub_1:2026-10",
        })

        assert response["account_id"] == "canon-C"
        assert response["transaction"]["account_id"] == "canon-C"
        assert ledger.get_account("canon-C").balance == 900
        assert ledger.get_account("canon-C").tier == "pro"
        assert ledger.get_account("stale-D") is None
