"""
/internal routes - inbound events and operator actions. All require X-Admin-Token.

Handles:
- POST /internal/events/subscription          - Subscription activation/renewal
- POST /internal/events/purchase              - Points pack purchase confirmation
- POST /internal/events/signup                - Signup bonus
- POST /internal/events/generation-complete   - Generation finished (refund on failure)
- POST /internal/accounts/adjust              - Manual credit
- POST /internal/accounts/refund              - Manual refund
- POST /internal/reconcile?mode=dry_run|apply - Reconciliation run
- POST /internal/identities/link              - Create a primary -> secondary mapping
- GET  /internal/identities/resolve?id=...    - Show how an id resolves

Event senders deliver at least once. Redelivery returns 200 with
already_applied=true and changes nothing.
"""

from flask import Blueprint, request, jsonify

from credit_ledger.errors import LedgerError
from credit_ledger.middleware import require_admin, error_response, ledger_error_response
from credit_ledger.routes import get_services
from credit_ledger.services.reconciliation_service import MODES, MODE_DRY_RUN

bp = Blueprint("internal", __name__)


def _run(handler, label: str):
    """Call handler() and map ledger/validation errors to JSON responses."""
    try:
        return jsonify({"ok": True, **handler()})
    except LedgerError as e:
        return ledger_error_response(e)
    except ValueError as e:
        return error_response("VALIDATION_ERROR", str(e), 400)
    except Exception as e:
        print(f"[ROUTES] Error in {label}: {e}")
        return error_response("INTERNAL_ERROR", f"{label} failed", 500)


# ─────────────────────────────────────────────────────────────────────────────
# Inbound events
# ─────────────────────────────────────────────────────────────────────────────

@bp.route("/events/subscription", methods=["POST"])
@require_admin
def subscription_event():
    """
    Request body:
    {
        "event_id": "evt-123",
        "account_hint": "user id as known to billing",
        "tier": "pro",
        "billing_cycle_id": "sub_1:2026-10",
        "allocation": 800,        // optional, defaults to the tier allocation
        "status": "active"        // optional
    }
    """
    event = request.get_json(silent=True) or {}
    print(f"[ROUTES] Subscription event {event.get('event_id')} tier={event.get('tier')}")
    return _run(lambda: get_services()["points"].handle_subscription_event(event), "subscription_event")


@bp.route("/events/purchase", methods=["POST"])
@require_admin
def purchase_event():
    """Request body: {"payment_reference": "...", "account_hint": "...", "pack_id": "pack_200"}"""
    event = request.get_json(silent=True) or {}
    return _run(lambda: get_services()["points"].handle_purchase_event(event), "purchase_event")


@bp.route("/events/signup", methods=["POST"])
@require_admin
def signup_event():
    """Request body: {"account_hint": "..."}"""
    data = request.get_json(silent=True) or {}

    def handler():
        result = get_services()["points"].grant_signup_bonus(data.get("account_hint"))
        if result is None:
            return {"granted": False, "reason": "signup_bonus_disabled"}
        return {"granted": not result.already_applied, **result.to_dict()}

    return _run(handler, "signup_event")


@bp.route("/events/generation-complete", methods=["POST"])
@require_admin
def generation_complete_event():
    """Request body: {"task_reference": "...", "status": "succeeded" | "failed"}"""
    event = request.get_json(silent=True) or {}
    return _run(lambda: get_services()["points"].handle_generation_complete(event), "generation_complete")


# ─────────────────────────────────────────────────────────────────────────────
# Manual adjustments
# ─────────────────────────────────────────────────────────────────────────────

def _parse_adjustment(data: dict):
    try:
        amount = int(data.get("amount"))
    except (TypeError, ValueError):
        raise ValueError("amount must be an integer")
    reference = (data.get("reference") or "").strip()
    if not reference:
        raise ValueError("reference is required for idempotency")
    return amount, reference, data.get("reason") or "manual"


@bp.route("/accounts/adjust", methods=["POST"])
@require_admin
def adjust_account():
    """Request body: {"account_hint": "...", "amount": 50, "reference": "ticket-991", "reason": "..."}"""
    data = request.get_json(silent=True) or {}

    def handler():
        amount, reference, reason = _parse_adjustment(data)
        return get_services()["points"].admin_adjust(data.get("account_hint"), amount, reference, reason).to_dict()

    return _run(handler, "adjust_account")


@bp.route("/accounts/refund", methods=["POST"])
@require_admin
def refund_account():
    data = request.get_json(silent=True) or {}

    def handler():
        amount, reference, reason = _parse_adjustment(data)
        return get_services()["points"].refund_points(data.get("account_hint"), amount, reference, reason).to_dict()

    return _run(handler, "refund_account")


# ─────────────────────────────────────────────────────────────────────────────
# Reconciliation
# ─────────────────────────────────────────────────────────────────────────────

@bp.route("/reconcile", methods=["POST"])
@require_admin
def reconcile():
    """
    Query params:
        mode: dry_run (default) | apply
        account_id: optional, restrict to one account
    """
    mode = request.args.get("mode", MODE_DRY_RUN)
    if mode not in MODES:
        return error_response("VALIDATION_ERROR", f"mode must be one of {', '.join(MODES)}", 400)
    account_id = (request.args.get("account_id") or "").strip() or None

    def handler():
        reconciliation = get_services()["reconciliation"]
        if account_id:
            report = reconciliation.reconcile_account(account_id, mode=mode)
        else:
            report = reconciliation.run_reconciliation(mode=mode)
        return {"report": report.to_dict()}

    return _run(handler, "reconcile")


# ─────────────────────────────────────────────────────────────────────────────
# Identities
# ─────────────────────────────────────────────────────────────────────────────

@bp.route("/identities/link", methods=["POST"])
@require_admin
def link_identity():
    """
    Request body: {"primary_id": "legacy-id", "secondary_id": "canonical-id"}

    Response (200): {"ok": true, "created": true}
    Response (409): primary_id already linked to another account
    """
    data = request.get_json(silent=True) or {}

    def handler():
        created = get_services()["resolver"].link_identity(data.get("primary_id"), data.get("secondary_id"))
        return {"created": created}

    return _run(handler, "link_identity")


@bp.route("/identities/resolve", methods=["GET"])
@require_admin
def resolve_identity():
    presented = request.args.get("id")

    def handler():
        account_id, source = get_services()["resolver"].resolve_with_source(presented)
        return {"presented_id": presented, "account_id": account_id, "source": source}

    return _run(handler, "resolve_identity")
