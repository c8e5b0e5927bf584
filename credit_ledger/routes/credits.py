"""
/api/credits routes - balance, history and generation charges.

Handles:
- GET  /api/credits/balance       - Balance of the caller's canonical account
- GET  /api/credits/transactions  - Transaction history (limit/offset)
- GET  /api/credits/can-afford    - Whether the caller can pay for a generation
- POST /api/credits/deduct        - Charge a generation (idempotent on task_reference)

The caller is identified by X-Identity-Id; every handler resolves it to the
canonical account before touching the ledger.
"""

from flask import Blueprint, request, jsonify, g

from credit_ledger.errors import LedgerError
from credit_ledger.middleware import require_identity, no_cache, error_response, ledger_error_response
from credit_ledger.routes import get_services

bp = Blueprint("credits", __name__)


# ─────────────────────────────────────────────────────────────────────────────
# GET /api/credits/balance
# ─────────────────────────────────────────────────────────────────────────────

@bp.route("/balance", methods=["GET"])
@require_identity
@no_cache
def get_balance():
    """
    Response (200):
    {
        "ok": true,
        "account_id": "canonical-id",
        "balance": 795,
        "lifetime_earned": 800,
        "lifetime_spent": 5,
        "tier": "pro",
        "status": "active",
        "as_of_transaction_id": "42"
    }
    """
    try:
        balance = get_services()["points"].get_balance(g.presented_identity)
        return jsonify({"ok": True, **balance})
    except LedgerError as e:
        return ledger_error_response(e)
    except Exception as e:
        print(f"[CREDITS] Error fetching balance: {e}")
        return error_response("INTERNAL_ERROR", "Failed to fetch balance", 500)


# ─────────────────────────────────────────────────────────────────────────────
# GET /api/credits/transactions
# ─────────────────────────────────────────────────────────────────────────────

@bp.route("/transactions", methods=["GET"])
@require_identity
@no_cache
def get_transactions():
    try:
        limit = int(request.args.get("limit", 50))
        offset = int(request.args.get("offset", 0))
    except ValueError:
        return error_response("VALIDATION_ERROR", "limit and offset must be integers", 400)

    try:
        points = get_services()["points"]
        transactions = points.get_transaction_history(g.presented_identity, limit=limit, offset=offset)
        return jsonify({
            "ok": True,
            "transactions": transactions,
            "limit": limit,
            "offset": offset,
        })
    except LedgerError as e:
        return ledger_error_response(e)
    except Exception as e:
        print(f"[CREDITS] Error fetching transactions: {e}")
        return error_response("INTERNAL_ERROR", "Failed to fetch transactions", 500)


# ─────────────────────────────────────────────────────────────────────────────
# GET /api/credits/can-afford?generation_type=...
# ─────────────────────────────────────────────────────────────────────────────

@bp.route("/can-afford", methods=["GET"])
@require_identity
@no_cache
def can_afford():
    generation_type = (request.args.get("generation_type") or "").strip()
    if not generation_type:
        return error_response("VALIDATION_ERROR", "generation_type is required", 400)
    try:
        result = get_services()["points"].can_afford_generation(g.presented_identity, generation_type)
        return jsonify({"ok": True, "generation_type": generation_type, **result})
    except LedgerError as e:
        return ledger_error_response(e)
    except Exception as e:
        print(f"[CREDITS] Error checking affordability: {e}")
        return error_response("INTERNAL_ERROR", "Failed to check balance", 500)


# ─────────────────────────────────────────────────────────────────────────────
# POST /api/credits/deduct
# ─────────────────────────────────────────────────────────────────────────────

@bp.route("/deduct", methods=["POST"])
@require_identity
def deduct():
    """
    Charge one generation. Idempotent via (account, generation_deduction, task_reference).

    Request body:
    {
        "generation_type": "nanoBananaImage" | "sora2Video" | "sora2ProVideo",
        "task_reference": "unique-task-id"
    }

    Response (200 - charged or idempotent replay):
    {"ok": true, "balance": 795, "charged": 5, "already_applied": false, "transaction": {...}}

    Response (402):
    {"ok": false, "error": {"code": "INSUFFICIENT_BALANCE", "shortfall": 3, "balance": 2, "required": 5, ...}}

    Response (400): unknown generation type or missing fields
    Response (503): storage unavailable, retry with the same task_reference
    """
    data = request.get_json(silent=True) or {}
    generation_type = (data.get("generation_type") or "").strip()
    task_reference = (data.get("task_reference") or "").strip()

    if not generation_type:
        return error_response("VALIDATION_ERROR", "generation_type is required", 400)
    if not task_reference:
        return error_response("VALIDATION_ERROR", "task_reference is required for idempotency", 400)

    try:
        result = get_services()["points"].handle_generation_request({
            "presented_identity": g.presented_identity,
            "generation_type": generation_type,
            "task_reference": task_reference,
        })
    except LedgerError as e:
        return ledger_error_response(e)
    except ValueError as e:
        return error_response("VALIDATION_ERROR", str(e), 400)
    except Exception as e:
        print(f"[CREDITS] Error charging generation: {e}")
        return error_response("INTERNAL_ERROR", "Failed to charge generation", 500)

    return jsonify({
        "ok": True,
        "balance": result.balance,
        "charged": -result.transaction.amount,
        "already_applied": result.already_applied,
        "transaction": result.transaction.to_dict(),
    })
