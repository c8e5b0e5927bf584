"""
Liveness and database checks.
"""

from flask import Blueprint, jsonify

from credit_ledger.config import config
from credit_ledger.db import USE_DB, get_conn

bp = Blueprint("health", __name__)


@bp.route("/health", methods=["GET"])
def health():
    return jsonify({"ok": True, "ledger_backend": config.LEDGER_BACKEND})


@bp.route("/db-check", methods=["GET"])
def db_check():
    """503 unless PostgreSQL is configured and answers a trivial query."""
    if not USE_DB:
        return jsonify({"ok": False, "error": "db_disabled", "ledger_backend": config.LEDGER_BACKEND}), 503
    try:
        with get_conn() as conn:
            conn.execute("SELECT 1").fetchone()
    except Exception as e:
        print(f"[DB] db-check failed: {e}")
        return jsonify({"ok": False, "error": "db_unreachable"}), 503
    return jsonify({"ok": True, "db": "connected"})
