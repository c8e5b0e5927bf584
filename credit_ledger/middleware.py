"""
Middleware for the points ledger routes.

Usage:
    from credit_ledger.middleware import require_identity, require_admin

    @bp.route("/balance")
    @require_identity
    def balance():
        # g.presented_identity is available
        ...

    @bp.route("/reconcile", methods=["POST"])
    @require_admin
    def reconcile():
        ...

The caller's identity arrives in the X-Identity-Id header and has already
been verified by the upstream auth layer.

Note: config and service imports are lazy (inside functions) to avoid
circular import issues.
"""

from functools import wraps
from flask import request, g, jsonify, make_response


IDENTITY_HEADER = "X-Identity-Id"
ADMIN_TOKEN_HEADER = "X-Admin-Token"

# LedgerError code -> HTTP status
ERROR_STATUS = {
    "IDENTITY_NOT_RESOLVED": 401,
    "INSUFFICIENT_BALANCE": 402,
    "TASK_NOT_FOUND": 404,
    "IDENTITY_CONFLICT": 409,
    "CONFIG_ERROR": 400,
    "STORAGE_ERROR": 503,
}


def error_response(code: str, message: str, status: int, **extra):
    body = {"code": code, "message": message}
    body.update(extra)
    return jsonify({"ok": False, "error": body}), status


def ledger_error_response(err):
    """JSON envelope for a LedgerError, using its code for the status."""
    status = ERROR_STATUS.get(err.code, 500)
    return jsonify({"ok": False, "error": err.to_dict()}), status


def no_cache(f):
    """
    Decorator that adds Cache-Control headers to prevent caching.
    Use for balance and history endpoints.
    """
    @wraps(f)
    def decorated(*args, **kwargs):
        response = make_response(f(*args, **kwargs))
        response.headers["Cache-Control"] = "no-store, no-cache, must-revalidate, max-age=0"
        response.headers["Pragma"] = "no-cache"
        response.headers["Expires"] = "0"
        return response
    return decorated


def require_identity(f):
    """
    Decorator that requires a presented identity.
    Returns 401 if the X-Identity-Id header is missing or blank.

    Sets on g:
        - g.presented_identity: the id as presented (not yet resolved)
    """
    @wraps(f)
    def decorated(*args, **kwargs):
        presented = (request.headers.get(IDENTITY_HEADER) or "").strip()
        if not presented:
            return error_response("IDENTITY_NOT_RESOLVED", "No identity presented", 401)
        g.presented_identity = presented
        return f(*args, **kwargs)
    return decorated


def require_admin(f):
    """
    Decorator that requires the X-Admin-Token header to match ADMIN_TOKEN.

    Returns 503 if admin auth is not configured, 401 if the header is
    missing, 403 if the token is wrong.
    """
    @wraps(f)
    def decorated(*args, **kwargs):
        from credit_ledger.config import config

        if not config.ADMIN_AUTH_CONFIGURED:
            return error_response("ADMIN_NOT_CONFIGURED", "Admin authentication is not configured", 503)

        admin_token = request.headers.get(ADMIN_TOKEN_HEADER)
        if not admin_token:
            return error_response("UNAUTHORIZED", "Admin token required", 401)
        if admin_token != config.ADMIN_TOKEN:
            return error_response("INVALID_ADMIN_TOKEN", "Invalid admin token", 403)

        g.admin_auth_method = "token"
        return f(*args, **kwargs)
    return decorated
