"""Flask entrypoint for the points ledger.

Builds the app, binds the services to it and registers all blueprints.
Run with `python -m credit_ledger.app` or `gunicorn 'credit_ledger.app:create_app()'`.
"""

from __future__ import annotations

import re

from flask import Flask, g
from flask_cors import CORS

from credit_ledger.config import config


def create_app(ledger_store=None, identity_store=None) -> Flask:
    """
    Args:
        ledger_store: Ledger store to bind (defaults to get_ledger_store())
        identity_store: Identity store to bind (defaults to get_identity_store())
    """
    app = Flask(__name__)

    if config.ALLOW_ALL_ORIGINS:
        origins = [re.compile(r".*")]
    else:
        origins = config.ALLOWED_ORIGINS

    CORS(
        app,
        resources={r"/api/*": {"origins": origins}},
        supports_credentials=True,
        allow_headers=["Content-Type", "Authorization", "X-Identity-Id", "X-Requested-With"],
        expose_headers=["Content-Type"],
        methods=["GET", "POST", "OPTIONS"],
    )

    @app.before_request
    def _identity_default():
        g.presented_identity = None

    # ─────────────────────────────────────────────────────────────
    # Storage & services
    # ─────────────────────────────────────────────────────────────
    from credit_ledger.db import USE_DB, init_db
    from credit_ledger.services import (
        get_ledger_store,
        get_identity_store,
        IdentityResolver,
        PointsService,
        ReconciliationService,
    )

    if ledger_store is None and USE_DB:
        try:
            init_db()
        except Exception as e:
            print(f"[APP] Warning: database initialization failed: {e}")

    ledger_store = ledger_store or get_ledger_store()
    identity_store = identity_store or get_identity_store()
    resolver = IdentityResolver(identity_store)
    app.extensions["credit_ledger"] = {
        "ledger": ledger_store,
        "identity_store": identity_store,
        "resolver": resolver,
        "points": PointsService(ledger_store, resolver),
        "reconciliation": ReconciliationService(ledger_store, identity_store),
    }

    from credit_ledger.routes import register_blueprints

    register_blueprints(app)

    return app


if __name__ == "__main__":
    config.log_summary()
    for warning in config.validate():
        print(f"[CONFIG] WARNING: {warning}")
    create_app().run(host=config.HOST, port=config.PORT)
