"""
Routes package for the points ledger.
Contains Flask Blueprints for the public credits API and the internal
event/admin surface.
"""

from flask import current_app

__all__ = [
    "register_blueprints",
    "get_services",
]


def get_services() -> dict:
    """Service instances bound to the running app by create_app()."""
    return current_app.extensions["credit_ledger"]


def _print_route_map(app):
    """Print all registered routes at startup."""
    routes = []
    for rule in app.url_map.iter_rules():
        if rule.rule.startswith(("/api", "/internal")):
            methods = ",".join(sorted(m for m in rule.methods if m not in ("HEAD", "OPTIONS")))
            routes.append(f"  {methods:8s} {rule.rule}")

    routes.sort(key=lambda x: x.split()[-1])

    print("[ROUTES] Registered endpoints:")
    for route in routes:
        print(route)
    print(f"[ROUTES] Total: {len(routes)} endpoints")


def register_blueprints(app):
    """Register all blueprints with the Flask app."""
    from credit_ledger.routes.health import bp as health_bp
    from credit_ledger.routes.credits import bp as credits_bp
    from credit_ledger.routes.internal import bp as internal_bp

    app.register_blueprint(health_bp, url_prefix="/api")
    app.register_blueprint(credits_bp, url_prefix="/api/credits")
    app.register_blueprint(internal_bp, url_prefix="/internal")

    _print_route_map(app)
