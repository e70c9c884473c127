"""
Routes package for the Animify backend.
Contains Flask Blueprints for the /api namespaces.
"""

__all__ = [
    "register_blueprints",
]


def _print_route_map(app):
    """Print all registered /api/* routes at startup."""
    api_routes = []
    for rule in app.url_map.iter_rules():
        if rule.rule.startswith("/api"):
            methods = ",".join(sorted(m for m in rule.methods if m not in ("HEAD", "OPTIONS")))
            api_routes.append(f"  {methods:8s} {rule.rule}")

    api_routes.sort(key=lambda x: x.split()[-1])

    print("[ROUTES] Registered API endpoints:")
    for route in api_routes:
        print(route)
    print(f"[ROUTES] Total: {len(api_routes)} endpoints")


def register_blueprints(app):
    """Register all blueprints with the Flask app."""
    from animify.routes.health import bp as health_bp
    from animify.routes.jobs import bp as jobs_bp
    from animify.routes.process import bp as process_bp
    from animify.routes.payment import bp as payment_bp
    from animify.routes.unlock import bp as unlock_bp
    from animify.routes.migrate import bp as migrate_bp
    from animify.routes.auth import bp as auth_bp

    app.register_blueprint(health_bp, url_prefix="/api")
    app.register_blueprint(jobs_bp, url_prefix="/api/jobs")
    app.register_blueprint(process_bp, url_prefix="/api/process")
    app.register_blueprint(payment_bp, url_prefix="/api/payment")
    app.register_blueprint(unlock_bp, url_prefix="/api/unlock")
    app.register_blueprint(migrate_bp, url_prefix="/api/migrate")
    app.register_blueprint(auth_bp, url_prefix="/api/auth")

    if app.config.get("PRINT_ROUTES", True):
        _print_route_map(app)
