"""Flask entrypoint for the Animify backend.

Builds the app, registers blueprints and error handlers, and verifies the
database at startup. Run with gunicorn (``gunicorn animify.app:app``) or
``python -m animify.app`` locally.
"""

from __future__ import annotations

import re

from flask import Flask, g
from flask_cors import CORS

from animify.config import config
from animify.db import DatabaseError, init_db
from animify.utils.error_handlers import register_error_handlers


def create_app(init_database: bool = True, print_routes: bool = True) -> Flask:
    app = Flask(__name__)
    # Multipart overhead on top of the largest accepted image
    app.config["MAX_CONTENT_LENGTH"] = config.MAX_UPLOAD_BYTES + 1024 * 1024
    app.config["PRINT_ROUTES"] = print_routes

    if config.ALLOW_ALL_ORIGINS:
        origins = [re.compile(r".*")]
    else:
        origins = config.ALLOWED_ORIGINS

    CORS(
        app,
        resources={r"/api/*": {"origins": origins}},
        supports_credentials=True,
        allow_headers=["Content-Type", "Authorization", "Stripe-Signature", "X-Requested-With"],
        expose_headers=["Content-Type"],
        methods=["GET", "POST", "OPTIONS"],
    )

    @app.before_request
    def _identity_default():
        g.identity_id = None
        g.session_id = None

    from animify.routes import register_blueprints

    register_blueprints(app)
    register_error_handlers(app)

    if init_database:
        config.log_summary()
        for warning in config.validate():
            print(f"[CONFIG] WARNING: {warning}")
        try:
            init_db()
        except DatabaseError as e:
            print(f"[APP] WARNING: database unavailable at startup: {e}")

    return app


app = create_app()


if __name__ == "__main__":
    app.run(host=config.HOST, port=config.PORT, debug=config.IS_DEV)
