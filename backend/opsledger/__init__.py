# backend/opsledger/__init__.py
from __future__ import annotations

import logging

from flask import Flask, jsonify, request

from .config import Config
from .errors import OperationsError
from .extensions import db, migrate


def create_app(test_config: dict | None = None) -> Flask:
    app = Flask(__name__, instance_relative_config=True)
    app.config.from_object(Config)
    if test_config:
        app.config.update(test_config)

    app.logger.setLevel(getattr(logging, str(app.config.get("LOG_LEVEL", "INFO")).upper(), logging.INFO))

    # Initialize extensions
    db.init_app(app)
    migrate.init_app(app, db)

    # Import models so Alembic can discover metadata reliably
    from . import models  # noqa: F401

    from .immutability import register_immutability_listeners
    register_immutability_listeners()

    # Register blueprints
    from .routes.system import system_bp
    from .routes.lots import lots_bp
    from .routes.waste_transfer import waste_transfer_bp
    from .routes.production import production_bp
    from .routes.processed_goods import processed_goods_bp

    app.register_blueprint(system_bp)
    app.register_blueprint(lots_bp)
    app.register_blueprint(waste_transfer_bp)
    app.register_blueprint(production_bp)
    app.register_blueprint(processed_goods_bp)

    @app.errorhandler(OperationsError)
    def handle_operations_error(exc: OperationsError):
        db.session.rollback()
        if exc.status_code >= 500:
            app.logger.error("%s: %s", type(exc).__name__, exc.message)
        return jsonify(exc.to_dict()), exc.status_code

    @app.after_request
    def add_cors_headers(response):
        origin = request.headers.get("Origin")
        allowed_origins = set(app.config.get("CORS_ALLOWED_ORIGINS", ()))
        if origin in allowed_origins:
            response.headers["Access-Control-Allow-Origin"] = origin
            response.headers["Vary"] = "Origin"
            response.headers["Access-Control-Allow-Headers"] = "Authorization, Content-Type"
            response.headers["Access-Control-Allow-Methods"] = "GET,POST,PUT,DELETE,PATCH,OPTIONS"
        return response

    # Register CLI commands
    from .cli import register_commands
    register_commands(app)

    return app
