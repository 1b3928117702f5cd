# backend/possettle/__init__.py
from flask import Flask

from .config import Config
from .extensions import db, migrate



def create_app(overrides: dict | None = None) -> Flask:
    app = Flask(__name__, instance_relative_config=True)
    app.config.from_object(Config)
    if overrides:
        app.config.update(overrides)

    # Initialize extensions
    db.init_app(app)
    migrate.init_app(app, db)

    # Import models so Alembic can discover metadata reliably
    from . import models  # noqa: F401

    # Verification gateway + coordinator (tests may swap the gateway after creation)
    from .services.verification_gateway import build_gateway
    from .services.coordinator_service import SettlementCoordinator

    app.extensions["settlement_coordinator"] = SettlementCoordinator(
        gateway=build_gateway(app.config),
        timeout_seconds=float(app.config["VERIFICATION_TIMEOUT_SECONDS"]),
    )

    # Register blueprints
    from .routes.system import system_bp
    from .routes.cash_sessions import cash_sessions_bp
    from .routes.settlements import settlements_bp
    from .routes.reports import reports_bp

    app.register_blueprint(system_bp)
    app.register_blueprint(cash_sessions_bp)
    app.register_blueprint(settlements_bp)
    app.register_blueprint(reports_bp)

    # Register CLI commands
    from .cli import register_commands
    register_commands(app)

    return app
