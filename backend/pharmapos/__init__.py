# backend/pharmapos/__init__.py
import logging

from flask import Flask

from .config import Config
from .extensions import db, migrate


def create_app(config_object=Config, overrides: dict | None = None) -> Flask:
    app = Flask(__name__, instance_relative_config=True)
    app.config.from_object(config_object)
    if overrides:
        app.config.update(overrides)

    app.logger.setLevel(app.config.get("LOG_LEVEL", "INFO"))
    logging.getLogger("pharmapos").setLevel(app.config.get("LOG_LEVEL", "INFO"))

    # Initialize extensions
    db.init_app(app)
    migrate.init_app(app, db)

    # Import models so Alembic can discover metadata reliably
    from . import models  # noqa: F401

    # Register blueprints
    from .routes.system import system_bp
    from .routes.products import products_bp
    from .routes.prescriptions import prescriptions_bp
    from .routes.orders import orders_bp
    from .routes.cash_sessions import cash_sessions_bp
    from .routes.appointments import appointments_bp

    app.register_blueprint(system_bp)
    app.register_blueprint(products_bp)
    app.register_blueprint(prescriptions_bp)
    app.register_blueprint(orders_bp)
    app.register_blueprint(cash_sessions_bp)
    app.register_blueprint(appointments_bp)

    # QR provider client (tests replace app.extensions["qr_gateway"])
    from .services import qr_gateway
    qr_gateway.init_app(app)

    # Register CLI commands
    from .cli import register_commands
    register_commands(app)

    return app
