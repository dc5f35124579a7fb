# backend/taja/__init__.py
from flask import Flask

from .config import Config
from .extensions import db, migrate


def create_app(config_overrides: dict | None = None, *, gateway=None, notifier=None) -> Flask:
    app = Flask(__name__, instance_relative_config=True)
    app.config.from_object(Config)
    if config_overrides:
        app.config.update(config_overrides)

    # Initialize extensions
    db.init_app(app)
    migrate.init_app(app, db)

    # Import models so Alembic can discover metadata reliably
    from . import models  # noqa: F401

    # Service graph
    from .integrations.payments.factory import build_payments_gateway
    from .services.order_flow import EXTENSION_KEY, build_order_flow

    if gateway is None:
        gateway = build_payments_gateway(app.config)
    app.extensions[EXTENSION_KEY] = build_order_flow(
        gateway,
        notifier,
        currency=app.config.get("CURRENCY", "NGN"),
    )

    # Register blueprints
    from .routes.system import system_bp
    from .routes.webhooks import webhooks_bp

    app.register_blueprint(system_bp)
    app.register_blueprint(webhooks_bp)

    # Register CLI commands
    from .cli import register_commands
    register_commands(app)

    return app
