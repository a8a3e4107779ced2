"""
Billing entitlement and usage-enforcement service.
Application factory; fails fast on configuration errors.
"""

import logging
import sys
from typing import Any, Dict, Optional

import sentry_sdk
from flask import Flask
from sentry_sdk.integrations.flask import FlaskIntegration

from billing_engine.cli import register_cli
from billing_engine.config import ConfigurationError, Environment, get_config
from billing_engine.error_handlers import register_error_handlers
from billing_engine.extensions import db, init_extensions
from billing_engine.logging_config import setup_logging
from billing_engine.middleware.request_id import init_request_id_middleware
from billing_engine.routes import register_routes
from billing_engine.workers.celery_app import init_celery

logger = logging.getLogger(__name__)


def setup_sentry(app: Flask) -> None:
    """Initialize Sentry error tracking"""
    sentry_dsn = app.config.get("SENTRY_DSN")
    if not sentry_dsn:
        return

    sentry_sdk.init(
        dsn=sentry_dsn,
        integrations=[FlaskIntegration()],
        traces_sample_rate=0.1,
        environment=app.config["ENV"].value,
        release=app.config.get("APP_VERSION", "1.0.0"),
        send_default_pii=False,
    )
    logger.info("Sentry error tracking initialized")


def create_app(config_name: Optional[str] = None, config_overrides: Optional[Dict[str, Any]] = None) -> Flask:
    """
    Application factory.

    Args:
        config_name: Configuration name (development, testing, production, staging)
        config_overrides: Settings applied on top of the configuration class

    Raises:
        ConfigurationError: If configuration validation fails
    """
    app = Flask(__name__)

    try:
        config = get_config(config_name)
        app.config.from_object(config)
        app.config.update(config_overrides or {})
    except ConfigurationError as e:
        print(f"CRITICAL: Configuration error: {str(e)}", file=sys.stderr)
        raise

    init_request_id_middleware(app)
    setup_logging(app)
    setup_sentry(app)

    init_extensions(app)
    init_celery(app)

    register_error_handlers(app)
    register_routes(app)
    register_cli(app)

    if app.config["ENV"] == Environment.DEVELOPMENT:
        with app.app_context():
            db.create_all()

    logger.info(
        "Application initialized",
        extra={"environment": app.config["ENV"].value, "version": app.config.get("APP_VERSION")},
    )
    return app
