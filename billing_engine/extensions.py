# billing_engine/extensions.py
"""
Flask extensions initialization module.
"""

import logging

from flask import jsonify
from flask_jwt_extended import JWTManager
from flask_sqlalchemy import SQLAlchemy

db = SQLAlchemy()
jwt = JWTManager()

logger = logging.getLogger(__name__)


def init_extensions(app):
    """Initialize all Flask extensions."""
    db.init_app(app)
    logger.info("SQLAlchemy initialized")

    jwt.init_app(app)
    setup_jwt_callbacks()
    logger.info("JWT Manager initialized")

    return app


def setup_jwt_callbacks():
    """JSON bodies for token failures so clients see the same shape as other errors."""
    @jwt.unauthorized_loader
    def missing_token_callback(reason):
        return jsonify({"error": "authorization_required", "message": reason}), 401

    @jwt.invalid_token_loader
    def invalid_token_callback(reason):
        return jsonify({"error": "invalid_token", "message": reason}), 401

    @jwt.expired_token_loader
    def expired_token_callback(jwt_header, jwt_payload):
        return jsonify({"error": "token_expired", "message": "The token has expired"}), 401
