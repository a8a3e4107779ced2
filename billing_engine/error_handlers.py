# billing_engine/error_handlers.py
import logging
import traceback

from flask import jsonify, request

from billing_engine.config import ConfigurationError
from billing_engine.errors.domain import BillingError, LimitExceededError
from billing_engine.middleware.request_id import current_request_id

logger = logging.getLogger(__name__)


def _error_body(error, message, **extra):
    return {
        "error": error,
        "message": message,
        "path": request.path,
        "request_id": current_request_id(),
        **extra,
    }


def register_error_handlers(app):
    """Register all error handlers for the application"""

    @app.errorhandler(400)
    def bad_request(e):
        logger.warning(f"Bad request: {str(e)} - Path: {request.path}")
        return jsonify(_error_body(
            "bad_request",
            "The request could not be understood or was missing required parameters.",
        )), 400

    @app.errorhandler(401)
    def unauthorized(e):
        logger.warning(f"Unauthorized: {str(e)} - Path: {request.path}")
        return jsonify(_error_body(
            "unauthorized",
            "Authentication is required and has failed or has not been provided.",
        )), 401

    @app.errorhandler(403)
    def forbidden(e):
        logger.warning(f"Forbidden: {str(e)} - Path: {request.path}")
        return jsonify(_error_body(
            "forbidden",
            "You don't have permission to access this resource.",
        )), 403

    @app.errorhandler(404)
    def not_found(e):
        logger.info(f"Not found: {request.path}")
        return jsonify(_error_body(
            "not_found",
            "The requested resource was not found on the server.",
        )), 404

    @app.errorhandler(405)
    def method_not_allowed(e):
        logger.warning(f"Method not allowed: {request.method} {request.path}")
        return jsonify(_error_body(
            "method_not_allowed",
            f"The {request.method} method is not supported for this endpoint.",
        )), 405

    @app.errorhandler(500)
    def server_error(e):
        logger.error(f"Server error: {str(e)} - Path: {request.path}")
        if app.config.get("DEBUG", False):
            logger.error(f"Traceback: {traceback.format_exc()}")
        return jsonify(_error_body(
            "server_error",
            "An internal server error occurred. Please try again later.",
        )), 500

    @app.errorhandler(LimitExceededError)
    def handle_limit_exceeded(error):
        logger.info(
            "Entitlement denied",
            extra={"dimension": error.dimension, "limit": error.limit, "plan": error.plan},
        )
        message = f"{error.message}. Upgrade to {error.upgrade_to} for a higher limit." \
            if error.upgrade_to else f"{error.message}."
        body = _error_body(error.error_code, message, limit=error.limit,
                           dimension=error.dimension, plan=error.plan,
                           upgrade_to=error.upgrade_to)
        return jsonify(body), error.status_code

    @app.errorhandler(BillingError)
    def handle_billing_error(error):
        # Core failures carry a generic message; the request id is the support handle.
        log = logger.warning if error.status_code < 500 else logger.error
        log(
            f"{error.__class__.__name__}: {error.message}",
            extra={"error_code": error.error_code, "retryable": error.retryable,
                   "path": request.path},
        )
        if error.status_code < 500:
            message = error.message
        else:
            message = "The billing service is temporarily unavailable. Please retry."
        response = jsonify(_error_body(error.error_code, message, retryable=error.retryable))
        response.status_code = error.status_code
        if error.retryable:
            response.headers["Retry-After"] = "5"
        return response

    @app.errorhandler(ConfigurationError)
    def handle_configuration_error(error):
        logger.critical(f"Configuration error: {str(error)}")
        return jsonify(_error_body(
            "configuration_error",
            "The service is misconfigured. Contact support with the request id.",
        )), 500
