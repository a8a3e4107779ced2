# billing_engine/logging_config.py
import logging
import logging.config
import os
import time

from flask import g, has_app_context, request
from pythonjsonlogger import jsonlogger


JSON_LOG_FORMAT = (
    "%(asctime)s "
    "%(levelname)s "
    "%(name)s "
    "%(message)s "
    "%(request_id)s "
    "%(module)s "
    "%(funcName)s "
    "%(lineno)d"
)


class RequestIdFilter(logging.Filter):
    """
    Inject request_id into every log record if present.
    """

    def filter(self, record):
        record.request_id = g.get("request_id") if has_app_context() else None
        return True


def _logging_dict(level):
    return {
        "version": 1,
        "disable_existing_loggers": False,
        "filters": {
            "request_id": {
                "()": RequestIdFilter,
            },
        },
        "formatters": {
            "json": {
                "()": jsonlogger.JsonFormatter,
                "fmt": JSON_LOG_FORMAT,
            },
        },
        "handlers": {
            "default": {
                "class": "logging.StreamHandler",
                "formatter": "json",
                "filters": ["request_id"],
            },
        },
        "loggers": {
            "werkzeug": {"level": "WARNING"},
            "sqlalchemy.engine": {"level": "WARNING"},
            "urllib3": {"level": "WARNING"},
            "stripe": {"level": "WARNING"},
        },
        "root": {
            "level": level,
            "handlers": ["default"],
        },
    }


def setup_logging(app):
    """JSON logs for the app; per-request access lines when DEBUG or LOG_REQUESTS is on."""
    level = app.config.get("LOG_LEVEL", os.getenv("LOG_LEVEL", "INFO")).upper()
    logging.config.dictConfig(_logging_dict(level))

    access_log = logging.getLogger("billing_engine.access")
    enabled = app.config.get("DEBUG", False) or app.config.get("LOG_REQUESTS", False)
    if not enabled:
        return app

    @app.before_request
    def start_timer():
        g.request_started = time.perf_counter()

    @app.after_request
    def log_access(response):
        started = g.pop("request_started", None)
        if started is not None:
            access_log.info(
                f"{request.method} {request.path} {response.status_code}",
                extra={
                    "method": request.method,
                    "path": request.path,
                    "status_code": response.status_code,
                    "elapsed_ms": round((time.perf_counter() - started) * 1000, 2),
                    "remote_addr": request.remote_addr,
                },
            )
        return response

    return app


def configure_logging_for_non_flask():
    """Configure logging for worker processes and standalone scripts."""
    logging.config.dictConfig(_logging_dict(os.getenv("LOG_LEVEL", "INFO").upper()))
