"""
Configuration management for the billing engine.
Fails fast in production with clear error messages; development and testing
get safe fallbacks.
"""

import logging
import os
import warnings
from datetime import timedelta
from enum import Enum
from typing import Any, Dict, Optional
from urllib.parse import urlparse

from dotenv import load_dotenv

load_dotenv()

logger = logging.getLogger(__name__)


class Environment(str, Enum):
    """Environment types"""
    DEVELOPMENT = "development"
    PRODUCTION = "production"
    TESTING = "testing"
    STAGING = "staging"


class ConfigurationError(Exception):
    """Raised when configuration validation fails"""
    pass


def _env_bool(name: str, default: str = "False") -> bool:
    return os.getenv(name, default).lower() == "true"


class BaseConfig:
    """
    Configuration shared by all environments.

    Secrets are lazy-loaded properties so that production validation runs
    when Flask reads the config, not at import time.
    """

    # ============================================
    # APPLICATION META
    # ============================================
    APP_NAME = os.getenv("APP_NAME", "Billing Engine")
    APP_VERSION = os.getenv("APP_VERSION", "1.0.0")

    ENV = Environment.DEVELOPMENT
    DEBUG = False
    TESTING = False
    PROPAGATE_EXCEPTIONS = False

    # ============================================
    # SECURITY KEYS
    # ============================================
    @property
    def SECRET_KEY(self):
        key = os.getenv("SECRET_KEY")
        if not key:
            if self.ENV == Environment.PRODUCTION:
                raise ConfigurationError("SECRET_KEY is required in production")
            warnings.warn("SECRET_KEY not set, using development fallback")
            return "dev-secret-key-change-immediately-in-production"
        return key

    @property
    def JWT_SECRET_KEY(self):
        return os.getenv("JWT_SECRET_KEY") or self.SECRET_KEY

    JWT_TOKEN_LOCATION = ["headers"]
    JWT_HEADER_NAME = "Authorization"
    JWT_HEADER_TYPE = "Bearer"
    JWT_ALGORITHM = "HS256"
    JWT_ACCESS_TOKEN_EXPIRES = timedelta(minutes=15)
    JWT_ERROR_MESSAGE_KEY = "error"

    # ============================================
    # DATABASE
    # ============================================
    @property
    def SQLALCHEMY_DATABASE_URI(self):
        uri = os.getenv("DATABASE_URL")

        if not uri:
            if self.ENV == Environment.PRODUCTION:
                raise ConfigurationError("DATABASE_URL is required in production")
            uri = "sqlite:///billing_engine.db"

        parsed = urlparse(uri)
        if self.ENV == Environment.PRODUCTION and parsed.scheme == "sqlite":
            raise ConfigurationError("SQLite is not allowed in production. Use PostgreSQL.")

        # Heroku-style URLs
        if uri.startswith("postgres://"):
            uri = uri.replace("postgres://", "postgresql://", 1)
        return uri

    SQLALCHEMY_TRACK_MODIFICATIONS = False

    DATABASE_POOL_SIZE = int(os.getenv("DATABASE_POOL_SIZE", "10"))
    DATABASE_MAX_OVERFLOW = int(os.getenv("DATABASE_MAX_OVERFLOW", "20"))
    DATABASE_POOL_TIMEOUT = int(os.getenv("DATABASE_POOL_TIMEOUT", "30"))
    DATABASE_POOL_RECYCLE = int(os.getenv("DATABASE_POOL_RECYCLE", "3600"))
    DATABASE_STATEMENT_TIMEOUT_MS = int(os.getenv("DATABASE_STATEMENT_TIMEOUT_MS", "5000"))

    @property
    def SQLALCHEMY_ENGINE_OPTIONS(self):
        """Bounded pool and statement timeouts; no store call may block indefinitely."""
        uri = self.SQLALCHEMY_DATABASE_URI
        if uri.startswith("sqlite"):
            return {"connect_args": {"timeout": self.DATABASE_POOL_TIMEOUT}}

        options = {
            "pool_size": self.DATABASE_POOL_SIZE,
            "max_overflow": self.DATABASE_MAX_OVERFLOW,
            "pool_recycle": self.DATABASE_POOL_RECYCLE,
            "pool_timeout": self.DATABASE_POOL_TIMEOUT,
            "pool_pre_ping": True,
            "echo": _env_bool("SQLALCHEMY_ECHO"),
        }
        if uri.startswith("postgresql"):
            options["connect_args"] = {
                "connect_timeout": self.DATABASE_POOL_TIMEOUT,
                "options": f"-c statement_timeout={self.DATABASE_STATEMENT_TIMEOUT_MS}",
            }
        return options

    # ============================================
    # STRIPE
    # ============================================
    @property
    def STRIPE_SECRET_KEY(self):
        key = os.getenv("STRIPE_SECRET_KEY")

        if not key:
            if self.ENV == Environment.PRODUCTION:
                raise ConfigurationError("STRIPE_SECRET_KEY is required in production")
            return ""

        if self.ENV == Environment.PRODUCTION and key.startswith("sk_test"):
            raise ConfigurationError("Stripe test key detected in production!")
        return key

    @property
    def STRIPE_WEBHOOK_SECRET(self):
        secret = os.getenv("STRIPE_WEBHOOK_SECRET")
        if not secret and self.ENV == Environment.PRODUCTION:
            raise ConfigurationError("STRIPE_WEBHOOK_SECRET is required in production")
        return secret or ""

    STRIPE_WEBHOOK_TOLERANCE = int(os.getenv("STRIPE_WEBHOOK_TOLERANCE", "300"))
    STRIPE_TIMEOUT_SECONDS = int(os.getenv("STRIPE_TIMEOUT_SECONDS", "10"))
    STRIPE_MAX_NETWORK_RETRIES = int(os.getenv("STRIPE_MAX_NETWORK_RETRIES", "2"))

    STRIPE_PRICE_PRO_MONTHLY = os.getenv("STRIPE_PRICE_PRO_MONTHLY", "price_pro_monthly")
    STRIPE_PRICE_PRO_YEARLY = os.getenv("STRIPE_PRICE_PRO_YEARLY", "price_pro_yearly")
    STRIPE_PRICE_ENTERPRISE = os.getenv("STRIPE_PRICE_ENTERPRISE", "price_enterprise")

    # ============================================
    # API KEYS
    # ============================================
    API_KEY_PREFIX = os.getenv("API_KEY_PREFIX", "bek_live")
    API_KEY_DEFAULT_SCOPES = ["read", "write"]

    # ============================================
    # CELERY / REDIS
    # ============================================
    @property
    def REDIS_URL(self):
        url = os.getenv("REDIS_URL")
        if not url:
            if self.ENV == Environment.PRODUCTION:
                raise ConfigurationError("REDIS_URL is required in production")
            return "redis://localhost:6379/0"
        return url

    @property
    def CELERY(self):
        return {
            "broker_url": os.getenv("CELERY_BROKER_URL", self.REDIS_URL),
            "result_backend": os.getenv("CELERY_RESULT_BACKEND", self.REDIS_URL),
            "task_ignore_result": True,
        }

    USAGE_ROLLOVER_PAGE_SIZE = int(os.getenv("USAGE_ROLLOVER_PAGE_SIZE", "100"))

    # ============================================
    # LOGGING & MONITORING
    # ============================================
    LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
    LOG_REQUESTS = _env_bool("LOG_REQUESTS")
    SENTRY_DSN = os.getenv("SENTRY_DSN")

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__} ENV={self.ENV.value}>"


class DevelopmentConfig(BaseConfig):
    """Development configuration with relaxed settings"""

    ENV = Environment.DEVELOPMENT
    DEBUG = True
    PROPAGATE_EXCEPTIONS = True
    LOG_REQUESTS = True


class TestingConfig(BaseConfig):
    """Testing configuration"""

    ENV = Environment.TESTING
    DEBUG = False
    TESTING = True

    SECRET_KEY = "testing-secret-key"
    JWT_SECRET_KEY = "testing-jwt-secret-key-with-enough-length"
    SQLALCHEMY_DATABASE_URI = "sqlite:///:memory:"
    SQLALCHEMY_ENGINE_OPTIONS: Dict[str, Any] = {}
    STRIPE_SECRET_KEY = ""
    STRIPE_WEBHOOK_SECRET = ""
    REDIS_URL = "memory://"
    CELERY = {
        "broker_url": "memory://",
        "result_backend": "cache+memory://",
        "task_always_eager": True,
        "task_ignore_result": True,
    }
    SENTRY_DSN = None


class ProductionConfig(BaseConfig):
    """Production configuration with maximum security"""

    ENV = Environment.PRODUCTION
    DEBUG = False
    PROPAGATE_EXCEPTIONS = False

    def __init__(self):
        # Touch required secrets so a misconfigured deploy fails on boot.
        for name in ("SECRET_KEY", "SQLALCHEMY_DATABASE_URI", "STRIPE_SECRET_KEY",
                     "STRIPE_WEBHOOK_SECRET", "REDIS_URL"):
            getattr(self, name)
        if os.getenv("FLASK_DEBUG", "False").lower() == "true":
            warnings.warn("DEBUG mode is enabled in production! This is a security risk.")
        logger.info("Production configuration loaded")


_CONFIG_MAP = {
    Environment.DEVELOPMENT.value: DevelopmentConfig,
    Environment.TESTING.value: TestingConfig,
    Environment.PRODUCTION.value: ProductionConfig,
    Environment.STAGING.value: ProductionConfig,
}


def get_config(env: Optional[str] = None) -> BaseConfig:
    """Resolve the configuration object for ``env`` (defaults to APP_ENV)."""
    if env is None:
        env = os.getenv("APP_ENV", os.getenv("FLASK_ENV", "development"))

    config_class = _CONFIG_MAP.get(env.lower())
    if not config_class:
        raise ConfigurationError(
            f"Unknown environment: {env}. Must be one of: {', '.join(sorted(_CONFIG_MAP))}"
        )
    return config_class()
