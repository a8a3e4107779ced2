from billing_engine.config import ConfigurationError
from billing_engine.errors.domain import (
    BillingError,
    ConflictError,
    LimitExceededError,
    NotFoundError,
    ProviderUnavailableError,
    TransientStoreError,
    ValidationError,
)

__all__ = [
    "BillingError",
    "ConfigurationError",
    "ConflictError",
    "LimitExceededError",
    "NotFoundError",
    "ProviderUnavailableError",
    "TransientStoreError",
    "ValidationError",
]
