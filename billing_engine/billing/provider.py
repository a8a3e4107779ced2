"""
Payment-provider client.

The reconciler only needs to read subscriptions back from Stripe, so the
dependency is a small protocol. ``StripeProviderClient`` is the production
implementation; tests inject doubles.
"""

import logging
from typing import Any, Dict, Optional, Protocol

import stripe
from flask import current_app

from billing_engine.config import ConfigurationError
from billing_engine.errors.domain import ProviderUnavailableError

logger = logging.getLogger(__name__)


class PaymentProviderClient(Protocol):
    def retrieve_subscription(self, subscription_id: str) -> Optional[Dict[str, Any]]:
        ...

    def find_customer_subscription(self, customer_id: str) -> Optional[Dict[str, Any]]:
        ...


class StripeProviderClient:
    """Stripe-backed provider client with bounded timeouts and retries."""

    def __init__(self, api_key: str, timeout: int = 10, max_network_retries: int = 2):
        if not api_key:
            raise ConfigurationError("STRIPE_SECRET_KEY is required to talk to Stripe")
        self.stripe_client = stripe.StripeClient(
            api_key,
            http_client=stripe.RequestsClient(timeout=timeout),
            max_network_retries=max_network_retries,
        )

        logger.info(
            "Stripe client initialized",
            extra={
                "api_key_prefix": api_key[:8] + "...",
                "max_retries": max_network_retries,
                "timeout": timeout,
            },
        )

    @classmethod
    def from_config(cls, config=None) -> "StripeProviderClient":
        config = config if config is not None else current_app.config
        return cls(
            api_key=config.get("STRIPE_SECRET_KEY"),
            timeout=config.get("STRIPE_TIMEOUT_SECONDS", 10),
            max_network_retries=config.get("STRIPE_MAX_NETWORK_RETRIES", 2),
        )

    def retrieve_subscription(self, subscription_id: str) -> Optional[Dict[str, Any]]:
        try:
            subscription = self.stripe_client.subscriptions.retrieve(subscription_id)
        except stripe.InvalidRequestError as e:
            if e.http_status == 404:
                logger.warning("Subscription not found at Stripe", extra={"subscription_id": subscription_id})
                return None
            raise
        except (stripe.APIConnectionError, stripe.RateLimitError, stripe.APIError) as e:
            logger.error(
                "Stripe unavailable while retrieving subscription",
                extra={"subscription_id": subscription_id, "error": str(e)},
            )
            raise ProviderUnavailableError("Stripe is unavailable") from e
        return subscription.to_dict()

    def find_customer_subscription(self, customer_id: str) -> Optional[Dict[str, Any]]:
        """Most recent subscription for a customer, in any status."""
        try:
            result = self.stripe_client.subscriptions.list(
                params={"customer": customer_id, "status": "all", "limit": 1}
            )
        except (stripe.APIConnectionError, stripe.RateLimitError, stripe.APIError) as e:
            logger.error(
                "Stripe unavailable while listing subscriptions",
                extra={"customer_id": customer_id, "error": str(e)},
            )
            raise ProviderUnavailableError("Stripe is unavailable") from e
        if not result.data:
            return None
        return result.data[0].to_dict()


def get_provider_client() -> Optional[PaymentProviderClient]:
    """Provider client for the current app, or ``None`` when Stripe is not configured."""
    if not current_app.config.get("STRIPE_SECRET_KEY"):
        return None
    client = current_app.extensions.get("billing_provider")
    if client is None:
        client = StripeProviderClient.from_config()
        current_app.extensions["billing_provider"] = client
    return client
