# billing_engine/routes/stripe_webhook.py
"""
Stripe webhook endpoint.

Response codes tell Stripe whether to retry: 2xx acknowledges (including
payloads we drop on purpose), 404 and 503 ask for redelivery, 400 means the
request itself is not a genuine Stripe delivery.
"""

import json
import logging

import stripe
from flask import Blueprint, current_app, jsonify, request

from billing_engine.billing.events import validate_event
from billing_engine.billing.provider import get_provider_client
from billing_engine.billing.state_machine import SubscriptionReconciler
from billing_engine.errors.domain import ConflictError, ValidationError

logger = logging.getLogger(__name__)

bp = Blueprint("stripe_webhook", __name__)


def _verify_signature(payload: bytes) -> bool:
    secret = current_app.config.get("STRIPE_WEBHOOK_SECRET")
    if not secret:
        logger.warning("STRIPE_WEBHOOK_SECRET not set; accepting unsigned webhook")
        return True

    sig_header = request.headers.get("Stripe-Signature")
    if not sig_header:
        return False
    try:
        stripe.WebhookSignature.verify_header(
            payload.decode("utf-8"),
            sig_header,
            secret,
            tolerance=current_app.config.get("STRIPE_WEBHOOK_TOLERANCE", 300),
        )
    except (stripe.SignatureVerificationError, UnicodeDecodeError):
        return False
    return True


@bp.route("/webhooks/stripe", methods=["POST"])
def stripe_webhook():
    payload = request.get_data()

    if not _verify_signature(payload):
        logger.warning("Invalid Stripe webhook signature", extra={"remote_addr": request.remote_addr})
        return jsonify({"error": "invalid_signature"}), 400

    try:
        envelope = json.loads(payload)
    except ValueError:
        logger.warning("Stripe webhook body is not JSON")
        return jsonify({"error": "invalid_payload"}), 400

    try:
        event = validate_event(envelope)
    except ValidationError as e:
        event_id = envelope.get("id") if isinstance(envelope, dict) else None
        event_type = envelope.get("type") if isinstance(envelope, dict) else None
        logger.warning(
            "Dropping invalid webhook event",
            extra={"event_id": event_id, "event_type": event_type, "field": e.field, "error": e.message},
        )
        SubscriptionReconciler.record_rejection(
            event_id if isinstance(event_id, str) else None,
            event_type if isinstance(event_type, str) else None,
            "invalid",
            e.message,
        )
        return jsonify({"received": True, "dropped": "invalid_payload"}), 200

    reconciler = SubscriptionReconciler(provider=get_provider_client())
    try:
        outcome = reconciler.reconcile(event)
    except ConflictError:
        # Retrying cannot fix a cross-account id; acknowledge and drop.
        return jsonify({"received": True, "dropped": "conflict"}), 200

    return jsonify({"received": True, "action": outcome.action.value}), 200
