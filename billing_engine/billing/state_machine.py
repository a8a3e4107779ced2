"""
Subscription state reconciler.

This is the ONLY place where a user's subscription fields change. Webhook
deliveries can arrive late, twice, or out of order, so every transition is
derived from the event and compared against the stored state before
anything is written. Correlation is on provider ids, never on arrival order.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, Optional

from pydantic import ValidationError as PydanticValidationError
from sqlalchemy import func
from sqlalchemy.exc import IntegrityError, OperationalError, SQLAlchemyError

from billing_engine.billing.events import (
    CheckoutCompletedEvent,
    InvoiceEvent,
    SubscriptionEvent,
    SubscriptionObject,
    UnhandledEvent,
)
from billing_engine.billing.plans import plan_slug_for
from billing_engine.errors.domain import BillingError, ConflictError, NotFoundError, TransientStoreError
from billing_engine.extensions import db
from billing_engine.models.user import User
from billing_engine.models.webhook_event import WebhookEvent
from billing_engine.utils import from_unix, to_unix, utcnow

logger = logging.getLogger(__name__)

# A subscription id may only be replaced once the old one is finished.
REBINDABLE_STATUSES = ("canceled", "incomplete_expired")
# Checkout completion (re)starts access from these states.
CHECKOUT_ACTIVATES_FROM = ("none", "incomplete", "canceled", "incomplete_expired")


class ReconcileAction(str, Enum):
    APPLIED = "applied"
    UNCHANGED = "unchanged"
    IGNORED = "ignored"
    DUPLICATE = "duplicate"


_LEDGER_STATUS = {
    ReconcileAction.APPLIED: "processed",
    ReconcileAction.UNCHANGED: "unchanged",
    ReconcileAction.IGNORED: "ignored",
}


@dataclass(frozen=True)
class ReconcileOutcome:
    event_id: str
    event_type: str
    action: ReconcileAction
    user_id: Optional[str] = None
    changes: Dict[str, Any] = field(default_factory=dict)
    reason: Optional[str] = None


class SubscriptionReconciler:
    """
    Applies validated webhook events to the subscription fields of a user.

    ``provider`` is an optional payment-provider client used to read the
    authoritative subscription on checkout completion and for explicit
    syncs. ``clock`` returns naive UTC and is injectable for tests.
    """

    def __init__(self, provider=None, clock: Callable = utcnow):
        self.provider = provider
        self.clock = clock
        self._handlers = {
            "checkout.session.completed": self._checkout_completed,
            "customer.subscription.created": self._subscription_changed,
            "customer.subscription.updated": self._subscription_changed,
            "customer.subscription.deleted": self._subscription_deleted,
            "invoice.payment_failed": self._payment_failed,
            "invoice.payment_succeeded": self._payment_succeeded,
        }

    # ============================================
    # Entry points
    # ============================================

    def reconcile(self, event) -> ReconcileOutcome:
        """
        Apply one validated event. Idempotent: replaying an event id already
        recorded in the ledger is a no-op, and re-deriving an identical state
        writes nothing.

        Raises ConflictError (cross-account ids), NotFoundError (no matching
        user) and TransientStoreError (retryable store failure).
        """
        try:
            ledger = db.session.get(WebhookEvent, event.id)
            if ledger is not None and ledger.is_terminal:
                logger.info(
                    "Duplicate webhook event skipped",
                    extra={"event_id": event.id, "event_type": event.type, "ledger_status": ledger.status},
                )
                return ReconcileOutcome(
                    event_id=event.id,
                    event_type=event.type,
                    action=ReconcileAction.DUPLICATE,
                    user_id=ledger.user_id,
                )

            handler = self._handlers.get(event.type)
            if handler is None or isinstance(event, UnhandledEvent):
                outcome = self._outcome(event, ReconcileAction.IGNORED, reason="unhandled_event_type")
            else:
                outcome = handler(event)

            self._write_ledger(event, _LEDGER_STATUS[outcome.action], user_id=outcome.user_id)
            db.session.commit()

        except ConflictError as e:
            db.session.rollback()
            logger.warning(
                "Webhook event rejected: provider id bound to another account",
                extra={"event_id": event.id, "event_type": event.type, "error": e.message},
            )
            self.record_rejection(event.id, event.type, "conflict", e.message)
            raise
        except BillingError:
            db.session.rollback()
            raise
        except IntegrityError as e:
            db.session.rollback()
            # A concurrent delivery of the same event committed first.
            existing = db.session.get(WebhookEvent, event.id)
            if existing is not None and existing.is_terminal:
                return ReconcileOutcome(
                    event_id=event.id,
                    event_type=event.type,
                    action=ReconcileAction.DUPLICATE,
                    user_id=existing.user_id,
                )
            self.record_rejection(event.id, event.type, "conflict", "provider id bound to another account")
            raise ConflictError("Provider id already bound to another account") from e
        except OperationalError as e:
            db.session.rollback()
            logger.error("Store unavailable while reconciling", extra={"event_id": event.id, "error": str(e)})
            raise TransientStoreError("Subscription store unavailable") from e
        except SQLAlchemyError:
            db.session.rollback()
            raise

        log = logger.info if outcome.action == ReconcileAction.APPLIED else logger.debug
        log(
            "Webhook event reconciled",
            extra={
                "event_id": outcome.event_id,
                "event_type": outcome.event_type,
                "action": outcome.action.value,
                "user_id": outcome.user_id,
                "changed_fields": sorted(outcome.changes),
                "reason": outcome.reason,
            },
        )
        return outcome

    def sync_from_provider(self, user: User) -> ReconcileOutcome:
        """Pull the user's subscription from the provider and apply it."""
        if self.provider is None:
            raise NotFoundError("No payment provider configured for subscription sync")

        if user.stripe_subscription_id:
            data = self.provider.retrieve_subscription(user.stripe_subscription_id)
        elif user.stripe_customer_id:
            data = self.provider.find_customer_subscription(user.stripe_customer_id)
        else:
            raise NotFoundError(f"User {user.id} has no provider customer to sync")

        if not data:
            raise NotFoundError(f"No provider subscription found for user {user.id}")

        subscription = SubscriptionObject.model_validate(data)
        event_type = (
            "customer.subscription.deleted" if subscription.status == "canceled"
            else "customer.subscription.updated"
        )
        event = SubscriptionEvent(
            id=f"sync_{subscription.id}_{to_unix(self.clock())}",
            type=event_type,
            subscription=subscription,
        )

        try:
            if event_type == "customer.subscription.deleted":
                outcome = self._subscription_deleted(event)
            else:
                outcome = self._subscription_changed(event)
            db.session.commit()
        except OperationalError as e:
            db.session.rollback()
            raise TransientStoreError("Subscription store unavailable") from e
        except SQLAlchemyError:
            db.session.rollback()
            raise

        logger.info(
            "Subscription synced from provider",
            extra={"user_id": user.id, "action": outcome.action.value, "changed_fields": sorted(outcome.changes)},
        )
        return outcome

    @staticmethod
    def record_rejection(event_id: Optional[str], event_type: Optional[str], status: str, error: str) -> None:
        """Ledger an event that was dropped (invalid payload or conflict)."""
        if not event_id:
            return
        try:
            ledger = db.session.get(WebhookEvent, event_id)
            if ledger is None:
                ledger = WebhookEvent(event_id=event_id, event_type=event_type or "unknown", status=status)
                db.session.add(ledger)
            elif ledger.is_terminal:
                return
            ledger.status = status
            ledger.error = error[:2000]
            ledger.processed_at = utcnow()
            db.session.commit()
        except OperationalError as e:
            db.session.rollback()
            logger.error("Store unavailable while recording rejected event",
                         extra={"event_id": event_id, "error": str(e)})
            raise TransientStoreError("Subscription store unavailable") from e
        except SQLAlchemyError:
            db.session.rollback()
            logger.exception("Failed to record rejected webhook event", extra={"event_id": event_id})
            raise

    # ============================================
    # Handlers
    # ============================================

    def _checkout_completed(self, event: CheckoutCompletedEvent) -> ReconcileOutcome:
        session = event.session
        if session.mode != "subscription":
            return self._outcome(event, ReconcileAction.IGNORED, reason="not_a_subscription_checkout")

        by_customer = self._user_by_customer(session.customer)
        by_reference = (
            db.session.get(User, session.user_reference, with_for_update=True)
            if session.user_reference else None
        )
        if by_customer and by_reference and by_customer.id != by_reference.id:
            raise ConflictError(f"Customer {session.customer} belongs to another account")

        user = by_customer or by_reference or self._user_by_email(session.customer_email)
        if user is None:
            raise NotFoundError(f"No user matches checkout session {session.id}")

        changes: Dict[str, Any] = {}
        if session.customer:
            self._bind_customer(user, session.customer, changes)

        newly_bound = False
        if session.subscription:
            holder = self._user_by_subscription(session.subscription)
            if holder is not None and holder.id != user.id:
                raise ConflictError(f"Subscription {session.subscription} belongs to another account")

            if user.stripe_subscription_id != session.subscription:
                if user.stripe_subscription_id and user.subscription_status not in REBINDABLE_STATUSES:
                    raise ConflictError(
                        f"User {user.id} already has live subscription {user.stripe_subscription_id}"
                    )
                if user.stripe_subscription_id:
                    logger.info(
                        "Re-subscription after churn: rebinding subscription id",
                        extra={"user_id": user.id, "old": user.stripe_subscription_id, "new": session.subscription},
                    )
                    self._assign(user, "cancel_at", None, changes)
                    self._assign(user, "canceled_at", None, changes)
                self._assign(user, "stripe_subscription_id", session.subscription, changes)
                newly_bound = True

        if newly_bound or user.subscription_status in CHECKOUT_ACTIVATES_FROM:
            status = "trialing" if session.requests_trial else "active"
            self._assign(user, "subscription_status", status, changes)

        if session.requests_trial:
            self._assign(user, "has_used_trial", True, changes)
            trial_end = session.metadata.get("trial_end")
            if trial_end and trial_end.isdigit() and user.trial_end is None:
                self._assign(user, "trial_start", self._event_time(event), changes)
                self._assign(user, "trial_end", from_unix(trial_end), changes)

        if self.provider is not None and session.subscription:
            subscription = self._retrieve(session.subscription)
            if subscription is not None and not self._is_stale(user, subscription):
                self._apply_subscription_state(user, subscription, changes)

        action = ReconcileAction.APPLIED if changes else ReconcileAction.UNCHANGED
        return self._outcome(event, action, user_id=user.id, changes=changes)

    def _subscription_changed(self, event: SubscriptionEvent) -> ReconcileOutcome:
        subscription = event.subscription
        user = self._user_for_subscription(subscription.id, subscription.customer)
        changes: Dict[str, Any] = {}

        if user.stripe_subscription_id and user.stripe_subscription_id != subscription.id:
            return self._outcome(event, ReconcileAction.IGNORED, user_id=user.id, reason="subscription_mismatch")

        if user.subscription_status == "canceled" and user.canceled_at is not None:
            # Deletion is final for a subscription id; late updates cannot revive it.
            return self._outcome(event, ReconcileAction.IGNORED, user_id=user.id, reason="subscription_deleted")

        if self._is_stale(user, subscription, event):
            logger.info(
                "Ignoring out-of-order subscription event",
                extra={
                    "event_id": event.id,
                    "user_id": user.id,
                    "event_period_end": subscription.current_period_end,
                    "stored_period_end": str(user.subscription_current_period_end),
                },
            )
            return self._outcome(event, ReconcileAction.IGNORED, user_id=user.id, reason="stale_period_end")

        self._bind_customer(user, subscription.customer, changes)
        self._assign(user, "stripe_subscription_id", subscription.id, changes)
        self._apply_subscription_state(user, subscription, changes, event)

        action = ReconcileAction.APPLIED if changes else ReconcileAction.UNCHANGED
        return self._outcome(event, action, user_id=user.id, changes=changes)

    def _subscription_deleted(self, event: SubscriptionEvent) -> ReconcileOutcome:
        subscription = event.subscription
        user = self._user_for_subscription(subscription.id, subscription.customer)

        if user.stripe_subscription_id and user.stripe_subscription_id != subscription.id:
            return self._outcome(event, ReconcileAction.IGNORED, user_id=user.id, reason="subscription_mismatch")

        changes: Dict[str, Any] = {}
        self._bind_customer(user, subscription.customer, changes)
        self._assign(user, "stripe_subscription_id", subscription.id, changes)
        self._assign(user, "subscription_status", "canceled", changes)
        if user.canceled_at is None:
            canceled_at = from_unix(event.created or subscription.canceled_at) or self.clock()
            self._assign(user, "canceled_at", canceled_at, changes)

        action = ReconcileAction.APPLIED if changes else ReconcileAction.UNCHANGED
        return self._outcome(event, action, user_id=user.id, changes=changes)

    def _payment_failed(self, event: InvoiceEvent) -> ReconcileOutcome:
        invoice = event.invoice
        if not invoice.subscription:
            return self._outcome(event, ReconcileAction.IGNORED, reason="one_off_invoice")

        user = self._user_for_subscription(invoice.subscription, invoice.customer)
        if user.stripe_subscription_id and user.stripe_subscription_id != invoice.subscription:
            return self._outcome(event, ReconcileAction.IGNORED, user_id=user.id, reason="subscription_mismatch")

        changes: Dict[str, Any] = {}
        if user.subscription_status not in ("canceled", "incomplete_expired"):
            self._assign(user, "subscription_status", "past_due", changes)

        action = ReconcileAction.APPLIED if changes else ReconcileAction.UNCHANGED
        return self._outcome(event, action, user_id=user.id, changes=changes)

    def _payment_succeeded(self, event: InvoiceEvent) -> ReconcileOutcome:
        invoice = event.invoice
        if not invoice.subscription:
            return self._outcome(event, ReconcileAction.IGNORED, reason="one_off_invoice")

        user = self._user_for_subscription(invoice.subscription, invoice.customer)
        if user.stripe_subscription_id and user.stripe_subscription_id != invoice.subscription:
            return self._outcome(event, ReconcileAction.IGNORED, user_id=user.id, reason="subscription_mismatch")

        changes: Dict[str, Any] = {}
        if user.subscription_status == "past_due":
            self._assign(user, "subscription_status", "active", changes)

        paid_at = self._event_time(event)
        if user.last_payment_at is None or paid_at > user.last_payment_at:
            self._assign(user, "last_payment_at", paid_at, changes)

        action = ReconcileAction.APPLIED if changes else ReconcileAction.UNCHANGED
        return self._outcome(event, action, user_id=user.id, changes=changes)

    # ============================================
    # State derivation
    # ============================================

    @staticmethod
    def _is_reversal(user: User, subscription: SubscriptionObject, event=None) -> bool:
        """
        A cancellation reversal clears a scheduled cancellation. It is the only
        change allowed to move the period end backward. ``event`` is None for
        state read directly from the provider.
        """
        if user.cancel_at is None or subscription.has_scheduled_cancellation:
            return False
        if event is None:
            return True
        if event.type != "customer.subscription.updated":
            return False
        previous = event.previous_attributes
        return not previous or "cancel_at_period_end" in previous or "cancel_at" in previous

    def _is_stale(self, user: User, subscription: SubscriptionObject, event=None) -> bool:
        stored_end = user.subscription_current_period_end
        if stored_end is None:
            return False
        period_end = from_unix(subscription.current_period_end)
        return period_end < stored_end and not self._is_reversal(user, subscription, event)

    def _apply_subscription_state(self, user: User, subscription: SubscriptionObject,
                                  changes: Dict[str, Any], event=None) -> None:
        """Copy provider subscription state onto the user. Callers check staleness first."""
        period_end = from_unix(subscription.current_period_end)
        stored_end = user.subscription_current_period_end
        reversal = self._is_reversal(user, subscription, event)

        self._assign(user, "subscription_status", subscription.status, changes)
        if stored_end is None or period_end > stored_end or reversal:
            self._assign(user, "subscription_current_period_end", period_end, changes)

        if subscription.cancel_at is not None:
            cancel_at = from_unix(subscription.cancel_at)
        elif subscription.cancel_at_period_end:
            cancel_at = period_end
        else:
            cancel_at = None
        self._assign(user, "cancel_at", cancel_at, changes)

        self._assign(user, "plan_price_id", subscription.price_id, changes)
        self._assign(user, "subscription_plan", plan_slug_for(subscription.price_id), changes)

        if subscription.trial_start is not None:
            self._assign(user, "trial_start", from_unix(subscription.trial_start), changes)
        if subscription.trial_end is not None:
            self._assign(user, "trial_end", from_unix(subscription.trial_end), changes)
        if subscription.status == "trialing" or subscription.trial_end is not None:
            self._assign(user, "has_used_trial", True, changes)

    def _retrieve(self, subscription_id: str) -> Optional[SubscriptionObject]:
        data = self.provider.retrieve_subscription(subscription_id)
        if not data:
            return None
        try:
            return SubscriptionObject.model_validate(data)
        except PydanticValidationError as e:
            logger.warning(
                "Provider returned an unusable subscription; keeping checkout-derived state",
                extra={"subscription_id": subscription_id, "error": str(e)},
            )
            return None

    # ============================================
    # Correlation
    # ============================================

    def _user_for_subscription(self, subscription_id: str, customer_id: Optional[str]) -> User:
        by_subscription = self._user_by_subscription(subscription_id)
        by_customer = self._user_by_customer(customer_id)

        if by_subscription and by_customer and by_subscription.id != by_customer.id:
            raise ConflictError(
                f"Subscription {subscription_id} and customer {customer_id} belong to different accounts"
            )

        user = by_subscription or by_customer
        if user is None:
            raise NotFoundError(f"No user bound to subscription {subscription_id}")
        return user

    @staticmethod
    def _user_by_customer(customer_id: Optional[str]) -> Optional[User]:
        if not customer_id:
            return None
        return User.query.filter_by(stripe_customer_id=customer_id).with_for_update().first()

    @staticmethod
    def _user_by_subscription(subscription_id: Optional[str]) -> Optional[User]:
        if not subscription_id:
            return None
        return User.query.filter_by(stripe_subscription_id=subscription_id).with_for_update().first()

    @staticmethod
    def _user_by_email(email: Optional[str]) -> Optional[User]:
        if not email:
            return None
        return User.query.filter(func.lower(User.email) == email.lower()).with_for_update().first()

    @staticmethod
    def _bind_customer(user: User, customer_id: Optional[str], changes: Dict[str, Any]) -> None:
        if not customer_id:
            return
        if user.stripe_customer_id and user.stripe_customer_id != customer_id:
            raise ConflictError(f"User {user.id} is already bound to a different customer")
        SubscriptionReconciler._assign(user, "stripe_customer_id", customer_id, changes)

    # ============================================
    # Helpers
    # ============================================

    @staticmethod
    def _assign(user: User, attr: str, value: Any, changes: Dict[str, Any]) -> None:
        """Write-if-changed."""
        if getattr(user, attr) != value:
            setattr(user, attr, value)
            changes[attr] = value

    def _event_time(self, event):
        return from_unix(event.created) if event.created else self.clock()

    @staticmethod
    def _outcome(event, action: ReconcileAction, user_id=None, changes=None, reason=None) -> ReconcileOutcome:
        return ReconcileOutcome(
            event_id=event.id,
            event_type=event.type,
            action=action,
            user_id=user_id,
            changes=dict(changes or {}),
            reason=reason,
        )

    def _write_ledger(self, event, status: str, user_id: Optional[str] = None) -> None:
        now = self.clock()
        ledger = db.session.get(WebhookEvent, event.id)
        if ledger is None:
            ledger = WebhookEvent(event_id=event.id, event_type=event.type, received_at=now)
            db.session.add(ledger)
        ledger.status = status
        ledger.user_id = user_id
        ledger.error = None
        ledger.processed_at = now
