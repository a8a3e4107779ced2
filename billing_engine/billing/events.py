"""
Webhook event validation.

Stripe payloads arrive loosely typed. ``validate_event`` checks the
envelope, then the ``data.object`` against the schema for the event type,
and returns one member of a tagged union of pydantic models. Anything the
engine does not act on becomes an ``UnhandledEvent`` rather than an error.
"""

from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, EmailStr, Field, StrictBool, StrictStr, model_validator
from pydantic import ValidationError as PydanticValidationError

from billing_engine.errors.domain import ValidationError

PositiveTimestamp = Annotated[int, Field(strict=True, gt=0)]
NonNegativeAmount = Annotated[int, Field(strict=True, ge=0)]

SUBSCRIPTION_EVENT_TYPES = (
    "customer.subscription.created",
    "customer.subscription.updated",
    "customer.subscription.deleted",
)
INVOICE_EVENT_TYPES = (
    "invoice.payment_succeeded",
    "invoice.payment_failed",
)
CHECKOUT_COMPLETED = "checkout.session.completed"


class _StripeObject(BaseModel):
    model_config = ConfigDict(extra="ignore", frozen=True)


# ============================================
# data.object schemas
# ============================================

class CheckoutSession(_StripeObject):
    id: StrictStr
    mode: StrictStr
    customer_email: Optional[EmailStr] = None
    customer: Optional[StrictStr] = None
    subscription: Optional[StrictStr] = None
    client_reference_id: Optional[StrictStr] = None
    metadata: Dict[str, StrictStr] = Field(default_factory=dict)

    @property
    def user_reference(self) -> Optional[str]:
        return self.client_reference_id or self.metadata.get("userId")

    @property
    def requests_trial(self) -> bool:
        return self.metadata.get("trial", "").lower() == "true" or bool(self.metadata.get("trial_end"))


class _Price(_StripeObject):
    id: StrictStr


class _SubscriptionItem(_StripeObject):
    price: _Price
    current_period_end: Optional[PositiveTimestamp] = None


class _SubscriptionItems(_StripeObject):
    data: List[_SubscriptionItem] = Field(min_length=1)


class SubscriptionObject(_StripeObject):
    id: StrictStr
    customer: StrictStr
    status: Literal[
        "active",
        "canceled",
        "incomplete",
        "incomplete_expired",
        "past_due",
        "trialing",
        "unpaid",
        "paused",
    ]
    current_period_end: PositiveTimestamp
    items: _SubscriptionItems
    cancel_at_period_end: Optional[StrictBool] = None
    cancel_at: Optional[PositiveTimestamp] = None
    canceled_at: Optional[PositiveTimestamp] = None
    trial_start: Optional[PositiveTimestamp] = None
    trial_end: Optional[PositiveTimestamp] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @model_validator(mode="before")
    @classmethod
    def _period_end_from_items(cls, data):
        # Newer API versions report the period on the subscription item only.
        if isinstance(data, dict) and data.get("current_period_end") is None:
            items = (data.get("items") or {}).get("data") if isinstance(data.get("items"), dict) else None
            if items and isinstance(items[0], dict) and items[0].get("current_period_end") is not None:
                data = {**data, "current_period_end": items[0]["current_period_end"]}
        return data

    @property
    def price_id(self) -> str:
        return self.items.data[0].price.id

    @property
    def has_scheduled_cancellation(self) -> bool:
        return bool(self.cancel_at_period_end) or self.cancel_at is not None


class InvoiceObject(_StripeObject):
    id: StrictStr
    status: StrictStr
    amount_paid: NonNegativeAmount
    amount_due: NonNegativeAmount
    subscription: Optional[StrictStr] = None
    customer: Optional[StrictStr] = None

    @model_validator(mode="before")
    @classmethod
    def _subscription_from_parent(cls, data):
        if isinstance(data, dict) and not data.get("subscription"):
            parent = data.get("parent")
            details = parent.get("subscription_details") if isinstance(parent, dict) else None
            if isinstance(details, dict) and isinstance(details.get("subscription"), str):
                data = {**data, "subscription": details["subscription"]}
        return data


# ============================================
# Tagged union of validated events
# ============================================

class _Envelope(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: StrictStr = Field(min_length=1)
    type: StrictStr = Field(min_length=1)
    created: Optional[PositiveTimestamp] = None
    data: Dict[str, Any]


class WebhookEventBase(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    type: str
    created: Optional[int] = None
    previous_attributes: Dict[str, Any] = Field(default_factory=dict)


class CheckoutCompletedEvent(WebhookEventBase):
    type: Literal["checkout.session.completed"]
    session: CheckoutSession


class SubscriptionEvent(WebhookEventBase):
    type: Literal[
        "customer.subscription.created",
        "customer.subscription.updated",
        "customer.subscription.deleted",
    ]
    subscription: SubscriptionObject


class InvoiceEvent(WebhookEventBase):
    type: Literal["invoice.payment_succeeded", "invoice.payment_failed"]
    invoice: InvoiceObject


class UnhandledEvent(WebhookEventBase):
    pass


WebhookEvent = Union[CheckoutCompletedEvent, SubscriptionEvent, InvoiceEvent, UnhandledEvent]

_OBJECT_SCHEMAS = {
    CHECKOUT_COMPLETED: (CheckoutCompletedEvent, "session", CheckoutSession),
    **{t: (SubscriptionEvent, "subscription", SubscriptionObject) for t in SUBSCRIPTION_EVENT_TYPES},
    **{t: (InvoiceEvent, "invoice", InvoiceObject) for t in INVOICE_EVENT_TYPES},
}


def _field_path(prefix: str, exc: PydanticValidationError) -> str:
    first = exc.errors()[0]
    parts = [str(p) for p in first.get("loc", ())]
    return ".".join([prefix, *parts]) if prefix else ".".join(parts) or "envelope"


def _raise(prefix: str, exc: PydanticValidationError):
    path = _field_path(prefix, exc)
    message = exc.errors()[0].get("msg", "invalid value")
    raise ValidationError(f"{path}: {message}", field=path) from exc


def validate_event(envelope: Any) -> WebhookEvent:
    """Validate a raw webhook envelope ``{id, type, data.object}``.

    Raises ``ValidationError`` naming the offending field path, e.g.
    ``data.object.current_period_end``.
    """
    if not isinstance(envelope, dict):
        raise ValidationError("envelope: expected a JSON object", field="envelope")

    try:
        parsed = _Envelope.model_validate(envelope)
    except PydanticValidationError as exc:
        _raise("", exc)

    obj = parsed.data.get("object")
    if not isinstance(obj, dict):
        raise ValidationError("data.object: expected a JSON object", field="data.object")

    previous = parsed.data.get("previous_attributes")
    common = {
        "id": parsed.id,
        "type": parsed.type,
        "created": parsed.created,
        "previous_attributes": previous if isinstance(previous, dict) else {},
    }

    schema = _OBJECT_SCHEMAS.get(parsed.type)
    if schema is None:
        return UnhandledEvent(**common)

    event_cls, attr, object_cls = schema
    try:
        validated = object_cls.model_validate(obj)
    except PydanticValidationError as exc:
        _raise("data.object", exc)

    return event_cls(**common, **{attr: validated})
