import pytest

from billing_engine.billing.events import (
    CheckoutCompletedEvent,
    InvoiceEvent,
    SubscriptionEvent,
    UnhandledEvent,
    validate_event,
)
from billing_engine.errors import ValidationError


class TestEnvelope:
    def test_rejects_non_object(self):
        with pytest.raises(ValidationError) as exc:
            validate_event(["not", "an", "event"])
        assert exc.value.field == "envelope"

    def test_rejects_missing_id(self, subscription_payload):
        payload = subscription_payload()
        del payload["id"]
        with pytest.raises(ValidationError) as exc:
            validate_event(payload)
        assert exc.value.field == "id"

    def test_rejects_non_object_data_object(self):
        payload = {"id": "evt_1", "type": "customer.subscription.updated", "data": {"object": "sub_1"}}
        with pytest.raises(ValidationError) as exc:
            validate_event(payload)
        assert exc.value.field == "data.object"

    def test_unknown_type_is_unhandled_not_an_error(self):
        event = validate_event({"id": "evt_1", "type": "charge.refunded", "data": {"object": {"id": "ch_1"}}})
        assert isinstance(event, UnhandledEvent)
        assert event.type == "charge.refunded"


class TestSubscriptionObject:
    def test_valid_subscription_event(self, subscription_payload):
        event = validate_event(subscription_payload(cancel_at_period_end=False))
        assert isinstance(event, SubscriptionEvent)
        assert event.subscription.id == "sub_test_1"
        assert event.subscription.price_id == "price_pro_monthly"
        assert event.subscription.has_scheduled_cancellation is False

    def test_period_end_as_string_names_the_field(self, subscription_payload):
        payload = subscription_payload()
        payload["data"]["object"]["current_period_end"] = "1709251200"
        with pytest.raises(ValidationError) as exc:
            validate_event(payload)
        assert exc.value.field == "data.object.current_period_end"

    def test_missing_customer_names_the_field(self, subscription_payload):
        payload = subscription_payload()
        del payload["data"]["object"]["customer"]
        with pytest.raises(ValidationError) as exc:
            validate_event(payload)
        assert exc.value.field == "data.object.customer"

    def test_unknown_status_rejected(self, subscription_payload):
        with pytest.raises(ValidationError) as exc:
            validate_event(subscription_payload(status="exploded"))
        assert exc.value.field == "data.object.status"

    def test_empty_items_rejected(self, subscription_payload):
        payload = subscription_payload()
        payload["data"]["object"]["items"]["data"] = []
        with pytest.raises(ValidationError) as exc:
            validate_event(payload)
        assert exc.value.field.startswith("data.object.items")

    def test_period_end_read_from_first_item(self, subscription_payload):
        payload = subscription_payload()
        obj = payload["data"]["object"]
        period_end = obj.pop("current_period_end")
        obj["items"]["data"][0]["current_period_end"] = period_end
        event = validate_event(payload)
        assert event.subscription.current_period_end == period_end

    def test_previous_attributes_carried(self, subscription_payload):
        event = validate_event(subscription_payload(previous_attributes={"cancel_at_period_end": True}))
        assert event.previous_attributes == {"cancel_at_period_end": True}


class TestCheckoutAndInvoice:
    def test_checkout_session(self, checkout_payload):
        event = validate_event(checkout_payload(
            email="buyer@example.com", metadata={"userId": "u-1", "trial": "true"},
        ))
        assert isinstance(event, CheckoutCompletedEvent)
        assert event.session.user_reference == "u-1"
        assert event.session.requests_trial is True

    def test_checkout_bad_email(self, checkout_payload):
        with pytest.raises(ValidationError) as exc:
            validate_event(checkout_payload(email="not-an-email"))
        assert exc.value.field == "data.object.customer_email"

    def test_invoice_negative_amount(self, invoice_payload):
        payload = invoice_payload()
        payload["data"]["object"]["amount_due"] = -5
        with pytest.raises(ValidationError) as exc:
            validate_event(payload)
        assert exc.value.field == "data.object.amount_due"

    def test_invoice_subscription_from_parent(self, invoice_payload):
        payload = invoice_payload(subscription=None)
        payload["data"]["object"]["parent"] = {"subscription_details": {"subscription": "sub_from_parent"}}
        event = validate_event(payload)
        assert isinstance(event, InvoiceEvent)
        assert event.invoice.subscription == "sub_from_parent"
