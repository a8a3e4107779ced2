import hashlib
import hmac
import json
import time
from unittest.mock import patch

import pytest
from sqlalchemy.exc import OperationalError

from billing_engine.extensions import db
from billing_engine.models import UsageRecord, WebhookEvent
from billing_engine.security.api_keys import ApiKeyGate
from billing_engine.services.metering_service import MeteringService
from billing_engine.utils import isoformat


def sign(payload: str, secret: str, timestamp=None) -> str:
    timestamp = timestamp or int(time.time())
    signature = hmac.new(secret.encode(), f"{timestamp}.{payload}".encode(), hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={signature}"


# ============================================
# Stripe webhook
# ============================================

@pytest.mark.payment
class TestStripeWebhook:
    URL = "/webhooks/stripe"

    def test_checkout_applied(self, client, make_user, checkout_payload):
        user = make_user()
        response = client.post(self.URL, json=checkout_payload(client_reference_id=user.id))

        assert response.status_code == 200
        assert response.get_json() == {"received": True, "action": "applied"}
        assert user.stripe_customer_id == "cus_test_1"

    def test_redelivery_acknowledged_as_duplicate(self, client, make_user, checkout_payload):
        user = make_user()
        payload = checkout_payload(client_reference_id=user.id, event_id="evt_redelivered")

        client.post(self.URL, json=payload)
        response = client.post(self.URL, json=payload)

        assert response.get_json()["action"] == "duplicate"

    def test_invalid_payload_dropped_with_200(self, client, subscription_payload):
        payload = subscription_payload(event_id="evt_bad")
        payload["data"]["object"]["current_period_end"] = "soon"

        response = client.post(self.URL, json=payload)

        assert response.status_code == 200
        assert response.get_json() == {"received": True, "dropped": "invalid_payload"}
        assert db.session.get(WebhookEvent, "evt_bad").status == "invalid"

    def test_store_outage_on_dropped_event_asks_for_retry(self, client, subscription_payload):
        payload = subscription_payload(event_id="evt_locked")
        payload["data"]["object"]["current_period_end"] = "soon"
        locked = OperationalError("INSERT INTO webhook_events", {}, Exception("database is locked"))

        with patch.object(db.session, "commit", side_effect=locked):
            response = client.post(self.URL, json=payload)

        assert response.status_code == 503
        body = response.get_json()
        assert body["error"] == "store_unavailable"
        assert body["retryable"] is True

    def test_non_json_body(self, client):
        response = client.post(self.URL, data=b"not json", content_type="application/json")
        assert response.status_code == 400
        assert response.get_json()["error"] == "invalid_payload"

    def test_unknown_user_asks_for_retry(self, client, subscription_payload):
        response = client.post(self.URL, json=subscription_payload(customer="cus_ghost", sub_id="sub_ghost"),
                               headers={"X-Request-ID": "req-ghost"})

        assert response.status_code == 404
        body = response.get_json()
        assert body["error"] == "not_found"
        assert body["request_id"] == "req-ghost"
        assert response.headers["X-Request-ID"] == "req-ghost"

    def test_conflict_dropped_with_200(self, client, make_user, checkout_payload):
        make_user(stripe_customer_id="cus_test_1")
        other = make_user()

        response = client.post(self.URL, json=checkout_payload(client_reference_id=other.id))

        assert response.status_code == 200
        assert response.get_json()["dropped"] == "conflict"

    def test_signature_required_when_secret_configured(self, app, client, make_user, checkout_payload):
        app.config["STRIPE_WEBHOOK_SECRET"] = "whsec_test"
        user = make_user()
        body = json.dumps(checkout_payload(client_reference_id=user.id))

        unsigned = client.post(self.URL, data=body, content_type="application/json")
        forged = client.post(self.URL, data=body, content_type="application/json",
                             headers={"Stripe-Signature": sign(body, "whsec_wrong")})
        signed = client.post(self.URL, data=body, content_type="application/json",
                             headers={"Stripe-Signature": sign(body, "whsec_test")})

        assert unsigned.status_code == 400
        assert forged.status_code == 400
        assert forged.get_json()["error"] == "invalid_signature"
        assert signed.status_code == 200
        assert signed.get_json()["action"] == "applied"


# ============================================
# Usage read API
# ============================================

class TestCurrentUsage:
    URL = "/api/usage/current"

    def test_requires_token(self, client):
        response = client.get(self.URL)
        assert response.status_code == 401

    def test_returns_zeroed_current_window(self, client, make_user, auth_headers):
        user = make_user()
        response = client.get(self.URL, headers=auth_headers(user))

        assert response.status_code == 200
        usage = response.get_json()["usage"]
        assert usage["apiCalls"] == 0
        assert usage["itemsCreated"] == 0
        assert usage["storageMb"] == 0
        assert usage["periodStart"].endswith("Z")
        assert UsageRecord.query.filter_by(user_id=user.id).count() == 1

    def test_other_users_usage_is_forbidden(self, client, make_user, auth_headers):
        user, other = make_user(), make_user()
        response = client.get(self.URL, query_string={"userId": other.id}, headers=auth_headers(user))
        assert response.status_code == 403

    def test_admin_may_read_any_user(self, client, make_user, auth_headers):
        admin, other = make_user(role="admin"), make_user()
        response = client.get(self.URL, query_string={"userId": other.id}, headers=auth_headers(admin))
        assert response.status_code == 200

    def test_admin_reading_unknown_user(self, client, make_user, auth_headers):
        admin = make_user(role="admin")
        response = client.get(self.URL, query_string={"userId": "nobody"}, headers=auth_headers(admin))
        assert response.status_code == 404

    def test_bounds_must_come_in_pairs(self, client, make_user, auth_headers):
        user = make_user()
        response = client.get(self.URL, query_string={"periodStart": "2024-01-01T00:00:00Z"},
                              headers=auth_headers(user))
        assert response.status_code == 422
        assert response.get_json()["error"] == "validation_error"

    def test_malformed_bounds(self, client, make_user, auth_headers):
        user = make_user()
        response = client.get(self.URL, query_string={"periodStart": "yesterday", "periodEnd": "today"},
                              headers=auth_headers(user))
        assert response.status_code == 422

    def test_explicit_current_window_is_created(self, client, make_user, auth_headers):
        user = make_user()
        window = MeteringService().current_window(user)

        response = client.get(self.URL, headers=auth_headers(user), query_string={
            "periodStart": isoformat(window.start), "periodEnd": isoformat(window.end),
        })

        assert response.status_code == 200
        assert response.get_json()["usage"]["periodStart"] == isoformat(window.start)

    def test_historical_window_is_never_created(self, client, make_user, auth_headers):
        user = make_user()
        response = client.get(self.URL, headers=auth_headers(user), query_string={
            "periodStart": "2020-01-01T00:00:00Z", "periodEnd": "2020-02-01T00:00:00Z",
        })

        assert response.status_code == 404
        assert UsageRecord.query.filter_by(user_id=user.id).count() == 0


# ============================================
# API key management
# ============================================

class TestApiKeyRoutes:
    URL = "/api/api-keys"

    def test_create_returns_raw_key_once(self, client, make_user, auth_headers):
        user = make_user()
        created = client.post(self.URL, json={"name": "ci", "scopes": ["read"]}, headers=auth_headers(user))

        assert created.status_code == 201
        body = created.get_json()
        assert body["key"].startswith("bek_live_")
        assert body["apiKey"]["scopes"] == ["read"]

        listed = client.get(self.URL, headers=auth_headers(user)).get_json()["apiKeys"]
        assert [k["name"] for k in listed] == ["ci"]
        assert body["key"] not in json.dumps(listed)

    def test_revoke(self, client, make_user, auth_headers):
        user = make_user()
        key_id = client.post(self.URL, json={}, headers=auth_headers(user)).get_json()["apiKey"]["id"]

        response = client.post(f"{self.URL}/{key_id}/revoke", headers=auth_headers(user))

        assert response.status_code == 200
        assert response.get_json()["apiKey"]["revokedAt"] is not None

    def test_revoke_unknown_key(self, client, make_user, auth_headers):
        response = client.post(f"{self.URL}/999/revoke", headers=auth_headers(make_user()))
        assert response.status_code == 404

    def test_invalid_scope(self, client, make_user, auth_headers):
        response = client.post(self.URL, json={"scopes": ["root"]}, headers=auth_headers(make_user()))
        assert response.status_code == 422

    def test_token_for_deleted_user(self, client, make_user, auth_headers):
        user = make_user()
        headers = auth_headers(user)
        db.session.delete(user)
        db.session.commit()

        assert client.get(self.URL, headers=headers).status_code == 404


# ============================================
# Metered endpoint
# ============================================

class TestDoThing:
    URL = "/api/external/do-thing"

    def test_missing_key(self, client):
        response = client.post(self.URL)
        assert response.status_code == 401
        assert response.get_json() == {"error": "missing_api_key"}

    def test_counts_successful_call(self, client, make_user):
        user = make_user()
        _, raw = ApiKeyGate().create_key(user)

        first = client.post(self.URL, headers={"Authorization": f"Bearer {raw}"})
        second = client.post(self.URL, headers={"Authorization": f"Bearer {raw}"})

        assert first.status_code == 200
        assert first.get_json()["message"] == "Action completed successfully"
        assert second.get_json()["usage"] == {"apiCalls": 2, "remaining": 998}

    def test_revoked_key(self, client, make_user):
        user = make_user()
        gate = ApiKeyGate()
        key, raw = gate.create_key(user)
        gate.revoke_key(user.id, key.id)

        response = client.post(self.URL, headers={"Authorization": f"Bearer {raw}"})

        assert response.status_code == 403
        assert response.get_json()["error"] == "api_key_revoked"

    def test_read_only_key_cannot_call_write_endpoint(self, client, make_user):
        user = make_user()
        _, raw = ApiKeyGate().create_key(user, scopes=["read"])

        response = client.post(self.URL, headers={"Authorization": f"Bearer {raw}"})

        assert response.status_code == 403
        assert response.get_json() == {"error": "insufficient_scope"}
        assert UsageRecord.query.filter_by(user_id=user.id).count() == 0

    def test_limit_reached(self, client, make_user):
        user = make_user()
        _, raw = ApiKeyGate().create_key(user)
        service = MeteringService()
        window, record = service.current_usage(user)
        record.api_calls = 1000
        db.session.commit()

        response = client.post(self.URL, headers={"Authorization": f"Bearer {raw}", "X-Request-ID": "req-limit"})

        assert response.status_code == 429
        body = response.get_json()
        assert body["error"] == "limit_exceeded"
        assert body["limit"] == 1000
        assert body["upgrade_to"] == "pro_monthly"
        assert body["request_id"] == "req-limit"
        assert "Upgrade to pro_monthly" in body["message"]
        assert service.ledger.find(user.id, window.start, window.end).api_calls == 1000


# ============================================
# Metered item creation
# ============================================

class TestCreateItem:
    URL = "/api/items"

    def test_requires_token(self, client):
        assert client.post(self.URL, json={"name": "notes"}).status_code == 401

    def test_counts_created_item(self, client, make_user, auth_headers):
        user = make_user()
        response = client.post(self.URL, json={"name": "notes"}, headers=auth_headers(user))

        assert response.status_code == 201
        body = response.get_json()
        assert body["item"] == {"name": "notes", "userId": user.id}
        assert body["usage"] == {"itemsCreated": 1, "remaining": 99, "limit": 100}

    def test_name_required(self, client, make_user, auth_headers):
        user = make_user()
        response = client.post(self.URL, json={}, headers=auth_headers(user))

        assert response.status_code == 422
        assert UsageRecord.query.filter_by(user_id=user.id).count() == 0

    def test_free_plan_stops_at_one_hundred_items(self, client, make_user, auth_headers):
        user = make_user()
        service = MeteringService()
        window, record = service.current_usage(user)
        record.items_created = 99
        db.session.commit()

        hundredth = client.post(self.URL, json={"name": "last"}, headers=auth_headers(user))
        over = client.post(self.URL, json={"name": "one more"}, headers=auth_headers(user))

        assert hundredth.status_code == 201
        assert hundredth.get_json()["usage"]["remaining"] == 0
        assert over.status_code == 429
        body = over.get_json()
        assert body["error"] == "limit_exceeded"
        assert body["limit"] == 100
        assert body["dimension"] == "items_created"
        assert "100 items created" in body["message"]
        assert service.ledger.find(user.id, window.start, window.end).items_created == 100


def test_health(client):
    response = client.get("/health")
    assert response.status_code == 200
    assert response.get_json()["status"] == "ok"
