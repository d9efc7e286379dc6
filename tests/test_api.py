"""
Tests for the HTTP surface: the Stripe webhook endpoint and the cancellation endpoints.
"""

import json
from decimal import Decimal

import pytest

from donation_ledger.core.dependencies import get_token_service
from donation_ledger.core.exceptions import (
    DatastoreUnavailable,
    InvalidToken,
    ProcessorMisconfigured,
    ProcessorUnavailable,
)
from donation_ledger.services.token_service import CancellationTokenService

import factories

EMAIL = "dana@donor.org"


def post_event(client, event: dict, secret: str = factories.WEBHOOK_SECRET, body: bytes | None = None):
    payload = factories.encode(event)
    return client.post(
        "/webhooks/stripe",
        content=body if body is not None else payload,
        headers={"Stripe-Signature": factories.sign(payload, secret=secret), "Content-Type": "application/json"},
    )


def pi_1_event():
    return factories.envelope(
        "payment.succeeded",
        factories.payment_intent("pi_1", amount=5000, currency="usd",
                                 metadata={"donorEmail": "a@x.com", "donorName": "A"}),
    )


class TestStripeWebhook:
    def test_payment_recorded(self, client, data_access):
        """pi_1 delivered once: one donation of 50.00 USD and a donor total of 50.00."""
        response = post_event(client, pi_1_event())

        assert response.status_code == 200
        assert response.json() == {"received": True}
        donation = data_access.get_donation_by_payment_intent("pi_1")
        assert donation["amount"] == Decimal("50.00")
        assert donation["currency"] == "USD"
        assert data_access.get_donor("a@x.com").total_donations == Decimal("50.00")

    def test_redelivery_is_acknowledged_without_changes(self, client, data_access, table):
        post_event(client, pi_1_event())
        before = table.scan()["Items"]

        response = post_event(client, pi_1_event())

        assert response.status_code == 200
        assert response.json() == {"received": True}
        assert table.scan()["Items"] == before
        assert data_access.get_donor("a@x.com").total_donations == Decimal("50.00")

    def test_tampered_body_rejected_before_any_write(self, client, table, processor):
        """Should reject with 400 and leave the datastore untouched."""
        event = pi_1_event()
        tampered = factories.encode({**event, "data": {"object": {**event["data"]["object"], "amount": 1}}})

        response = post_event(client, event, body=tampered)

        assert response.status_code == 400
        assert "error" in response.json()
        assert table.scan()["Items"] == []
        assert processor.calls == []

    def test_wrong_secret_rejected(self, client, table):
        response = post_event(client, pi_1_event(), secret="whsec_wrong")

        assert response.status_code == 400
        assert table.scan()["Items"] == []

    def test_missing_signature_header(self, client, table):
        response = client.post("/webhooks/stripe", content=factories.encode(pi_1_event()))

        assert response.status_code == 400
        assert response.json() == {"error": "Missing signature"}
        assert table.scan()["Items"] == []

    def test_missing_email_is_a_client_error(self, client, table):
        """Should answer 400 so Stripe stops redelivering, and record nothing."""
        event = factories.envelope("payment.succeeded", factories.payment_intent(metadata={"donorName": "A"}))

        response = post_event(client, event)

        assert response.status_code == 400
        assert response.json() == {"error": "Missing donor email"}
        assert table.scan()["Items"] == []

    def test_signed_garbage_is_a_client_error(self, client):
        payload = b"{not json"
        response = client.post(
            "/webhooks/stripe",
            content=payload,
            headers={"Stripe-Signature": factories.sign(payload)},
        )

        assert response.status_code == 400

    def test_processor_outage_asks_for_redelivery(self, client, processor, table):
        processor.fail_with = ProcessorUnavailable()
        event = factories.envelope(
            "payment.succeeded",
            factories.payment_intent(metadata={"donorEmail": "a@x.com"}, latest_charge="ch_1"),
        )

        response = post_event(client, event)

        assert response.status_code == 500
        assert response.json() == {"error": "Failed to process webhook"}
        assert table.scan()["Items"] == []

    def test_datastore_outage_asks_for_redelivery(self, client, data_access, monkeypatch):
        def unavailable(payment_intent_id):
            raise DatastoreUnavailable()
        monkeypatch.setattr(data_access, "get_donation_by_payment_intent", unavailable)

        response = post_event(client, pi_1_event())

        assert response.status_code == 500
        assert response.json() == {"error": "Failed to process webhook"}

    def test_rejected_processor_credentials_fail_the_delivery(self, client, processor, table):
        processor.fail_with = ProcessorMisconfigured()
        event = factories.envelope(
            "payment.succeeded",
            factories.payment_intent(metadata={"donorEmail": "a@x.com"}, latest_charge="ch_1"),
        )

        response = post_event(client, event)

        assert response.status_code == 500
        assert response.json() == {"error": "Failed to process webhook"}
        assert table.scan()["Items"] == []

    def test_then_redelivery_succeeds(self, client, data_access, processor):
        processor.fail_with = ProcessorUnavailable()
        event = factories.envelope(
            "payment.succeeded",
            factories.payment_intent(metadata={"donorEmail": "a@x.com"}, latest_charge="ch_1"),
        )
        assert post_event(client, event).status_code == 500

        processor.fail_with = None
        assert post_event(client, event).status_code == 200
        assert data_access.get_donor("a@x.com").total_donations == Decimal("50.00")

    @pytest.mark.parametrize("event_type", ["charge.refunded", "customer.subscription.deleted"])
    def test_events_without_ledger_effect_are_acknowledged(self, client, table, event_type):
        response = post_event(client, factories.envelope(event_type, factories.subscription()))

        assert response.status_code == 200
        assert response.json() == {"received": True}
        assert table.scan()["Items"] == []


@pytest.fixture
def subscription_state(processor):
    processor.add("subscriptions", factories.subscription(unit_amount=2500, interval="month"))
    processor.add("customers", factories.customer())
    return processor


@pytest.fixture
def token(token_service):
    return token_service.issue("sub_1", EMAIL)


def cancellation_items(table):
    return [item for item in table.scan()["Items"] if item["SK"] == "CANCELLATION"]


class TestPreviewCancellation:
    def test_preview(self, client, subscription_state, token):
        response = client.get("/subscriptions/cancel", params={"token": token, "subscriptionId": "sub_1"})

        assert response.status_code == 200
        body = response.json()
        assert body["token"] == token
        assert body["subscription"] == {
            "id": "sub_1",
            "status": "active",
            "amount": 25.0,
            "currency": "USD",
            "frequency": "monthly",
            "customer": {"name": "Dana Donor", "email": EMAIL},
        }

    @pytest.mark.parametrize("params", [{}, {"token": "abc"}, {"subscriptionId": "sub_1"}])
    def test_missing_parameters(self, client, params):
        response = client.get("/subscriptions/cancel", params=params)

        assert response.status_code == 400
        assert response.json() == {"error": "Missing required parameters"}

    def test_expired_token(self, client, subscription_state, token, clock):
        """Should answer 401 without looking the subscription up."""
        clock.advance(3601)

        response = client.get("/subscriptions/cancel", params={"token": token, "subscriptionId": "sub_1"})

        assert response.status_code == 401
        assert response.json() == {"error": "Invalid or expired token"}
        assert subscription_state.calls == []

    def test_token_for_other_subscription(self, client, subscription_state, token):
        response = client.get("/subscriptions/cancel", params={"token": token, "subscriptionId": "sub_2"})

        assert response.status_code == 401
        assert response.json() == {"error": "Invalid or expired token"}

    def test_subscription_not_found(self, client, token):
        response = client.get("/subscriptions/cancel", params={"token": token, "subscriptionId": "sub_1"})

        assert response.status_code == 404
        assert response.json() == {"error": "Subscription not found"}

    def test_processor_outage(self, client, subscription_state, token):
        subscription_state.fail_with = ProcessorUnavailable()

        response = client.get("/subscriptions/cancel", params={"token": token, "subscriptionId": "sub_1"})

        assert response.status_code == 500
        assert "error" in response.json()


class TestConfirmCancellation:
    def test_confirm(self, client, subscription_state, token, table):
        response = client.post("/subscriptions/cancel", json={"token": token, "confirmed": True})

        assert response.status_code == 200
        body = response.json()
        assert body["success"] is True
        assert body["message"] == "Subscription cancelled successfully"
        assert body["alreadyCancelled"] is False
        assert body["subscription"]["id"] == "sub_1"
        assert body["subscription"]["status"] == "cancelled"
        assert body["subscription"]["cancelledAt"]
        assert len(cancellation_items(table)) == 1

    def test_confirm_twice(self, client, subscription_state, token, table):
        """Repeated confirmation is a success both times, with a single audit record."""
        client.post("/subscriptions/cancel", json={"token": token, "confirmed": True})

        response = client.post("/subscriptions/cancel", json={"token": token, "confirmed": True})

        assert response.status_code == 200
        assert response.json()["alreadyCancelled"] is True
        assert response.json()["message"] == "Subscription is already cancelled"
        assert len(cancellation_items(table)) == 1

    @pytest.mark.parametrize("body", [{}, {"token": "abc"}, {"confirmed": True}, {"token": "abc", "confirmed": False}])
    def test_missing_parameters(self, client, body):
        response = client.post("/subscriptions/cancel", json=body)

        assert response.status_code == 400
        assert response.json() == {"error": "Missing required parameters"}

    @pytest.mark.parametrize("body", [
        {"token": 123, "confirmed": True},
        {"token": "abc", "confirmed": "maybe"},
        ["abc"],
    ])
    def test_malformed_body(self, client, subscription_state, body):
        response = client.post("/subscriptions/cancel", json=body)

        assert response.status_code == 400
        assert response.json() == {"error": "Missing required parameters"}
        assert subscription_state.calls == []

    def test_body_that_is_not_json(self, client, subscription_state):
        response = client.post("/subscriptions/cancel", content=b"not json",
                               headers={"Content-Type": "application/json"})

        assert response.status_code == 400
        assert response.json() == {"error": "Missing required parameters"}

    def test_invalid_token(self, client, subscription_state):
        response = client.post("/subscriptions/cancel", json={"token": "forged", "confirmed": True})

        assert response.status_code == 401
        assert response.json() == {"error": "Invalid or expired token"}
        assert subscription_state.subscriptions["sub_1"]["status"] == "active"


class TestReadOnlyViews:
    def test_total_and_recent(self, client):
        post_event(client, pi_1_event())

        total = client.get("/donations/total")
        recent = client.get("/donations/recent")

        assert total.json() == {"total_amount": 50.0}
        assert recent.status_code == 200
        assert [d["donor_name"] for d in recent.json()] == ["A"]
        assert recent.json()[0]["amount"] == 50.0

    def test_root(self, client):
        assert client.get("/").status_code == 200


class TestDonorHistory:
    def test_history(self, client, token_service):
        post_event(client, pi_1_event())

        response = client.get("/donations/history", params={"token": token_service.issue("sub_1", "a@x.com")})

        assert response.status_code == 200
        body = response.json()
        assert body["email"] == "a@x.com"
        assert body["name"] == "A"
        assert body["totalDonations"] == 50.0
        assert body["subscriptionStatus"] == "none"
        assert [(d["amount"], d["currency"], d["is_recurring"]) for d in body["donations"]] == [(50.0, "USD", False)]

    def test_missing_token(self, client):
        response = client.get("/donations/history")

        assert response.status_code == 400
        assert response.json() == {"error": "Missing required parameters"}

    def test_forged_token(self, client):
        response = client.get("/donations/history", params={"token": "forged"})

        assert response.status_code == 401
        assert response.json() == {"error": "Invalid or expired token"}


class TestRevokeManageLink:
    @pytest.fixture
    def revocable(self, client, data_access, clock):
        service = CancellationTokenService(factories.TOKEN_SECRET, site_url=factories.SITE_URL,
                                           revocation_store=data_access, clock=clock)
        client.app.dependency_overrides[get_token_service] = lambda: service
        return service

    def test_revoked_link_stops_working(self, client, revocable):
        token = revocable.issue("sub_1", EMAIL)

        response = client.post("/subscriptions/manage-link/revoke", json={"token": token})

        assert response.status_code == 200
        assert response.json() == {"success": True}
        with pytest.raises(InvalidToken):
            revocable.verify(token)

    def test_missing_token(self, client, revocable):
        response = client.post("/subscriptions/manage-link/revoke", json={})

        assert response.status_code == 400
        assert response.json() == {"error": "Missing required parameters"}

    def test_forged_token(self, client, revocable):
        response = client.post("/subscriptions/manage-link/revoke", json={"token": "forged"})

        assert response.status_code == 401

    def test_revocation_disabled(self, client, token):
        response = client.post("/subscriptions/manage-link/revoke", json={"token": token})

        assert response.status_code == 400
        assert response.json() == {"error": "Token revocation is not enabled"}


def test_error_bodies_are_json(client):
    response = client.post("/webhooks/stripe", content=b"{}", headers={"Stripe-Signature": "t=1,v1=bad"})

    assert response.headers["content-type"].startswith("application/json")
    assert set(json.loads(response.content)) == {"error"}
