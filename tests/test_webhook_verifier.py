"""
Tests for webhook signature verification against the raw body.
"""

import json
import time

import pytest

from donation_ledger.core.exceptions import InvalidSignature, MalformedEvent
from donation_ledger.models.events import PaymentSucceeded, UnhandledEvent
from donation_ledger.services.webhook_verifier import WebhookVerifier

import factories


@pytest.fixture
def verifier():
    return WebhookVerifier(factories.WEBHOOK_SECRET, tolerance=300)


@pytest.fixture
def raw_event():
    event = factories.envelope(
        "payment.succeeded",
        factories.payment_intent(metadata={"donorEmail": "a@x.com", "donorName": "A"}),
    )
    # Stripe's own formatting; anything that re-serializes it changes the bytes
    return json.dumps(event, indent=2).encode("utf-8")


class TestWebhookVerifier:
    def test_valid_signature_returns_typed_event(self, verifier, raw_event):
        event = verifier.verify(raw_event, factories.sign(raw_event))

        assert isinstance(event, PaymentSucceeded)
        assert event.payment_intent.id == "pi_1"

    def test_tampered_body_is_rejected(self, verifier, raw_event):
        """Should reject a body changed after signing."""
        header = factories.sign(raw_event)
        tampered = raw_event.replace(b"5000", b"9000")

        with pytest.raises(InvalidSignature):
            verifier.verify(tampered, header)

    def test_reserialized_body_is_rejected(self, verifier, raw_event):
        """Should only accept the exact bytes that were signed."""
        header = factories.sign(raw_event)
        reserialized = json.dumps(json.loads(raw_event)).encode("utf-8")

        with pytest.raises(InvalidSignature):
            verifier.verify(reserialized, header)

    def test_wrong_secret_is_rejected(self, verifier, raw_event):
        with pytest.raises(InvalidSignature):
            verifier.verify(raw_event, factories.sign(raw_event, secret="whsec_someone_else"))

    @pytest.mark.parametrize("header", [None, ""])
    def test_missing_header_is_rejected(self, verifier, raw_event, header):
        with pytest.raises(InvalidSignature) as exc_info:
            verifier.verify(raw_event, header)

        assert exc_info.value.message == "Missing signature"

    def test_garbage_header_is_rejected(self, verifier, raw_event):
        with pytest.raises(InvalidSignature):
            verifier.verify(raw_event, "not-a-signature")

    def test_stale_timestamp_is_rejected(self, verifier, raw_event):
        """Should reject a correctly signed payload outside the replay tolerance."""
        stale = int(time.time()) - 3600

        with pytest.raises(InvalidSignature):
            verifier.verify(raw_event, factories.sign(raw_event, timestamp=stale))

    def test_signed_non_json_body_is_malformed(self, verifier):
        payload = b"this is not json"

        with pytest.raises(MalformedEvent):
            verifier.verify(payload, factories.sign(payload))

    def test_unknown_event_type_verifies(self, verifier):
        payload = factories.encode({"id": "evt_2", "type": "payout.paid", "data": {"object": {"id": "po_1"}}})

        event = verifier.verify(payload, factories.sign(payload))

        assert isinstance(event, UnhandledEvent)
