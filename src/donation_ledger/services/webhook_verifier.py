import json
import logging
import stripe

from donation_ledger.core.exceptions import InvalidSignature, MalformedEvent
from donation_ledger.models.events import WebhookEvent, classify

logger = logging.getLogger(__name__)


class WebhookVerifier:
    def __init__(self, webhook_secret: str, tolerance: int = stripe.Webhook.DEFAULT_TOLERANCE):
        self.webhook_secret = webhook_secret
        self.tolerance = tolerance

    def verify(self, payload: bytes, signature_header: str | None) -> WebhookEvent:
        """
        Checks the Stripe signature against the raw request body and returns
        the typed event. ``payload`` must be the bytes exactly as received.
        """
        if not signature_header:
            logger.warning("Webhook rejected: missing signature header")
            raise InvalidSignature("Missing signature")

        try:
            stripe.Webhook.construct_event(
                payload=payload,
                sig_header=signature_header,
                secret=self.webhook_secret,
                tolerance=self.tolerance
            )
        except ValueError as e:
            logger.warning(f"Webhook error: Invalid payload - {e}")
            raise MalformedEvent() from e
        except stripe.SignatureVerificationError as e:
            logger.warning(f"Webhook error: Invalid signature - {e}")
            raise InvalidSignature() from e

        # Same bytes the signature covered; construct_event already proved they decode.
        envelope = json.loads(payload)
        return classify(envelope)
