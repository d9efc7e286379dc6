import logging
import stripe

from donation_ledger.core.exceptions import ProcessorMisconfigured, ProcessorRequestError, ProcessorUnavailable
from donation_ledger.models.events import Charge, Customer, InvoicePayment, PaymentIntent, Subscription

logger = logging.getLogger(__name__)

TRANSIENT_ERRORS = (
    stripe.APIConnectionError,
    stripe.RateLimitError,
    stripe.APIError,
)

# Our own credentials are wrong; repeating the call cannot help until someone fixes them
CONFIGURATION_ERRORS = (
    stripe.AuthenticationError,
    stripe.PermissionError,
)


def _to_plain(obj) -> dict:
    if hasattr(obj, "to_dict"):
        return obj.to_dict()
    return dict(obj)


def _is_missing(error: stripe.InvalidRequestError) -> bool:
    return getattr(error, "code", None) == "resource_missing"


def _misconfigured(description: str, error: stripe.StripeError) -> ProcessorMisconfigured:
    logger.critical(f"Stripe refused our credentials during {description}: {error}")
    return ProcessorMisconfigured(str(error))


class PaymentProcessor:
    """The handful of Stripe calls the pipeline needs, with errors translated.

    Timeouts are bounded by the HTTP client configured in
    ``core.dependencies``; a timeout surfaces as ``ProcessorUnavailable``.
    """

    def _call(self, description: str, fn, *args, **kwargs):
        try:
            return fn(*args, **kwargs)
        except TRANSIENT_ERRORS as e:
            logger.error(f"Stripe unavailable during {description}: {e}")
            raise ProcessorUnavailable() from e
        except CONFIGURATION_ERRORS as e:
            raise _misconfigured(description, e) from e
        except stripe.StripeError as e:
            logger.error(f"Stripe rejected {description}: {e}")
            raise ProcessorRequestError(str(e)) from e

    def _retrieve(self, description: str, fn, object_id: str):
        try:
            return fn(object_id)
        except stripe.InvalidRequestError as e:
            if _is_missing(e):
                logger.info(f"Stripe has no {description} {object_id}")
                return None
            raise ProcessorRequestError(str(e)) from e
        except TRANSIENT_ERRORS as e:
            logger.error(f"Stripe unavailable while retrieving {description} {object_id}: {e}")
            raise ProcessorUnavailable() from e
        except CONFIGURATION_ERRORS as e:
            raise _misconfigured(f"retrieval of {description} {object_id}", e) from e
        except stripe.StripeError as e:
            raise ProcessorRequestError(str(e)) from e

    def get_subscription(self, subscription_id: str) -> Subscription | None:
        obj = self._retrieve("subscription", stripe.Subscription.retrieve, subscription_id)
        return Subscription.model_validate(_to_plain(obj)) if obj else None

    def get_customer(self, customer_id: str) -> Customer | None:
        """Returns None for missing and for deleted customers."""
        obj = self._retrieve("customer", stripe.Customer.retrieve, customer_id)
        if not obj:
            return None
        customer = Customer.model_validate(_to_plain(obj))
        return None if customer.deleted else customer

    def get_charge(self, charge_id: str) -> Charge | None:
        obj = self._retrieve("charge", stripe.Charge.retrieve, charge_id)
        return Charge.model_validate(_to_plain(obj)) if obj else None

    def get_payment_intent(self, payment_intent_id: str) -> PaymentIntent | None:
        obj = self._retrieve("payment intent", stripe.PaymentIntent.retrieve, payment_intent_id)
        return PaymentIntent.model_validate(_to_plain(obj)) if obj else None

    def _invoice_payments(self, description: str, **params) -> list[InvoicePayment]:
        page = self._call(description, stripe.InvoicePayment.list, limit=1, **params)
        return [InvoicePayment.model_validate(_to_plain(obj)) for obj in page.data]

    def find_invoice_for_payment_intent(self, payment_intent_id: str) -> str | None:
        """Id of the invoice a payment intent settled, if any.

        Payment intents no longer carry their invoice, so the link is read
        from the invoice payments.
        """
        payments = self._invoice_payments(
            f"invoice lookup for {payment_intent_id}",
            payment={"type": "payment_intent", "payment_intent": payment_intent_id},
        )
        return payments[0].invoice if payments else None

    def find_payment_intent_for_invoice(self, invoice_id: str) -> str | None:
        payments = self._invoice_payments(f"payment lookup for {invoice_id}", invoice=invoice_id)
        return payments[0].payment.payment_intent if payments else None

    def cancel_subscription(self, subscription_id: str) -> Subscription:
        obj = self._call(f"cancel of {subscription_id}", stripe.Subscription.cancel, subscription_id)
        return Subscription.model_validate(_to_plain(obj))
