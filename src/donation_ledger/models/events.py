"""Typed webhook envelopes.

Every handled event kind gets its own model carrying only the fields the
pipeline reads. Anything else in the processor payload is dropped at parse
time so it cannot influence reconciliation.
"""
from decimal import Decimal
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, BeforeValidator, ConfigDict, Field, ValidationError, model_validator

from donation_ledger.core.exceptions import MalformedEvent
from donation_ledger.models.donation import from_minor_units, interval_to_frequency


def _expandable_id(value: Any) -> Any:
    # Stripe sends either "ch_123" or the expanded object
    if isinstance(value, dict):
        return value.get("id")
    return value


ExpandableId = Annotated[str | None, BeforeValidator(_expandable_id)]


class StripeObject(BaseModel):
    model_config = ConfigDict(extra="ignore")


class Recurring(StripeObject):
    interval: str | None = None


class Price(StripeObject):
    unit_amount: int | None = None
    currency: str | None = None
    recurring: Recurring | None = None


class SubscriptionItem(StripeObject):
    price: Price | None = None
    current_period_end: int | None = None


class SubscriptionItemList(StripeObject):
    data: list[SubscriptionItem] = []


class Subscription(StripeObject):
    id: str
    status: str | None = None
    customer: ExpandableId = None
    created: int | None = None
    canceled_at: int | None = None
    cancel_at_period_end: bool = False
    current_period_end: int | None = None
    metadata: dict[str, str] = {}
    items: SubscriptionItemList = SubscriptionItemList()

    @property
    def price(self) -> Price:
        if self.items.data and self.items.data[0].price:
            return self.items.data[0].price
        return Price()

    @property
    def amount(self) -> Decimal:
        return from_minor_units(self.price.unit_amount or 0)

    @property
    def currency(self) -> str:
        return (self.price.currency or "usd").upper()

    @property
    def frequency(self) -> str:
        if self.metadata.get("frequency"):
            return self.metadata["frequency"]
        recurring = self.price.recurring
        return interval_to_frequency(recurring.interval if recurring else None)

    @property
    def is_canceled(self) -> bool:
        return self.status in ("canceled", "cancelled")

    @property
    def next_billing_at(self) -> int | None:
        # Newer API versions report the period on the item
        if self.current_period_end:
            return self.current_period_end
        return self.items.data[0].current_period_end if self.items.data else None


class PaymentIntent(StripeObject):
    id: str
    amount: int
    currency: str
    created: int | None = None
    metadata: dict[str, str] = {}
    latest_charge: ExpandableId = None
    invoice: ExpandableId = None
    receipt_email: str | None = None


class Invoice(StripeObject):
    id: str
    number: str | None = None
    amount_paid: int = 0
    amount_due: int = 0
    currency: str = "usd"
    created: int | None = None
    customer: ExpandableId = None
    customer_email: str | None = None
    customer_name: str | None = None
    customer_phone: str | None = None
    subscription: ExpandableId = None
    payment_intent: ExpandableId = None
    charge: ExpandableId = None
    hosted_invoice_url: str | None = None
    invoice_pdf: str | None = None
    billing_reason: str | None = None
    next_payment_attempt: int | None = None

    @model_validator(mode="before")
    @classmethod
    def _lift_moved_fields(cls, data: Any) -> Any:
        # Newer API versions moved the subscription under parent.subscription_details
        # and the payment intent / charge under payments.data[].payment
        if not isinstance(data, dict):
            return data
        lifted = {}
        if not data.get("subscription"):
            parent = data.get("parent") or {}
            details = parent.get("subscription_details") or {}
            if details.get("subscription"):
                lifted["subscription"] = details["subscription"]
        if not data.get("payment_intent") or not data.get("charge"):
            payment = _first_payment(data.get("payments"))
            for field in ("payment_intent", "charge"):
                if not data.get(field) and payment.get(field):
                    lifted[field] = payment[field]
        return {**data, **lifted} if lifted else data


class InvoicePaymentDetails(StripeObject):
    type: str | None = None
    payment_intent: ExpandableId = None
    charge: ExpandableId = None


class InvoicePayment(StripeObject):
    """Link between an invoice and the payment that settled it."""
    id: str
    invoice: ExpandableId = None
    payment: InvoicePaymentDetails = InvoicePaymentDetails()


def _first_payment(payments: Any) -> dict:
    if not isinstance(payments, dict):
        return {}
    for entry in payments.get("data") or []:
        payment = (entry or {}).get("payment") or {}
        if payment.get("payment_intent") or payment.get("charge"):
            return {field: _expandable_id(payment.get(field)) for field in ("payment_intent", "charge")}
    return {}


class EventBase(BaseModel):
    event_id: str = ""
    event_type: str


class PaymentSucceeded(EventBase):
    kind: Literal["payment_succeeded"] = "payment_succeeded"
    payment_intent: PaymentIntent


class InvoicePaymentSucceeded(EventBase):
    kind: Literal["invoice_payment_succeeded"] = "invoice_payment_succeeded"
    invoice: Invoice


class InvoicePaymentFailed(EventBase):
    kind: Literal["invoice_payment_failed"] = "invoice_payment_failed"
    invoice: Invoice


class SubscriptionCreated(EventBase):
    kind: Literal["subscription_created"] = "subscription_created"
    subscription: Subscription


class SubscriptionUpdated(EventBase):
    kind: Literal["subscription_updated"] = "subscription_updated"
    subscription: Subscription
    previous_status: str | None = None
    previous_cancel_at_period_end: bool | None = None
    previous_unit_amount: int | None = None

    def changes(self) -> list[str]:
        changes = []
        current = self.subscription
        if self.previous_unit_amount is not None:
            previous_amount = from_minor_units(self.previous_unit_amount)
            if previous_amount != current.amount:
                changes.append(f"Amount changed from {previous_amount} to {current.amount}")
        if self.previous_status and self.previous_status != current.status:
            changes.append(f"Status changed from {self.previous_status} to {current.status}")
        if self.previous_cancel_at_period_end is not None:
            if current.cancel_at_period_end and not self.previous_cancel_at_period_end:
                changes.append("Subscription scheduled for cancellation at period end")
            elif not current.cancel_at_period_end and self.previous_cancel_at_period_end:
                changes.append("Scheduled cancellation was withdrawn")
        return changes


class SubscriptionCanceled(EventBase):
    kind: Literal["subscription_canceled"] = "subscription_canceled"
    subscription: Subscription


class UnhandledEvent(EventBase):
    kind: Literal["unhandled"] = "unhandled"


WebhookEvent = Annotated[
    Union[
        PaymentSucceeded,
        InvoicePaymentSucceeded,
        InvoicePaymentFailed,
        SubscriptionCreated,
        SubscriptionUpdated,
        SubscriptionCanceled,
        UnhandledEvent,
    ],
    Field(discriminator="kind"),
]

# Both the generic names and Stripe's own names are accepted.
EVENT_TYPES: dict[str, str] = {
    "payment.succeeded": "payment_succeeded",
    "payment_intent.succeeded": "payment_succeeded",
    "invoice.payment_succeeded": "invoice_payment_succeeded",
    "invoice.payment_failed": "invoice_payment_failed",
    "subscription.created": "subscription_created",
    "customer.subscription.created": "subscription_created",
    "subscription.updated": "subscription_updated",
    "customer.subscription.updated": "subscription_updated",
    "subscription.canceled": "subscription_canceled",
    "subscription.deleted": "subscription_canceled",
    "customer.subscription.deleted": "subscription_canceled",
}


def _previous_unit_amount(previous: dict) -> int | None:
    items = previous.get("items")
    if not isinstance(items, dict):
        return None
    data = items.get("data") or []
    if not data:
        return None
    price = (data[0] or {}).get("price") or {}
    return price.get("unit_amount")


def classify(envelope: dict) -> WebhookEvent:
    """Map a decoded (already verified) envelope onto its typed variant.

    Unknown event types come back as ``UnhandledEvent``; a known type whose
    object cannot be parsed raises ``MalformedEvent``.
    """
    if not isinstance(envelope, dict):
        raise MalformedEvent("Event envelope is not an object")

    event_type = envelope.get("type")
    if not isinstance(event_type, str) or not event_type:
        raise MalformedEvent("Event type missing")

    event_id = envelope.get("id") or ""
    kind = EVENT_TYPES.get(event_type)
    if kind is None:
        return UnhandledEvent(event_id=event_id, event_type=event_type)

    data = envelope.get("data")
    obj = data.get("object") if isinstance(data, dict) else None
    if not isinstance(obj, dict):
        raise MalformedEvent(f"Event {event_type} carries no data object")

    common = {"event_id": event_id, "event_type": event_type}
    try:
        if kind == "payment_succeeded":
            return PaymentSucceeded(**common, payment_intent=PaymentIntent.model_validate(obj))
        if kind == "invoice_payment_succeeded":
            return InvoicePaymentSucceeded(**common, invoice=Invoice.model_validate(obj))
        if kind == "invoice_payment_failed":
            return InvoicePaymentFailed(**common, invoice=Invoice.model_validate(obj))

        subscription = Subscription.model_validate(obj)
        if kind == "subscription_created":
            return SubscriptionCreated(**common, subscription=subscription)
        if kind == "subscription_updated":
            previous = data.get("previous_attributes") or {}
            return SubscriptionUpdated(
                **common,
                subscription=subscription,
                previous_status=previous.get("status"),
                previous_cancel_at_period_end=previous.get("cancel_at_period_end"),
                previous_unit_amount=_previous_unit_amount(previous),
            )
        return SubscriptionCanceled(**common, subscription=subscription)
    except ValidationError as e:
        raise MalformedEvent(f"Event {event_type} has an unexpected shape: {e.error_count()} error(s)") from e


class BillingDetails(StripeObject):
    name: str | None = None
    email: str | None = None
    phone: str | None = None


class Card(StripeObject):
    brand: str | None = None
    last4: str | None = None


class PaymentMethodDetails(StripeObject):
    type: str | None = None
    card: Card | None = None


class Charge(StripeObject):
    id: str
    receipt_url: str | None = None
    billing_details: BillingDetails = BillingDetails()
    payment_method_details: PaymentMethodDetails | None = None

    @property
    def payment_method_label(self) -> str:
        details = self.payment_method_details
        if not details:
            return "Card"
        if details.card:
            brand = (details.card.brand or "card").upper()
            return f"{brand} •••• {details.card.last4 or '••••'}"
        return details.type or "Card"


class Customer(StripeObject):
    id: str
    name: str | None = None
    email: str | None = None
    phone: str | None = None
    deleted: bool = False
