import uuid
from datetime import datetime, timezone
from decimal import Decimal, ROUND_HALF_UP
from pydantic import BaseModel, Field, EmailStr
from typing import Literal


PaymentStatus = Literal["succeeded"]
SubscriptionStatus = Literal["none", "active", "cancelled"]

ONE_TIME = "one-time"
CENTS = Decimal("0.01")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def from_minor_units(amount: int) -> Decimal:
    """5000 -> Decimal("50.00")."""
    return (Decimal(int(amount)) / 100).quantize(CENTS, rounding=ROUND_HALF_UP)


def interval_to_frequency(interval: str | None) -> str:
    # Stripe reports "day" / "week" / "month" / "year"
    if not interval:
        return "monthly"
    if interval == "day":
        return "daily"
    return f"{interval}ly"


class Donor(BaseModel):
    email: EmailStr
    name: str | None = None
    phone: str | None = None

    total_donations: Decimal = Decimal("0")
    last_donation_date: datetime | None = None
    donation_frequency: str | None = None

    subscription_status: SubscriptionStatus = "none"
    active_subscription_id: str | None = None
    stripe_customer_id: str | None = None
    subscription_start_date: datetime | None = None
    subscription_cancelled_at: datetime | None = None
    cancelled_subscription_ids: set[str] = set()

    created_at: datetime | None = None
    last_updated: datetime | None = None


class Donation(BaseModel):
    donation_id: str = Field(default_factory=lambda: str(uuid.uuid4()))

    amount: Decimal = Field(gt=0)
    currency: str = "USD"
    donation_type: str = "General Donation"
    frequency: str = ONE_TIME

    donor_name: str
    donor_email: EmailStr
    donor_phone: str | None = None

    payment_method: str = "Card"
    payment_status: PaymentStatus = "succeeded"
    is_recurring: bool = False

    stripe_payment_intent_id: str
    stripe_charge_id: str | None = None
    stripe_subscription_id: str | None = None
    receipt_url: str | None = None

    created_at: datetime = Field(default_factory=utcnow)


class SubscriptionCancellation(BaseModel):
    subscription_id: str
    customer_email: EmailStr
    customer_name: str
    amount: Decimal
    currency: str
    frequency: str
    cancelled_at: datetime = Field(default_factory=utcnow)
    cancellation_reason: str = "user_requested"
    total_donations_before_cancellation: Decimal = Decimal("0")
    voluntary_cancellation: bool = True


class FailedPayment(BaseModel):
    customer_email: EmailStr
    customer_name: str
    amount: Decimal
    currency: str
    invoice_id: str
    subscription_id: str | None = None
    failure_reason: str
    next_retry_date: datetime | None = None
    is_recurring: bool
    created_at: datetime = Field(default_factory=utcnow)
    resolved: bool = False
