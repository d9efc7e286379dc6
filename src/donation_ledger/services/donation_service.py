import logging
from datetime import datetime, timezone
from botocore.exceptions import BotoCoreError, ClientError
from pydantic import BaseModel, EmailStr, TypeAdapter, ValidationError

from donation_ledger.core.exceptions import (
    DatastoreUnavailable,
    DuplicateDonation,
    LedgerError,
    MalformedEvent,
    MissingDonorEmail,
)
from donation_ledger.data_access.dynamodb import DynamoDataAccess
from donation_ledger.models.donation import ONE_TIME, Donation, Donor, FailedPayment, from_minor_units, utcnow
from donation_ledger.models.events import (
    BillingDetails,
    InvoicePaymentFailed,
    InvoicePaymentSucceeded,
    PaymentSucceeded,
    SubscriptionCanceled,
    SubscriptionCreated,
    SubscriptionUpdated,
    WebhookEvent,
)
from donation_ledger.services.payment_processor import PaymentProcessor
from donation_ledger.services.side_effects import SideEffectDispatcher
from donation_ledger.services.token_service import CancellationTokenService

logger = logging.getLogger(__name__)

RECORDED = "recorded"
DUPLICATE = "duplicate"
SKIPPED = "skipped"
ACKNOWLEDGED = "acknowledged"

_email_adapter = TypeAdapter(EmailStr)


def resolve_email(*candidates: str | None) -> str | None:
    """First candidate that is a usable address, lower-cased."""
    for candidate in candidates:
        if not candidate:
            continue
        try:
            return _email_adapter.validate_python(candidate.strip()).lower()
        except ValidationError:
            logger.warning(f"Ignoring unusable donor email {candidate!r}")
    return None


def _from_epoch(value: int | None) -> datetime:
    if value is None:
        return utcnow()
    return datetime.fromtimestamp(value, tz=timezone.utc)


class DonorHistory(BaseModel):
    email: str
    donor: Donor | None = None
    donations: list[dict] = []


class DonationService:
    def __init__(
        self,
        data_access: DynamoDataAccess,
        processor: PaymentProcessor,
        dispatcher: SideEffectDispatcher,
        token_service: CancellationTokenService,
    ):
        self.data_access = data_access
        self.processor = processor
        self.dispatcher = dispatcher
        self.token_service = token_service

    def handle_event(self, event: WebhookEvent) -> str:
        """Reconciles one verified event and returns what happened to it.

        Raises ``MissingDonorEmail`` / ``MalformedEvent`` for events that can
        never succeed, and ``DatastoreUnavailable`` / ``ProcessorUnavailable``
        for failures worth a redelivery.
        """
        logger.info(f"Processing {event.event_type} event {event.event_id}")

        if isinstance(event, PaymentSucceeded):
            return self.handle_payment_succeeded(event)
        elif isinstance(event, InvoicePaymentSucceeded):
            return self.handle_invoice_payment_succeeded(event)
        elif isinstance(event, InvoicePaymentFailed):
            return self.handle_invoice_payment_failed(event)
        elif isinstance(event, SubscriptionCreated):
            return self.handle_subscription_created(event)
        elif isinstance(event, SubscriptionUpdated):
            return self.handle_subscription_updated(event)
        elif isinstance(event, SubscriptionCanceled):
            # Ledger changes for cancellations only happen through the
            # token-authenticated cancellation flow.
            logger.info(f"Subscription {event.subscription.id} cancelled at the processor (status={event.subscription.status})")
            return ACKNOWLEDGED
        else:
            logger.warning(f"Received unhandled event type: {event.event_type}")
            return ACKNOWLEDGED

    # Charges

    def handle_payment_succeeded(self, event: PaymentSucceeded) -> str:
        intent = event.payment_intent
        metadata = intent.metadata
        subscription_id = metadata.get("subscriptionId")

        if intent.invoice and not subscription_id:
            logger.info(f"Skipping payment {intent.id}: invoice {intent.invoice} is reconciled by the invoice event")
            return SKIPPED

        existing = self.data_access.get_donation_by_payment_intent(intent.id)
        if existing:
            return self._resume(existing)

        if not subscription_id:
            invoice_id = self.processor.find_invoice_for_payment_intent(intent.id)
            if invoice_id:
                logger.info(f"Skipping payment {intent.id}: invoice {invoice_id} is reconciled by the invoice event")
                return SKIPPED

        charge = self.processor.get_charge(intent.latest_charge) if intent.latest_charge else None
        billing = charge.billing_details if charge else BillingDetails()

        email = resolve_email(metadata.get("donorEmail"), billing.email, intent.receipt_email)
        if not email:
            logger.error(
                f"Missing donor email for payment intent {intent.id}",
                extra={"context": {"event_id": event.event_id, "payment_intent_id": intent.id,
                                   "amount": intent.amount, "currency": intent.currency}},
            )
            raise MissingDonorEmail()

        is_recurring = bool(subscription_id)
        donation = self._build_donation(
            event,
            amount=intent.amount,
            currency=intent.currency,
            donation_type=metadata.get("donationType") or ("Recurring Donation" if is_recurring else "General Donation"),
            frequency=metadata.get("frequency") or ("monthly" if is_recurring else ONE_TIME),
            donor_name=metadata.get("donorName") or billing.name or "Anonymous",
            donor_email=email,
            donor_phone=metadata.get("donorPhone") or billing.phone,
            payment_method=charge.payment_method_label if charge else "Card",
            is_recurring=is_recurring,
            stripe_payment_intent_id=intent.id,
            stripe_charge_id=charge.id if charge else None,
            stripe_subscription_id=subscription_id,
            receipt_url=charge.receipt_url if charge else None,
            created_at=_from_epoch(intent.created),
        )
        return self._record(donation)

    def handle_invoice_payment_succeeded(self, event: InvoicePaymentSucceeded) -> str:
        invoice = event.invoice
        if not invoice.subscription:
            logger.info(f"Skipping non-subscription invoice {invoice.id}")
            return SKIPPED

        # Keyed by the payment intent so the intent's own event dedupes against it;
        # invoices settled without one are keyed by the invoice itself
        payment_intent_id = invoice.payment_intent or self.processor.find_payment_intent_for_invoice(invoice.id)
        donation_key = payment_intent_id or invoice.id
        existing = self.data_access.get_donation_by_payment_intent(donation_key)
        if existing:
            return self._resume(existing)

        subscription = self.processor.get_subscription(invoice.subscription)
        customer = self.processor.get_customer(invoice.customer) if invoice.customer else None
        if subscription and subscription.status != "active":
            logger.warning(f"Invoice {invoice.id} paid for subscription {subscription.id} in state {subscription.status}")

        email = resolve_email(invoice.customer_email, customer.email if customer else None)
        if not email:
            logger.error(
                f"Missing customer email for invoice {invoice.id}",
                extra={"context": {"event_id": event.event_id, "invoice_id": invoice.id,
                                   "customer_id": invoice.customer, "subscription_id": invoice.subscription}},
            )
            raise MissingDonorEmail("Missing customer email")

        charge_id = invoice.charge
        if not charge_id and payment_intent_id:
            intent = self.processor.get_payment_intent(payment_intent_id)
            charge_id = intent.latest_charge if intent else None
        charge = self.processor.get_charge(charge_id) if charge_id else None

        subscription_metadata = subscription.metadata if subscription else {}
        donation = self._build_donation(
            event,
            amount=invoice.amount_paid,
            currency=invoice.currency,
            donation_type=subscription_metadata.get("donationType") or "Recurring Donation",
            frequency=subscription.frequency if subscription else "monthly",
            donor_name=(invoice.customer_name or (customer.name if customer else None)
                        or subscription_metadata.get("donorName") or "Recurring Donor"),
            donor_email=email,
            donor_phone=invoice.customer_phone or (customer.phone if customer else None),
            payment_method=charge.payment_method_label if charge else "Card",
            is_recurring=True,
            stripe_payment_intent_id=donation_key,
            stripe_charge_id=charge_id,
            stripe_subscription_id=invoice.subscription,
            receipt_url=invoice.hosted_invoice_url or invoice.invoice_pdf,
            created_at=_from_epoch(invoice.created),
        )
        return self._record(donation, customer_id=invoice.customer)

    def _build_donation(self, event: WebhookEvent, amount: int, currency: str, **fields) -> Donation:
        try:
            return Donation(amount=from_minor_units(amount), currency=currency.upper(), **fields)
        except ValidationError as e:
            logger.error(
                f"Event {event.event_id} cannot be turned into a donation: {e}",
                extra={"context": {"event_id": event.event_id, "amount": amount, "currency": currency}},
            )
            raise MalformedEvent("Event does not describe a valid donation") from e

    def _record(self, donation: Donation, customer_id: str | None = None) -> str:
        # The donation and its pending-ledger marker go in first. A concurrent
        # duplicate loses the conditional put and stops here.
        try:
            item = self.data_access.create_donation_record(donation, customer_id=customer_id)
        except DuplicateDonation:
            logger.info(f"Skipped duplicate processing for payment {donation.stripe_payment_intent_id}.")
            return DUPLICATE
        return self._apply(donation, item, customer_id)

    def _resume(self, existing: dict) -> str:
        """Redelivery of a charge we already hold: finish its ledger update if one is still pending."""
        payment_intent_id = existing["stripe_payment_intent_id"]
        pending = self.data_access.get_pending_ledger(payment_intent_id)
        if not pending:
            logger.info(f"Skipped duplicate processing for payment {payment_intent_id}.")
            return DUPLICATE

        logger.warning(f"Donation {payment_intent_id} was recorded without its ledger update; applying it now")
        donation = Donation.model_validate({k: v for k, v in existing.items() if k not in ("PK", "SK")})
        return self._apply(donation, existing, pending.get("stripe_customer_id"))

    def _apply(self, donation: Donation, item: dict, customer_id: str | None) -> str:
        try:
            applied = self.data_access.apply_pending_donation(donation, customer_id=customer_id)
        except DatastoreUnavailable:
            logger.error(
                "Donation recorded but donor ledger update failed; left pending for redelivery",
                extra={"context": {
                    "payment_intent_id": donation.stripe_payment_intent_id,
                    "donor_email": donation.donor_email,
                    "amount": str(donation.amount),
                }},
            )
            raise
        if not applied:
            return DUPLICATE

        manage_url = None
        if donation.stripe_subscription_id:
            manage_url = self.token_service.manage_link(donation.stripe_subscription_id, donation.donor_email)
        self.dispatcher.donation_recorded(item, manage_url=manage_url)

        logger.info(f"Successfully processed payment {donation.stripe_payment_intent_id}.")
        return RECORDED

    # Notifications only

    def handle_invoice_payment_failed(self, event: InvoicePaymentFailed) -> str:
        invoice = event.invoice
        try:
            customer = self.processor.get_customer(invoice.customer) if invoice.customer else None
        except LedgerError as e:
            logger.warning(f"Could not load customer for failed invoice {invoice.id}: {e}")
            customer = None

        email = resolve_email(invoice.customer_email, customer.email if customer else None)
        if not email:
            logger.warning(f"No email found for failed invoice {invoice.id}")
            return ACKNOWLEDGED

        name = invoice.customer_name or (customer.name if customer else None) or "Donor"
        next_retry = _from_epoch(invoice.next_payment_attempt) if invoice.next_payment_attempt else None
        failed = FailedPayment(
            customer_email=email,
            customer_name=name,
            amount=from_minor_units(invoice.amount_due),
            currency=invoice.currency.upper(),
            invoice_id=invoice.id,
            subscription_id=invoice.subscription,
            failure_reason=invoice.billing_reason or "payment_failed",
            next_retry_date=next_retry,
            is_recurring=bool(invoice.subscription),
        )

        try:
            is_new = self.data_access.create_failed_payment_record(failed)
        except (ClientError, BotoCoreError):
            logger.warning(f"Could not log failed payment for invoice {invoice.id}", exc_info=True)
            is_new = True

        if is_new:
            self.dispatcher.payment_failed(
                email=email,
                name=name,
                invoice_id=invoice.number or invoice.id,
                amount=failed.amount,
                currency=failed.currency,
                hosted_invoice_url=invoice.hosted_invoice_url,
                next_retry_date=next_retry.isoformat() if next_retry else None,
                is_recurring=failed.is_recurring,
            )
        return ACKNOWLEDGED

    def handle_subscription_created(self, event: SubscriptionCreated) -> str:
        subscription = event.subscription
        logger.info(f"New {subscription.frequency} subscription {subscription.id}: {subscription.amount} {subscription.currency}")

        try:
            customer = self.processor.get_customer(subscription.customer) if subscription.customer else None
        except LedgerError as e:
            logger.warning(f"Could not load customer for subscription {subscription.id}: {e}")
            return ACKNOWLEDGED

        email = resolve_email(customer.email if customer else None)
        if not email:
            logger.warning(f"No email for new subscription {subscription.id}; welcome message not sent")
            return ACKNOWLEDGED

        self.dispatcher.subscription_started(
            email=email,
            name=customer.name or "Donor",
            subscription_id=subscription.id,
            amount=subscription.amount,
            currency=subscription.currency,
            frequency=subscription.frequency,
            manage_url=self.token_service.manage_link(subscription.id, email),
        )
        return ACKNOWLEDGED

    def handle_subscription_updated(self, event: SubscriptionUpdated) -> str:
        subscription = event.subscription
        changes = event.changes()
        if not changes:
            logger.info(f"Subscription {subscription.id} updated: no tracked changes")
            return ACKNOWLEDGED
        logger.info(f"Subscription {subscription.id} updated: {changes}")

        try:
            customer = self.processor.get_customer(subscription.customer) if subscription.customer else None
        except LedgerError as e:
            logger.warning(f"Could not load customer for subscription {subscription.id}: {e}")
            return ACKNOWLEDGED

        email = resolve_email(customer.email if customer else None)
        if not email:
            logger.warning(f"No email for subscription update {subscription.id}; notice not sent")
            return ACKNOWLEDGED

        next_billing = subscription.next_billing_at
        self.dispatcher.subscription_updated(
            email=email,
            name=customer.name or "Donor",
            subscription_id=subscription.id,
            changes=changes,
            amount=subscription.amount,
            currency=subscription.currency,
            frequency=subscription.frequency,
            status=subscription.status or "unknown",
            next_billing_date=_from_epoch(next_billing).isoformat() if next_billing else None,
            manage_url=None if subscription.is_canceled else self.token_service.manage_link(subscription.id, email),
        )
        return ACKNOWLEDGED

    # Read-only views

    def list_recent_donations(self, limit: int = 10) -> list[dict]:
        return self.data_access.get_recent_donations(limit)

    def get_total_donations(self):
        return self.data_access.get_total_donations()

    def get_donor_history(self, token: str) -> DonorHistory:
        """The donor's ledger entry and donations, for the holder of a manage link."""
        claims = self.token_service.verify(token)
        return DonorHistory(
            email=claims.email,
            donor=self.data_access.get_donor(claims.email),
            donations=self.data_access.list_donations_by_donor(claims.email),
        )
