import logging
from datetime import datetime, timezone
from decimal import Decimal
from urllib.parse import urlencode

from botocore.exceptions import BotoCoreError, ClientError
from pydantic import BaseModel

from donation_ledger.core.exceptions import (
    CustomerNotFound,
    InvalidToken,
    LedgerError,
    ProcessorRequestError,
    SubscriptionNotFound,
)
from donation_ledger.data_access.dynamodb import DynamoDataAccess
from donation_ledger.models.donation import SubscriptionCancellation, utcnow
from donation_ledger.models.events import Customer, Subscription
from donation_ledger.services.payment_processor import PaymentProcessor
from donation_ledger.services.side_effects import SideEffectDispatcher
from donation_ledger.services.token_service import CancellationTokenService

logger = logging.getLogger(__name__)


class SubscriptionView(BaseModel):
    id: str
    status: str
    amount: Decimal
    currency: str
    frequency: str
    customer_name: str
    customer_email: str


class CancellationResult(BaseModel):
    subscription_id: str
    cancelled_at: datetime
    already_cancelled: bool = False


class CancellationService:
    """Two-step, token-authenticated cancellation of a recurring donation.

    ``inspect`` never writes anything and can be repeated freely.
    ``confirm`` converges: a subscription that is already cancelled at the
    processor yields an ``already_cancelled`` result instead of an error.
    """

    def __init__(
        self,
        data_access: DynamoDataAccess,
        processor: PaymentProcessor,
        dispatcher: SideEffectDispatcher,
        token_service: CancellationTokenService,
        site_url: str = "",
    ):
        self.data_access = data_access
        self.processor = processor
        self.dispatcher = dispatcher
        self.token_service = token_service
        self.site_url = site_url.rstrip("/")

    def _fetch_subscription(self, subscription_id: str) -> Subscription:
        subscription = self.processor.get_subscription(subscription_id)
        if not subscription:
            raise SubscriptionNotFound()
        return subscription

    def inspect(self, token: str, subscription_id: str) -> SubscriptionView:
        claims = self.token_service.verify(token)
        if claims.subscription_id != subscription_id:
            logger.warning(f"Token for {claims.subscription_id} presented for {subscription_id}")
            raise InvalidToken()

        subscription = self._fetch_subscription(subscription_id)
        customer = self.processor.get_customer(subscription.customer) if subscription.customer else None
        if not customer:
            raise CustomerNotFound()

        return SubscriptionView(
            id=subscription.id,
            status=subscription.status or "unknown",
            amount=subscription.amount,
            currency=subscription.currency,
            frequency=subscription.frequency,
            customer_name=customer.name or "Donor",
            customer_email=customer.email or claims.email,
        )

    def confirm(self, token: str) -> CancellationResult:
        claims = self.token_service.verify(token)
        subscription_id = claims.subscription_id
        logger.info(f"Processing cancellation request for subscription: {subscription_id}")

        subscription = self._fetch_subscription(subscription_id)
        if subscription.is_canceled:
            logger.info(f"Subscription {subscription_id} is already cancelled")
            return self._already_cancelled(subscription)

        try:
            self.processor.cancel_subscription(subscription_id)
        except ProcessorRequestError:
            # A concurrent confirm may have won the race; re-read before failing
            current = self._fetch_subscription(subscription_id)
            if current.is_canceled:
                return self._already_cancelled(current)
            raise

        cancelled_at = utcnow()
        logger.info(f"Successfully cancelled subscription: {subscription_id}")

        customer = self._customer_or_none(subscription)
        customer_name = (customer.name if customer else None) or "Donor"

        total_before = self._mark_donor_cancelled(claims.email, subscription_id, cancelled_at)
        self._append_audit(SubscriptionCancellation(
            subscription_id=subscription_id,
            customer_email=claims.email,
            customer_name=customer_name,
            amount=subscription.amount,
            currency=subscription.currency,
            frequency=subscription.frequency,
            cancelled_at=cancelled_at,
            total_donations_before_cancellation=total_before,
        ))

        self.dispatcher.subscription_cancelled(
            email=claims.email,
            name=customer_name,
            subscription_id=subscription_id,
            amount=subscription.amount,
            currency=subscription.currency,
            frequency=subscription.frequency,
            cancelled_at=cancelled_at.isoformat(),
            reactivate_url=f"{self.site_url}/donations?{urlencode({'reactivate': 'true', 'email': claims.email})}",
        )

        return CancellationResult(subscription_id=subscription_id, cancelled_at=cancelled_at)

    def _already_cancelled(self, subscription: Subscription) -> CancellationResult:
        cancelled_at = (
            datetime.fromtimestamp(subscription.canceled_at, tz=timezone.utc)
            if subscription.canceled_at else utcnow()
        )
        return CancellationResult(subscription_id=subscription.id, cancelled_at=cancelled_at, already_cancelled=True)

    def _customer_or_none(self, subscription: Subscription) -> Customer | None:
        # The cancellation already happened; a missing customer only costs us the display name
        if not subscription.customer:
            return None
        try:
            return self.processor.get_customer(subscription.customer)
        except LedgerError as e:
            logger.warning(f"Could not load customer {subscription.customer}: {e}")
            return None

    def _mark_donor_cancelled(self, email: str, subscription_id: str, cancelled_at: datetime) -> Decimal:
        try:
            donor = self.data_access.mark_subscription_cancelled(email, subscription_id, cancelled_at)
        except (ClientError, BotoCoreError):
            logger.error(
                "Failed to update donor record for cancellation",
                extra={"context": {"donor_email": email, "subscription_id": subscription_id,
                                   "cancelled_at": cancelled_at.isoformat()}},
                exc_info=True,
            )
            return Decimal("0")
        if not donor:
            return Decimal("0")
        logger.info("Updated donor record for cancellation")
        return Decimal(donor.get("total_donations", 0))

    def _append_audit(self, cancellation: SubscriptionCancellation) -> None:
        try:
            if self.data_access.create_cancellation_record(cancellation):
                logger.info(f"Logged subscription cancellation for {cancellation.subscription_id}")
        except (ClientError, BotoCoreError):
            logger.warning(
                "Could not log cancellation to database",
                extra={"context": cancellation.model_dump(mode="json")},
                exc_info=True,
            )
