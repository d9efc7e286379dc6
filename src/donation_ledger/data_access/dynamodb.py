import logging
from boto3.dynamodb.conditions import Key
from botocore.exceptions import BotoCoreError, ClientError
from datetime import datetime, timezone
from decimal import Decimal

from donation_ledger.core.exceptions import DatastoreUnavailable, DuplicateDonation
from donation_ledger.models.donation import (
    ONE_TIME,
    Donation,
    Donor,
    FailedPayment,
    SubscriptionCancellation,
    utcnow,
)

logger = logging.getLogger(__name__)

DONOR_PREFIX = "DONOR#"
DONATION_PREFIX = "DONATION#"
SUBSCRIPTION_PREFIX = "SUBSCRIPTION#"
INVOICE_PREFIX = "INVOICE#"
LEDGER_PENDING_PREFIX = "LEDGER_PENDING#"
REVOKED_TOKEN_PREFIX = "REVOKED_TOKEN#"

PROFILE_SK = "PROFILE"
DONATION_SK = "DONATION"
CANCELLATION_SK = "CANCELLATION"
PAYMENT_FAILED_SK = "PAYMENT_FAILED"
LEDGER_PENDING_SK = "PENDING"
REVOKED_SK = "REVOKED"
TOTALS_PK = "TOTALS"
DONATION_SUM_SK = "DONATION_SUM"

RECENT_DONATIONS_INDEX = "RecentDonationsIndex"
DONOR_EMAIL_INDEX = "DonorEmailIndex"


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def _is_conditional_failure(error: ClientError) -> bool:
    return error.response["Error"]["Code"] == "ConditionalCheckFailedException"


def _cancellation_codes(error: ClientError) -> list[str]:
    reasons = error.response.get("CancellationReasons")
    if reasons:
        return [reason.get("Code", "None") for reason in reasons]
    # Without modeled reasons the codes only appear in the message: "... [ConditionalCheckFailed, None]"
    message = error.response["Error"].get("Message", "")
    start, end = message.rfind("["), message.rfind("]")
    if start == -1 or end < start:
        return []
    return [code.strip() for code in message[start + 1:end].split(",")]


def _transaction_condition_failed(error: ClientError, index: int) -> bool:
    """True when the transaction was cancelled by the condition on item ``index``."""
    if error.response["Error"]["Code"] != "TransactionCanceledException":
        return False
    codes = _cancellation_codes(error)
    return len(codes) > index and codes[index] == "ConditionalCheckFailed"


class DynamoDataAccess:
    """Single-table store for donors, donations and the audit records.

    Donations are keyed by payment intent id so the table itself enforces
    "at most one Donation per charge". Each Donation is written together
    with a pending-ledger marker; the donor and running-total increments
    are applied in the same transaction that deletes that marker, so a
    charge reaches the ledger exactly once even across crashes.
    """

    def __init__(self, table):
        self.table = table

    def _pending_key(self, payment_intent_id: str) -> dict:
        return {"PK": f"{LEDGER_PENDING_PREFIX}{payment_intent_id}", "SK": LEDGER_PENDING_SK}

    # Donations

    def get_donation_by_payment_intent(self, payment_intent_id: str) -> dict | None:
        try:
            response = self.table.get_item(
                Key={
                    "PK": f"{DONATION_PREFIX}{payment_intent_id}",
                    "SK": DONATION_SK
                },
                ConsistentRead=True
            )
        except (ClientError, BotoCoreError) as e:
            logger.error(f"Error reading donation {payment_intent_id}: {e}")
            raise DatastoreUnavailable() from e
        return response.get("Item")

    def create_donation_record(self, donation: Donation, customer_id: str | None = None) -> dict:
        """Writes the Donation and its pending-ledger marker in one transaction.

        Raises ``DuplicateDonation`` when a Donation for the payment intent
        already exists; nothing is written in that case.
        """
        item = {
            "PK": f"{DONATION_PREFIX}{donation.stripe_payment_intent_id}",
            "SK": DONATION_SK,
            "donation_id": donation.donation_id,
            "amount": donation.amount,
            "currency": donation.currency,
            "donation_type": donation.donation_type,
            "frequency": donation.frequency,
            "donor_name": donation.donor_name,
            "donor_email": donation.donor_email,
            "donor_phone": donation.donor_phone,
            "payment_method": donation.payment_method,
            "payment_status": donation.payment_status,
            "is_recurring": donation.is_recurring,
            "stripe_payment_intent_id": donation.stripe_payment_intent_id,
            "stripe_charge_id": donation.stripe_charge_id,
            "stripe_subscription_id": donation.stripe_subscription_id,
            "receipt_url": donation.receipt_url,
            "created_at": donation.created_at.isoformat()
        }
        pending = {
            **self._pending_key(donation.stripe_payment_intent_id),
            "payment_intent_id": donation.stripe_payment_intent_id,
            "email": donation.donor_email,
            "amount": donation.amount,
            "stripe_customer_id": customer_id,
            "created_at": utcnow().isoformat(),
        }

        try:
            self.table.meta.client.transact_write_items(
                TransactItems=[
                    {"Put": {
                        "TableName": self.table.name,
                        "Item": item,
                        "ConditionExpression": "attribute_not_exists(PK)"
                    }},
                    {"Put": {"TableName": self.table.name, "Item": pending}},
                ]
            )
        except ClientError as e:
            if _transaction_condition_failed(e, 0):
                logger.info(f"Idempotency check: donation for {donation.stripe_payment_intent_id} already exists.")
                raise DuplicateDonation() from e
            logger.error(f"Error creating donation record: {e}")
            raise DatastoreUnavailable() from e
        except BotoCoreError as e:
            logger.error(f"Error creating donation record: {e}")
            raise DatastoreUnavailable() from e
        return item

    def get_pending_ledger(self, payment_intent_id: str) -> dict | None:
        try:
            response = self.table.get_item(Key=self._pending_key(payment_intent_id), ConsistentRead=True)
        except (ClientError, BotoCoreError) as e:
            logger.error(f"Error reading pending ledger marker for {payment_intent_id}: {e}")
            raise DatastoreUnavailable() from e
        return response.get("Item")

    def list_donations_by_donor(self, email: str, limit: int = 50) -> list[dict]:
        try:
            response = self.table.query(
                IndexName=DONOR_EMAIL_INDEX,
                KeyConditionExpression=Key("donor_email").eq(email),
                ScanIndexForward=False,
                Limit=limit
            )
        except (ClientError, BotoCoreError) as e:
            logger.error(f"Error listing donations for {email}: {e}")
            raise DatastoreUnavailable() from e
        return response.get("Items", [])

    def get_recent_donations(self, limit=10) -> list[dict]:
        try:
            response = self.table.query(
                IndexName=RECENT_DONATIONS_INDEX,
                KeyConditionExpression=Key("payment_status").eq("succeeded"),
                ScanIndexForward=False,
                Limit=limit
            )
            return response.get("Items", [])
        except ClientError as e:
            logger.error(f"Error getting recent donations: {e}")
            raise

    # Donor ledger

    def get_donor(self, email: str) -> Donor | None:
        try:
            response = self.table.get_item(
                Key={"PK": f"{DONOR_PREFIX}{email}", "SK": PROFILE_SK},
                ConsistentRead=True
            )
        except (ClientError, BotoCoreError) as e:
            logger.error(f"Error reading donor {email}: {e}")
            raise DatastoreUnavailable() from e
        item = response.get("Item")
        if not item:
            return None
        return Donor(**{k: v for k, v in item.items() if k not in ("PK", "SK")})

    def _donor_update(
        self,
        email: str,
        delta: Decimal,
        name: str,
        phone: str | None,
        frequency: str,
        donated_at: datetime,
        subscription_id: str | None,
        customer_id: str | None,
        activate: bool,
    ) -> dict:
        """update_item parameters adding ``delta`` to the donor's total.

        With ``activate`` the subscription becomes the donor's active one,
        on condition that it was never cancelled for this donor. Without it
        the charge still counts but the subscription fields are left alone.
        """
        if delta < 0:
            raise ValueError("Ledger delta must not be negative")

        now = utcnow().isoformat()
        set_clauses = [
            "#name = :name",
            "#phone = :phone",
            "#email = :email",
            "last_donation_date = :donated_at",
            "last_updated = :now",
            "created_at = if_not_exists(created_at, :now)",
        ]
        values = {
            ":delta": delta,
            ":name": name,
            ":phone": phone,
            ":email": email,
            ":frequency": frequency,
            ":donated_at": donated_at.isoformat(),
            ":now": now,
        }
        params = {}

        if activate:
            set_clauses += [
                "donation_frequency = :frequency",
                "subscription_status = :active",
                "active_subscription_id = :subscription_id",
                "subscription_start_date = if_not_exists(subscription_start_date, :donated_at)",
            ]
            values[":active"] = "active"
            values[":subscription_id"] = subscription_id
            params["ConditionExpression"] = (
                "attribute_not_exists(cancelled_subscription_ids) OR "
                "NOT contains(cancelled_subscription_ids, :subscription_id)"
            )
        else:
            if subscription_id:
                # Late charge for a cancelled subscription
                set_clauses.append("donation_frequency = if_not_exists(donation_frequency, :frequency)")
            else:
                set_clauses.append("donation_frequency = :frequency")
            set_clauses.append("subscription_status = if_not_exists(subscription_status, :none)")
            values[":none"] = "none"

        if customer_id:
            set_clauses.append("stripe_customer_id = :customer_id")
            values[":customer_id"] = customer_id

        params.update(
            Key={"PK": f"{DONOR_PREFIX}{email}", "SK": PROFILE_SK},
            UpdateExpression=f"SET {', '.join(set_clauses)} ADD total_donations :delta",
            ExpressionAttributeNames={"#name": "name", "#phone": "phone", "#email": "email"},
            ExpressionAttributeValues=values,
        )
        return params

    def upsert_donor(
        self,
        email: str,
        delta: Decimal,
        name: str,
        phone: str | None,
        frequency: str,
        donated_at: datetime,
        subscription_id: str | None = None,
        customer_id: str | None = None,
    ) -> dict:
        """Add ``delta`` to the donor's lifetime total, creating the donor if needed.

        A single update_item: the increment is applied by the store, so two
        charges for the same donor landing together both count. A charge for
        a subscription the donor already cancelled counts toward the total
        but does not make that subscription active again.
        """
        fields = dict(email=email, delta=delta, name=name, phone=phone, frequency=frequency,
                      donated_at=donated_at, subscription_id=subscription_id, customer_id=customer_id)
        attempts = [True, False] if subscription_id else [False]

        for activate in attempts:
            params = self._donor_update(activate=activate, **fields)
            try:
                response = self.table.update_item(**params, ReturnValues="ALL_NEW")
                return response.get("Attributes", {})
            except ClientError as e:
                if activate and _is_conditional_failure(e):
                    logger.info(f"Subscription {subscription_id} was cancelled by {email}; counting the charge only")
                    continue
                logger.error(f"Error updating donor ledger for {email}: {e}")
                raise DatastoreUnavailable() from e
            except BotoCoreError as e:
                logger.error(f"Error updating donor ledger for {email}: {e}")
                raise DatastoreUnavailable() from e

    def apply_pending_donation(self, donation: Donation, customer_id: str | None = None) -> bool:
        """Moves a recorded Donation into the donor ledger and the running total.

        The donor update, the total and the deletion of the pending marker
        commit together. Returns False when the marker is already gone,
        meaning another delivery applied this Donation.
        """
        fields = dict(
            email=donation.donor_email,
            delta=donation.amount,
            name=donation.donor_name,
            phone=donation.donor_phone,
            frequency=donation.frequency,
            donated_at=donation.created_at,
            subscription_id=donation.stripe_subscription_id,
            customer_id=customer_id,
        )
        payment_intent_id = donation.stripe_payment_intent_id
        attempts = [True, False] if donation.stripe_subscription_id else [False]

        for activate in attempts:
            transact_items = [
                {"Delete": {
                    "TableName": self.table.name,
                    "Key": self._pending_key(payment_intent_id),
                    "ConditionExpression": "attribute_exists(PK)"
                }},
                {"Update": {"TableName": self.table.name, **self._donor_update(activate=activate, **fields)}},
                {"Update": {"TableName": self.table.name, **self._totals_update(donation.amount)}},
            ]
            try:
                self.table.meta.client.transact_write_items(TransactItems=transact_items)
                return True
            except ClientError as e:
                if _transaction_condition_failed(e, 0):
                    logger.info(f"Ledger already holds donation {payment_intent_id}.")
                    return False
                if activate and _transaction_condition_failed(e, 1):
                    logger.info(f"Subscription {donation.stripe_subscription_id} was cancelled by "
                                f"{donation.donor_email}; counting the charge only")
                    continue
                logger.error(f"Error applying donation {payment_intent_id} to the ledger: {e}")
                raise DatastoreUnavailable() from e
            except BotoCoreError as e:
                logger.error(f"Error applying donation {payment_intent_id} to the ledger: {e}")
                raise DatastoreUnavailable() from e

    def mark_subscription_cancelled(self, email: str, subscription_id: str, cancelled_at: datetime) -> dict | None:
        """Records that ``subscription_id`` was cancelled by the donor.

        The donor's active subscription fields are only cleared when they
        point at ``subscription_id``; cancelling an older subscription leaves
        a newer active one in place. Returns None when there is no donor.
        """
        key = {"PK": f"{DONOR_PREFIX}{email}", "SK": PROFILE_SK}
        now = utcnow().isoformat()
        try:
            response = self.table.update_item(
                Key=key,
                UpdateExpression=(
                    "SET subscription_status = :cancelled, "
                    "subscription_cancelled_at = :cancelled_at, "
                    "active_subscription_id = :null, "
                    "donation_frequency = :one_time, "
                    "last_updated = :now "
                    "ADD cancelled_subscription_ids :cancelled_ids"
                ),
                ConditionExpression="attribute_exists(PK) AND active_subscription_id = :subscription_id",
                ExpressionAttributeValues={
                    ":cancelled": "cancelled",
                    ":cancelled_at": cancelled_at.isoformat(),
                    ":null": None,
                    ":one_time": ONE_TIME,
                    ":now": now,
                    ":subscription_id": subscription_id,
                    ":cancelled_ids": {subscription_id},
                },
                ReturnValues="ALL_NEW"
            )
            return response.get("Attributes", {})
        except ClientError as e:
            if not _is_conditional_failure(e):
                raise

        try:
            response = self.table.update_item(
                Key=key,
                UpdateExpression="SET last_updated = :now ADD cancelled_subscription_ids :cancelled_ids",
                ConditionExpression="attribute_exists(PK)",
                ExpressionAttributeValues={":now": now, ":cancelled_ids": {subscription_id}},
                ReturnValues="ALL_NEW"
            )
        except ClientError as e:
            if _is_conditional_failure(e):
                logger.info(f"No donor record for {email}; nothing to mark cancelled.")
                return None
            raise
        logger.info(f"Subscription {subscription_id} is not the active one for {email}; active fields kept")
        return response.get("Attributes", {})

    # Running total across all donors

    def _totals_update(self, amount: Decimal) -> dict:
        return {
            "Key": {
                "PK": TOTALS_PK,
                "SK": DONATION_SUM_SK
            },
            "UpdateExpression": "SET #total = if_not_exists(#total, :start) + :inc",
            "ExpressionAttributeNames": {
                "#total": "TotalAmount"
            },
            "ExpressionAttributeValues": {
                ":inc": amount,
                ":start": Decimal("0")
            },
        }

    def get_total_donations(self) -> Decimal:
        response = self.table.get_item(Key={"PK": TOTALS_PK, "SK": DONATION_SUM_SK})
        item = response.get("Item")
        if item and "TotalAmount" in item:
            return Decimal(item["TotalAmount"])
        return Decimal("0")

    # Audit records

    def create_cancellation_record(self, cancellation: SubscriptionCancellation) -> bool:
        """Returns False when a cancellation for the subscription is already on file."""
        item = {
            "PK": f"{SUBSCRIPTION_PREFIX}{cancellation.subscription_id}",
            "SK": CANCELLATION_SK,
            "subscription_id": cancellation.subscription_id,
            "customer_email": cancellation.customer_email,
            "customer_name": cancellation.customer_name,
            "amount": cancellation.amount,
            "currency": cancellation.currency,
            "frequency": cancellation.frequency,
            "cancelled_at": cancellation.cancelled_at.isoformat(),
            "cancellation_reason": cancellation.cancellation_reason,
            "total_donations_before_cancellation": cancellation.total_donations_before_cancellation,
            "voluntary_cancellation": cancellation.voluntary_cancellation,
        }
        try:
            self.table.put_item(Item=item, ConditionExpression="attribute_not_exists(PK)")
            return True
        except ClientError as e:
            if _is_conditional_failure(e):
                logger.info(f"Cancellation for {cancellation.subscription_id} already recorded.")
                return False
            raise

    def create_failed_payment_record(self, failed: FailedPayment) -> bool:
        item = {
            "PK": f"{INVOICE_PREFIX}{failed.invoice_id}",
            "SK": PAYMENT_FAILED_SK,
            "customer_email": failed.customer_email,
            "customer_name": failed.customer_name,
            "amount": failed.amount,
            "currency": failed.currency,
            "invoice_id": failed.invoice_id,
            "subscription_id": failed.subscription_id,
            "failure_reason": failed.failure_reason,
            "next_retry_date": _iso(failed.next_retry_date),
            "is_recurring": failed.is_recurring,
            "created_at": failed.created_at.isoformat(),
            "resolved": failed.resolved,
        }
        try:
            self.table.put_item(Item=item, ConditionExpression="attribute_not_exists(PK)")
            return True
        except ClientError as e:
            if _is_conditional_failure(e):
                logger.info(f"Failed payment for invoice {failed.invoice_id} already recorded.")
                return False
            raise

    # Token denylist

    def revoke_token(self, jti: str, expires_at: int) -> None:
        self.table.put_item(
            Item={
                "PK": f"{REVOKED_TOKEN_PREFIX}{jti}",
                "SK": REVOKED_SK,
                "revoked_at": datetime.now(timezone.utc).isoformat(),
                # DynamoDB TTL attribute; the entry is useless once the token expires
                "ttl": expires_at,
            }
        )

    def is_token_revoked(self, jti: str) -> bool:
        response = self.table.get_item(
            Key={"PK": f"{REVOKED_TOKEN_PREFIX}{jti}", "SK": REVOKED_SK}
        )
        return "Item" in response
