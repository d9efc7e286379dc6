import json
import logging

logger = logging.getLogger(__name__)

RECEIPT = "RECEIPT"
DONATION_EMAIL = "DONATION_EMAIL"
CANCELLATION_EMAIL = "CANCELLATION_EMAIL"
PAYMENT_FAILED_EMAIL = "PAYMENT_FAILED_EMAIL"
SUBSCRIPTION_EMAIL = "SUBSCRIPTION_EMAIL"
SUBSCRIPTION_UPDATE_EMAIL = "SUBSCRIPTION_UPDATE_EMAIL"


class SideEffectDispatcher:
    """Queues follow-up jobs for the notification worker.

    Every job is sent on its own and a failed send is only logged: the
    financial record is already durable by the time anything is dispatched.
    """

    def __init__(self, sqs_client, notification_queue_url: str):
        self.sqs_client = sqs_client
        self.notification_queue_url = notification_queue_url

    def _enqueue(self, job: dict) -> bool:
        try:
            self.sqs_client.send_message(
                QueueUrl=self.notification_queue_url,
                MessageBody=json.dumps(job, default=str)
            )
            return True
        except Exception as e:
            logger.error(
                f"Failed to queue {job['type']} job: {e}",
                extra={"context": job},
                exc_info=True,
            )
            return False

    def donation_recorded(self, donation: dict, manage_url: str | None = None) -> dict[str, bool]:
        """Receipt generation and confirmation email for a freshly recorded donation."""
        reference = {
            "donation_id": donation["donation_id"],
            "payment_intent_id": donation["stripe_payment_intent_id"],
            "email_to": donation["donor_email"],
            "donor_name": donation["donor_name"],
            "amount": str(donation["amount"]),
            "currency": donation["currency"],
            "donation_type": donation["donation_type"],
            "frequency": donation["frequency"],
            "payment_method": donation["payment_method"],
            "created_at": donation["created_at"],
        }
        return {
            RECEIPT: self._enqueue({"type": RECEIPT, **reference}),
            DONATION_EMAIL: self._enqueue({
                "type": DONATION_EMAIL,
                **reference,
                "is_recurring": donation["is_recurring"],
                "receipt_url": donation.get("receipt_url"),
                "manage_url": manage_url,
            }),
        }

    def subscription_cancelled(self, email: str, name: str, subscription_id: str, amount, currency: str,
                               frequency: str, cancelled_at, reactivate_url: str) -> bool:
        return self._enqueue({
            "type": CANCELLATION_EMAIL,
            "email_to": email,
            "donor_name": name,
            "subscription_id": subscription_id,
            "amount": str(amount),
            "currency": currency,
            "frequency": frequency,
            "cancelled_at": cancelled_at,
            "reactivate_url": reactivate_url,
        })

    def payment_failed(self, email: str, name: str, invoice_id: str, amount, currency: str,
                       hosted_invoice_url: str | None, next_retry_date, is_recurring: bool) -> bool:
        return self._enqueue({
            "type": PAYMENT_FAILED_EMAIL,
            "email_to": email,
            "donor_name": name,
            "invoice_id": invoice_id,
            "amount": str(amount),
            "currency": currency,
            "hosted_invoice_url": hosted_invoice_url,
            "next_retry_date": next_retry_date,
            "is_recurring": is_recurring,
        })

    def subscription_started(self, email: str, name: str, subscription_id: str, amount, currency: str,
                             frequency: str, manage_url: str) -> bool:
        return self._enqueue({
            "type": SUBSCRIPTION_EMAIL,
            "email_to": email,
            "donor_name": name,
            "subscription_id": subscription_id,
            "amount": str(amount),
            "currency": currency,
            "frequency": frequency,
            "manage_url": manage_url,
        })

    def subscription_updated(self, email: str, name: str, subscription_id: str, changes: list[str], amount,
                             currency: str, frequency: str, status: str, next_billing_date,
                             manage_url: str | None) -> bool:
        return self._enqueue({
            "type": SUBSCRIPTION_UPDATE_EMAIL,
            "email_to": email,
            "donor_name": name,
            "subscription_id": subscription_id,
            "changes": changes,
            "amount": str(amount),
            "currency": currency,
            "frequency": frequency,
            "status": status,
            "next_billing_date": next_billing_date,
            "manage_url": manage_url,
        })
