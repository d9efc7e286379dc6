import logging
from botocore.exceptions import ClientError
from tenacity import retry, stop_after_attempt, wait_exponential, retry_if_exception_type

logger = logging.getLogger(__name__)

class NotificationService:
    def __init__(self, client, from_email: str):
        self.ses_client = client
        self.from_email = from_email

    @retry(
        wait=wait_exponential(multiplier=1, min=1, max=4),
        stop=stop_after_attempt(3),
        retry=retry_if_exception_type(ClientError),
        reraise=True
    )
    def _send(self, email_to: str, subject: str, body_text: str):
        logger.info(f"Attempting to send '{subject}' to {email_to}...")

        self.ses_client.send_email(
            Source=self.from_email,
            Destination={'ToAddresses': [email_to]},
            Message={
                'Subject': {'Data': subject},
                'Body': {'Text': {'Data': body_text}}
            }
        )

        logger.info(f"Successfully sent '{subject}' to {email_to}")

    def send_donation_receipt(self, email_to: str, donor_name: str, amount: str, currency: str,
                              donation_type: str, donation_id: str, payment_method: str,
                              receipt_url: str | None = None, is_recurring: bool = False,
                              frequency: str | None = None, manage_url: str | None = None):
        subject = f"Your {donation_type} Donation Receipt"
        lines = [
            f"Hello {donor_name},",
            "",
            f"Thank you for your generous donation of {amount} {currency}.",
            f"Payment method: {payment_method}",
            f"Your donation ID is: {donation_id}",
        ]
        if is_recurring:
            lines.append(f"This is a {frequency} recurring donation.")
        if receipt_url:
            lines.append(f"View your receipt: {receipt_url}")
        if manage_url:
            lines += ["", f"Manage or cancel your recurring donation: {manage_url}"]
        lines += ["", "We appreciate your support!"]
        self._send(email_to, subject, "\n".join(lines))

    def send_cancellation_confirmation(self, email_to: str, donor_name: str, subscription_id: str,
                                       amount: str, currency: str, frequency: str,
                                       cancelled_at: str, reactivate_url: str):
        body_text = (
            f"Hello {donor_name},\n\n"
            f"Your {frequency} donation of {amount} {currency} has been cancelled.\n"
            f"Subscription: {subscription_id}\n"
            f"Cancelled at: {cancelled_at}\n\n"
            f"Thank you for your support. If you change your mind you can start again here:\n"
            f"{reactivate_url}"
        )
        self._send(email_to, "Your recurring donation has been cancelled", body_text)

    def send_payment_failed(self, email_to: str, donor_name: str, invoice_id: str, amount: str,
                            currency: str, hosted_invoice_url: str | None = None,
                            next_retry_date: str | None = None, is_recurring: bool = False):
        lines = [
            f"Hello {donor_name},",
            "",
            f"We were unable to process your {'recurring ' if is_recurring else ''}donation "
            f"of {amount} {currency} (invoice {invoice_id}).",
        ]
        if next_retry_date:
            lines.append(f"We will try again on {next_retry_date}.")
        if hosted_invoice_url:
            lines.append(f"You can review and pay the invoice here: {hosted_invoice_url}")
        self._send(email_to, "There was a problem with your donation", "\n".join(lines))

    def send_subscription_confirmation(self, email_to: str, donor_name: str, subscription_id: str,
                                       amount: str, currency: str, frequency: str, manage_url: str):
        body_text = (
            f"Hello {donor_name},\n\n"
            f"Thank you for setting up a {frequency} donation of {amount} {currency}.\n"
            f"Subscription: {subscription_id}\n\n"
            f"Manage or cancel at any time: {manage_url}"
        )
        self._send(email_to, "Your recurring donation is set up", body_text)

    def send_subscription_update(self, email_to: str, donor_name: str, subscription_id: str, changes: list[str],
                                 amount: str, currency: str, frequency: str, status: str,
                                 next_billing_date: str | None = None, manage_url: str | None = None):
        lines = [
            f"Hello {donor_name},",
            "",
            f"Your recurring donation ({subscription_id}) has changed:",
        ]
        lines += [f"  - {change}" for change in changes]
        lines += ["", f"Current donation: {amount} {currency}, {frequency} ({status})"]
        if next_billing_date and status == "active":
            lines.append(f"Next payment: {next_billing_date}")
        if manage_url:
            lines += ["", f"Manage or cancel your recurring donation: {manage_url}"]
        self._send(email_to, "Your recurring donation has been updated", "\n".join(lines))
