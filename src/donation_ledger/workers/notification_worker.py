import json
import logging
from donation_ledger.core.dependencies import get_notification_service, get_receipt_service
from donation_ledger.services.side_effects import (
    CANCELLATION_EMAIL,
    DONATION_EMAIL,
    PAYMENT_FAILED_EMAIL,
    RECEIPT,
    SUBSCRIPTION_EMAIL,
    SUBSCRIPTION_UPDATE_EMAIL,
)

# We need to configure logging here since workers are entry points
from donation_ledger.core.logging_config import configure_logging
configure_logging()

logger = logging.getLogger(__name__)


def process_job(job: dict, notification_service=None, receipt_service=None):
    job_type = job.get("type")

    if job_type == RECEIPT:
        receipt_service = receipt_service or get_receipt_service()
        receipt_service.generate_receipt(
            donation_id=job['donation_id'],
            donor_name=job['donor_name'],
            amount=job['amount'],
            currency=job['currency'],
            donation_type=job['donation_type'],
            payment_method=job['payment_method'],
            created_at=job['created_at']
        )
        return

    notification_service = notification_service or get_notification_service()

    if job_type == DONATION_EMAIL:
        notification_service.send_donation_receipt(
            email_to=job['email_to'],
            donor_name=job['donor_name'],
            amount=job['amount'],
            currency=job['currency'],
            donation_type=job['donation_type'],
            donation_id=job['donation_id'],
            payment_method=job['payment_method'],
            receipt_url=job.get('receipt_url'),
            is_recurring=job.get('is_recurring', False),
            frequency=job.get('frequency'),
            manage_url=job.get('manage_url')
        )
    elif job_type == CANCELLATION_EMAIL:
        notification_service.send_cancellation_confirmation(
            email_to=job['email_to'],
            donor_name=job['donor_name'],
            subscription_id=job['subscription_id'],
            amount=job['amount'],
            currency=job['currency'],
            frequency=job['frequency'],
            cancelled_at=job['cancelled_at'],
            reactivate_url=job['reactivate_url']
        )
    elif job_type == PAYMENT_FAILED_EMAIL:
        notification_service.send_payment_failed(
            email_to=job['email_to'],
            donor_name=job['donor_name'],
            invoice_id=job['invoice_id'],
            amount=job['amount'],
            currency=job['currency'],
            hosted_invoice_url=job.get('hosted_invoice_url'),
            next_retry_date=job.get('next_retry_date'),
            is_recurring=job.get('is_recurring', False)
        )
    elif job_type == SUBSCRIPTION_EMAIL:
        notification_service.send_subscription_confirmation(
            email_to=job['email_to'],
            donor_name=job['donor_name'],
            subscription_id=job['subscription_id'],
            amount=job['amount'],
            currency=job['currency'],
            frequency=job['frequency'],
            manage_url=job['manage_url']
        )
    elif job_type == SUBSCRIPTION_UPDATE_EMAIL:
        notification_service.send_subscription_update(
            email_to=job['email_to'],
            donor_name=job['donor_name'],
            subscription_id=job['subscription_id'],
            changes=job['changes'],
            amount=job['amount'],
            currency=job['currency'],
            frequency=job['frequency'],
            status=job['status'],
            next_billing_date=job.get('next_billing_date'),
            manage_url=job.get('manage_url')
        )
    else:
        logger.warning(f"Skipping notification job of unknown type: {job_type}")


def lambda_handler(event, context):
    logger.info(f"Received {len(event['Records'])} notification jobs.")

    for record in event['Records']:
        try:
            job = json.loads(record['body'])
            process_job(job)

        except Exception as e:
            logger.error(f"CRITICAL: Failed to process message {record['messageId']}. Error: {e}")
            raise e

    return {'statusCode': 200}
