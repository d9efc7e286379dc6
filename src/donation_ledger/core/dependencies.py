import boto3
import stripe
from botocore.config import Config
from functools import lru_cache

from donation_ledger.core.config import get_settings
from donation_ledger.data_access.dynamodb import DynamoDataAccess
from donation_ledger.services.cancellation_service import CancellationService
from donation_ledger.services.donation_service import DonationService
from donation_ledger.services.notification_service import NotificationService
from donation_ledger.services.payment_processor import PaymentProcessor
from donation_ledger.services.receipt_service import ReceiptService
from donation_ledger.services.side_effects import SideEffectDispatcher
from donation_ledger.services.token_service import CancellationTokenService
from donation_ledger.services.webhook_verifier import WebhookVerifier


@lru_cache()
def get_boto_session() -> boto3.Session:
    settings = get_settings()
    return boto3.Session(
        region_name=settings.AWS_REGION,
        profile_name=settings.AWS_PROFILE
    )

@lru_cache()
def get_boto_config() -> Config:
    settings = get_settings()
    return Config(
        connect_timeout=settings.DATASTORE_TIMEOUT_SECONDS,
        read_timeout=settings.DATASTORE_TIMEOUT_SECONDS,
        retries={"max_attempts": 2, "mode": "standard"}
    )

@lru_cache()
def get_data_access() -> DynamoDataAccess:
    session = get_boto_session()
    dynamo_resource = session.resource('dynamodb', config=get_boto_config())
    table = dynamo_resource.Table(get_settings().DYNAMODB_TABLE_NAME)
    return DynamoDataAccess(table=table)

@lru_cache()
def get_payment_processor() -> PaymentProcessor:
    settings = get_settings()
    stripe.api_key = settings.STRIPE_SECRET_KEY
    stripe.default_http_client = stripe.RequestsClient(timeout=settings.PROCESSOR_TIMEOUT_SECONDS)
    # Redelivery of the webhook is the retry mechanism
    stripe.max_network_retries = 0
    return PaymentProcessor()

@lru_cache()
def get_webhook_verifier() -> WebhookVerifier:
    settings = get_settings()
    return WebhookVerifier(
        webhook_secret=settings.STRIPE_WEBHOOK_SECRET,
        tolerance=settings.STRIPE_WEBHOOK_TOLERANCE_SECONDS
    )

@lru_cache()
def get_token_service() -> CancellationTokenService:
    settings = get_settings()
    return CancellationTokenService(
        secret=settings.TOKEN_SIGNING_SECRET,
        site_url=settings.SITE_URL,
        default_ttl=settings.CANCELLATION_TOKEN_TTL_SECONDS,
        revocation_store=get_data_access() if settings.TOKEN_REVOCATION_ENABLED else None
    )

@lru_cache()
def get_side_effect_dispatcher() -> SideEffectDispatcher:
    session = get_boto_session()
    return SideEffectDispatcher(
        sqs_client=session.client('sqs', config=get_boto_config()),
        notification_queue_url=get_settings().NOTIFICATION_QUEUE_URL
    )

@lru_cache()
def get_notification_service() -> NotificationService:
    session = get_boto_session()
    return NotificationService(
        client=session.client('ses', config=get_boto_config()),
        from_email=get_settings().SES_FROM_EMAIL
    )

@lru_cache()
def get_receipt_service() -> ReceiptService:
    session = get_boto_session()
    return ReceiptService(
        s3_client=session.client('s3', config=get_boto_config()),
        bucket=get_settings().RECEIPTS_BUCKET
    )

@lru_cache()
def get_donation_service() -> DonationService:
    return DonationService(
        data_access=get_data_access(),
        processor=get_payment_processor(),
        dispatcher=get_side_effect_dispatcher(),
        token_service=get_token_service()
    )

@lru_cache()
def get_cancellation_service() -> CancellationService:
    return CancellationService(
        data_access=get_data_access(),
        processor=get_payment_processor(),
        dispatcher=get_side_effect_dispatcher(),
        token_service=get_token_service(),
        site_url=get_settings().SITE_URL
    )
