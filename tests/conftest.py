import os

# Settings are read lazily, but the AWS SDK and moto need credentials before any client exists.
os.environ.setdefault("AWS_ACCESS_KEY_ID", "testing")
os.environ.setdefault("AWS_SECRET_ACCESS_KEY", "testing")
os.environ.setdefault("AWS_SECURITY_TOKEN", "testing")
os.environ.setdefault("AWS_SESSION_TOKEN", "testing")
os.environ.setdefault("AWS_DEFAULT_REGION", "us-east-1")
os.environ.setdefault("AWS_REGION", "us-east-1")
os.environ.setdefault("STRIPE_SECRET_KEY", "sk_test_dummy")
os.environ.setdefault("STRIPE_WEBHOOK_SECRET", "whsec_test_secret")
os.environ.setdefault("TOKEN_SIGNING_SECRET", "test-token-signing-secret")
os.environ.setdefault("DYNAMODB_TABLE_NAME", "donations-test")
os.environ.setdefault("NOTIFICATION_QUEUE_URL", "https://sqs.us-east-1.amazonaws.com/123456789012/notifications")
os.environ.setdefault("RECEIPTS_BUCKET", "donation-receipts-test")
os.environ.setdefault("SES_FROM_EMAIL", "receipts@donor.org")

import time

import boto3
import pytest
from fastapi.testclient import TestClient
from moto import mock_aws

from donation_ledger.core.dependencies import (
    get_cancellation_service,
    get_donation_service,
    get_token_service,
    get_webhook_verifier,
)
from donation_ledger.core.exceptions import ProcessorRequestError
from donation_ledger.data_access.dynamodb import DynamoDataAccess
from donation_ledger.models.events import Charge, Customer, PaymentIntent, Subscription
from donation_ledger.services.cancellation_service import CancellationService
from donation_ledger.services.donation_service import DonationService
from donation_ledger.services.side_effects import SideEffectDispatcher
from donation_ledger.services.token_service import CancellationTokenService
from donation_ledger.services.webhook_verifier import WebhookVerifier

from factories import SITE_URL, TOKEN_SECRET, WEBHOOK_SECRET

REGION = "us-east-1"
TABLE_NAME = "donations-test"


class FakeProcessor:
    """In-memory stand-in for PaymentProcessor.

    ``fail_with`` makes every call raise the given exception; ``calls``
    records each call so tests can assert what was (not) fetched.
    """

    def __init__(self):
        self.subscriptions: dict[str, dict] = {}
        self.customers: dict[str, dict] = {}
        self.charges: dict[str, dict] = {}
        self.payment_intents: dict[str, dict] = {}
        self.invoice_payments: list[tuple[str, str]] = []
        self.calls: list[tuple[str, str]] = []
        self.fail_with: Exception | None = None

    def add(self, collection: str, obj: dict) -> dict:
        getattr(self, collection)[obj["id"]] = obj
        return obj

    def link_invoice(self, invoice_id: str, payment_intent_id: str):
        self.invoice_payments.append((invoice_id, payment_intent_id))

    def _record(self, name: str, object_id: str):
        self.calls.append((name, object_id))
        if self.fail_with is not None:
            raise self.fail_with

    def get_subscription(self, subscription_id):
        self._record("get_subscription", subscription_id)
        obj = self.subscriptions.get(subscription_id)
        return Subscription.model_validate(obj) if obj else None

    def get_customer(self, customer_id):
        self._record("get_customer", customer_id)
        obj = self.customers.get(customer_id)
        if not obj or obj.get("deleted"):
            return None
        return Customer.model_validate(obj)

    def get_charge(self, charge_id):
        self._record("get_charge", charge_id)
        obj = self.charges.get(charge_id)
        return Charge.model_validate(obj) if obj else None

    def get_payment_intent(self, payment_intent_id):
        self._record("get_payment_intent", payment_intent_id)
        obj = self.payment_intents.get(payment_intent_id)
        return PaymentIntent.model_validate(obj) if obj else None

    def find_invoice_for_payment_intent(self, payment_intent_id):
        self._record("find_invoice_for_payment_intent", payment_intent_id)
        return next((inv for inv, pi in self.invoice_payments if pi == payment_intent_id), None)

    def find_payment_intent_for_invoice(self, invoice_id):
        self._record("find_payment_intent_for_invoice", invoice_id)
        return next((pi for inv, pi in self.invoice_payments if inv == invoice_id), None)

    def cancel_subscription(self, subscription_id):
        self._record("cancel_subscription", subscription_id)
        obj = self.subscriptions.get(subscription_id)
        if obj is None or obj["status"] == "canceled":
            raise ProcessorRequestError(f"No such active subscription: '{subscription_id}'")
        obj["status"] = "canceled"
        obj["canceled_at"] = int(time.time())
        return Subscription.model_validate(obj)


class FrozenClock:
    def __init__(self, now: float):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


@pytest.fixture
def aws():
    with mock_aws():
        yield


@pytest.fixture
def table(aws):
    dynamodb = boto3.resource("dynamodb", region_name=REGION)
    return dynamodb.create_table(
        TableName=TABLE_NAME,
        KeySchema=[
            {"AttributeName": "PK", "KeyType": "HASH"},
            {"AttributeName": "SK", "KeyType": "RANGE"},
        ],
        AttributeDefinitions=[
            {"AttributeName": "PK", "AttributeType": "S"},
            {"AttributeName": "SK", "AttributeType": "S"},
            {"AttributeName": "payment_status", "AttributeType": "S"},
            {"AttributeName": "donor_email", "AttributeType": "S"},
            {"AttributeName": "created_at", "AttributeType": "S"},
        ],
        GlobalSecondaryIndexes=[
            {
                "IndexName": "RecentDonationsIndex",
                "KeySchema": [
                    {"AttributeName": "payment_status", "KeyType": "HASH"},
                    {"AttributeName": "created_at", "KeyType": "RANGE"},
                ],
                "Projection": {"ProjectionType": "ALL"},
            },
            {
                "IndexName": "DonorEmailIndex",
                "KeySchema": [
                    {"AttributeName": "donor_email", "KeyType": "HASH"},
                    {"AttributeName": "created_at", "KeyType": "RANGE"},
                ],
                "Projection": {"ProjectionType": "ALL"},
            },
        ],
        BillingMode="PAY_PER_REQUEST",
    )


@pytest.fixture
def data_access(table):
    return DynamoDataAccess(table=table)


@pytest.fixture
def sqs_client(aws):
    return boto3.client("sqs", region_name=REGION)


@pytest.fixture
def queue_url(sqs_client):
    return sqs_client.create_queue(QueueName="notifications")["QueueUrl"]


@pytest.fixture
def dispatcher(sqs_client, queue_url):
    return SideEffectDispatcher(sqs_client=sqs_client, notification_queue_url=queue_url)


@pytest.fixture
def clock():
    return FrozenClock(time.time())


@pytest.fixture
def token_service(clock):
    return CancellationTokenService(TOKEN_SECRET, site_url=SITE_URL, default_ttl=3600, clock=clock)


@pytest.fixture
def processor():
    return FakeProcessor()


@pytest.fixture
def donation_service(data_access, processor, dispatcher, token_service):
    return DonationService(
        data_access=data_access,
        processor=processor,
        dispatcher=dispatcher,
        token_service=token_service,
    )


@pytest.fixture
def cancellation_service(data_access, processor, dispatcher, token_service):
    return CancellationService(
        data_access=data_access,
        processor=processor,
        dispatcher=dispatcher,
        token_service=token_service,
        site_url=SITE_URL,
    )


@pytest.fixture
def client(donation_service, cancellation_service, token_service):
    from donation_ledger.api.main import app

    app.dependency_overrides[get_webhook_verifier] = lambda: WebhookVerifier(WEBHOOK_SECRET)
    app.dependency_overrides[get_donation_service] = lambda: donation_service
    app.dependency_overrides[get_cancellation_service] = lambda: cancellation_service
    app.dependency_overrides[get_token_service] = lambda: token_service
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()
