from fastapi import (
    APIRouter,
    Request,
    Header,
    Depends,
    HTTPException,
    Query
)
from starlette.concurrency import run_in_threadpool
from typing import Optional
import logging

from donation_ledger.core.dependencies import (
    get_cancellation_service,
    get_donation_service,
    get_token_service,
    get_webhook_verifier
)
from donation_ledger.core.exceptions import (
    CustomerNotFound,
    DatastoreUnavailable,
    InvalidSignature,
    InvalidToken,
    LedgerError,
    MalformedEvent,
    MissingDonorEmail,
    ProcessorMisconfigured,
    ProcessorRequestError,
    ProcessorUnavailable,
    RevocationDisabled,
    SubscriptionNotFound
)
from donation_ledger.api.schemas import (
    CancellationConfirmRequest,
    CancellationConfirmResponse,
    CancellationPreviewResponse,
    CancelledSubscription,
    CustomerSummary,
    DonorHistoryResponse,
    HistoryDonation,
    PublicDonationResponse,
    RevokeLinkRequest,
    RevokeLinkResponse,
    SubscriptionDetails,
    TotalDonationResponse,
    WebhookAck
)
from donation_ledger.services.cancellation_service import CancellationService
from donation_ledger.services.donation_service import DonationService
from donation_ledger.services.token_service import CancellationTokenService
from donation_ledger.services.webhook_verifier import WebhookVerifier

router = APIRouter()
logger = logging.getLogger(__name__)


@router.post("/webhooks/stripe", response_model=WebhookAck)
async def handle_stripe_webhook(
    request: Request,
    stripe_signature: Optional[str] = Header(None),
    verifier: WebhookVerifier = Depends(get_webhook_verifier),
    donation_service: DonationService = Depends(get_donation_service)
):
    """
    Receives webhook events from Stripe, verifies them against the raw body
    and reconciles them into the donor ledger.
    """
    # Raw bytes, before anything parses them
    payload = await request.body()

    try:
        event = verifier.verify(payload, stripe_signature)
        outcome = await run_in_threadpool(donation_service.handle_event, event)
        logger.info(f"Webhook {event.event_type} {event.event_id}: {outcome}")
        return WebhookAck(received=True)

    except InvalidSignature as e:
        raise HTTPException(status_code=400, detail=e.message)
    except (MalformedEvent, MissingDonorEmail, ProcessorRequestError) as e:
        logger.warning(f"Webhook rejected as unprocessable: {e.message}")
        raise HTTPException(status_code=400, detail=e.message)
    except (DatastoreUnavailable, ProcessorUnavailable) as e:
        logger.error(f"Webhook transient failure, leaving it for redelivery: {e.message}")
        raise HTTPException(status_code=500, detail="Failed to process webhook")
    except ProcessorMisconfigured:
        # Already logged critical; a 5xx keeps the event for redelivery once the key is fixed
        raise HTTPException(status_code=500, detail="Failed to process webhook")
    except Exception as e:
        logger.exception(f"Webhook internal error: {e}")
        raise HTTPException(status_code=500, detail="Internal server error")


@router.get(
    "/subscriptions/cancel",
    response_model=CancellationPreviewResponse
)
async def preview_cancellation(
    token: Optional[str] = Query(None),
    subscription_id: Optional[str] = Query(None, alias="subscriptionId"),
    cancellation_service: CancellationService = Depends(get_cancellation_service)
):
    if not token or not subscription_id:
        raise HTTPException(status_code=400, detail="Missing required parameters")

    try:
        view = await run_in_threadpool(cancellation_service.inspect, token, subscription_id)
    except InvalidToken:
        raise HTTPException(status_code=401, detail="Invalid or expired token")
    except (SubscriptionNotFound, CustomerNotFound) as e:
        raise HTTPException(status_code=404, detail=e.message)
    except LedgerError as e:
        logger.error(f"Cancellation preview failed: {e.message}")
        raise HTTPException(status_code=500, detail="Unable to load subscription, please try again")

    return CancellationPreviewResponse(
        subscription=SubscriptionDetails(
            id=view.id,
            status=view.status,
            amount=float(view.amount),
            currency=view.currency,
            frequency=view.frequency,
            customer=CustomerSummary(name=view.customer_name, email=view.customer_email)
        ),
        token=token
    )


@router.post(
    "/subscriptions/cancel",
    response_model=CancellationConfirmResponse
)
async def confirm_cancellation(
    body: CancellationConfirmRequest,
    cancellation_service: CancellationService = Depends(get_cancellation_service)
):
    if not body.token or not body.confirmed:
        raise HTTPException(status_code=400, detail="Missing required parameters")

    try:
        result = await run_in_threadpool(cancellation_service.confirm, body.token)
    except InvalidToken:
        raise HTTPException(status_code=401, detail="Invalid or expired token")
    except (SubscriptionNotFound, CustomerNotFound) as e:
        raise HTTPException(status_code=404, detail=e.message)
    except LedgerError as e:
        logger.error(f"Cancellation processing error: {e.message}")
        raise HTTPException(status_code=500, detail="Failed to cancel subscription")

    return CancellationConfirmResponse(
        message=(
            "Subscription is already cancelled" if result.already_cancelled
            else "Subscription cancelled successfully"
        ),
        alreadyCancelled=result.already_cancelled,
        subscription=CancelledSubscription(id=result.subscription_id, cancelledAt=result.cancelled_at)
    )


@router.get(
    "/donations/recent",
    response_model=list[PublicDonationResponse]
)
def get_recent_donations(donation_service: DonationService = Depends(get_donation_service)):
    return donation_service.list_recent_donations(limit=10)

@router.get(
    "/donations/total",
    response_model=TotalDonationResponse
)
def get_total_donations(donation_service: DonationService = Depends(get_donation_service)):
    total = donation_service.get_total_donations()
    return TotalDonationResponse(total_amount=float(total))


@router.get(
    "/donations/history",
    response_model=DonorHistoryResponse
)
async def get_donor_history(
    token: Optional[str] = Query(None),
    donation_service: DonationService = Depends(get_donation_service)
):
    """Lifetime total and past donations for the holder of a manage link."""
    if not token:
        raise HTTPException(status_code=400, detail="Missing required parameters")

    try:
        history = await run_in_threadpool(donation_service.get_donor_history, token)
    except InvalidToken:
        raise HTTPException(status_code=401, detail="Invalid or expired token")
    except LedgerError as e:
        logger.error(f"Donor history failed: {e.message}")
        raise HTTPException(status_code=500, detail="Unable to load donation history, please try again")

    donor = history.donor
    return DonorHistoryResponse(
        email=history.email,
        name=donor.name if donor else None,
        totalDonations=float(donor.total_donations) if donor else 0.0,
        subscriptionStatus=donor.subscription_status if donor else "none",
        activeSubscriptionId=donor.active_subscription_id if donor else None,
        donations=[
            HistoryDonation(
                amount=float(item["amount"]),
                currency=item["currency"],
                donation_type=item["donation_type"],
                frequency=item["frequency"],
                is_recurring=item["is_recurring"],
                created_at=item["created_at"]
            )
            for item in history.donations
        ]
    )


@router.post(
    "/subscriptions/manage-link/revoke",
    response_model=RevokeLinkResponse
)
async def revoke_manage_link(
    body: RevokeLinkRequest,
    token_service: CancellationTokenService = Depends(get_token_service)
):
    """Disables a manage link before it expires, e.g. after it was forwarded by mistake."""
    if not body.token:
        raise HTTPException(status_code=400, detail="Missing required parameters")

    try:
        await run_in_threadpool(token_service.revoke, body.token)
    except InvalidToken:
        raise HTTPException(status_code=401, detail="Invalid or expired token")
    except RevocationDisabled as e:
        raise HTTPException(status_code=400, detail=e.message)

    return RevokeLinkResponse()
