from pydantic import BaseModel
from typing import Literal, Optional
from datetime import datetime

class WebhookAck(BaseModel):
    received: bool = True

class CustomerSummary(BaseModel):
    name: str
    email: str

class SubscriptionDetails(BaseModel):
    id: str
    status: str
    amount: float
    currency: str
    frequency: str
    customer: CustomerSummary

class CancellationPreviewResponse(BaseModel):
    subscription: SubscriptionDetails
    token: str

class CancellationConfirmRequest(BaseModel):
    token: Optional[str] = None
    confirmed: bool = False

class CancelledSubscription(BaseModel):
    id: str
    status: Literal["cancelled"] = "cancelled"
    cancelledAt: datetime

class CancellationConfirmResponse(BaseModel):
    success: bool = True
    message: str
    alreadyCancelled: bool = False
    subscription: CancelledSubscription

class PublicDonationResponse(BaseModel):
    donor_name: str
    amount: float
    currency: str
    created_at: datetime

class TotalDonationResponse(BaseModel):
    total_amount: float

class HistoryDonation(BaseModel):
    amount: float
    currency: str
    donation_type: str
    frequency: str
    is_recurring: bool
    created_at: datetime

class DonorHistoryResponse(BaseModel):
    email: str
    name: Optional[str] = None
    totalDonations: float
    subscriptionStatus: str
    activeSubscriptionId: Optional[str] = None
    donations: list[HistoryDonation]

class RevokeLinkRequest(BaseModel):
    token: Optional[str] = None

class RevokeLinkResponse(BaseModel):
    success: bool = True
