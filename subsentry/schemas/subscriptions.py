from datetime import date, datetime
from decimal import Decimal
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from subsentry.models.domain import BillingCycle, ChangeType, SubscriptionStatus
from subsentry.schemas.extraction import ExtractionResult


class SubscriptionIn(BaseModel):
    """Manual entry; treated as a fully trusted candidate."""

    service_name: str = Field(..., max_length=256)
    price: Decimal
    currency: str = "USD"
    billing_cycle: BillingCycle = BillingCycle.MONTHLY
    next_renewal_date: Optional[date] = None
    category: str = Field("", max_length=128)
    cancellation_link: Optional[str] = Field(None, max_length=1024)
    status: Optional[SubscriptionStatus] = None  # e.g. TrialActive for a known trial


class ExtractionIn(BaseModel):
    extraction: ExtractionResult
    email_account_id: Optional[str] = None
    source_email_id: Optional[str] = None


class PricePatch(BaseModel):
    price: Decimal
    source_email_id: Optional[str] = None


class StatusPatch(BaseModel):
    status: SubscriptionStatus
    source_email_id: Optional[str] = None


class ApproveRequest(BaseModel):
    billing_cycle: Optional[BillingCycle] = None  # required if still Unknown


class SubscriptionOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)
    id: str
    user_id: str
    email_account_id: Optional[str] = None
    service_name: str
    price: Decimal
    currency: str
    billing_cycle: BillingCycle
    next_renewal_date: Optional[date] = None
    category: str
    status: SubscriptionStatus
    extraction_confidence: float
    requires_review: bool
    cancellation_link: Optional[str] = None
    last_activity_email_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class ReconcileOut(BaseModel):
    effect: str
    subscription: SubscriptionOut
    history_written: int = 0


class HistoryOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)
    id: str
    subscription_id: str
    change_type: ChangeType
    old_value: str
    new_value: str
    changed_at: datetime
    source_email_id: Optional[str] = None


class SpendingOut(BaseModel):
    monthly_total: Decimal
    by_category: Dict[str, Decimal]
    upcoming: List[SubscriptionOut] = []


class ArchiveAccountOut(BaseModel):
    email_account_id: str
    archived: int
