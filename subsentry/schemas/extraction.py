from __future__ import annotations

from datetime import date
from decimal import Decimal
from typing import Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from subsentry.models.domain import BillingCycle

# Closed set of keys the extractor reports per-field confidence for.
FIELD_CONFIDENCE_KEYS = frozenset(
    {"serviceName", "price", "currency", "billingCycle", "nextRenewalDate", "category"}
)

EmailType = Literal[
    "purchase_receipt",
    "renewal_notice",
    "trial_confirmation",
    "price_change",
    "cancellation_confirmation",
    "welcome",
    "other",
]


class ExtractionResult(BaseModel):
    """Fields pulled out of one email by the upstream extraction collaborator.

    Range checks on price/currency are deliberately left to the reconciliation
    engine so malformed commercial data surfaces as a ``ValidationError`` there.
    """

    model_config = ConfigDict(populate_by_name=True)

    service_name: str = Field("", alias="serviceName")
    price: Decimal = Decimal("0")
    currency: str = "USD"
    billing_cycle: BillingCycle = Field(BillingCycle.UNKNOWN, alias="billingCycle")
    next_renewal_date: Optional[date] = Field(None, alias="nextRenewalDate")
    category: str = ""
    cancellation_link: Optional[str] = Field(None, alias="cancellationLink")
    confidence_score: float = Field(0.0, ge=0.0, le=1.0, alias="confidenceScore")
    field_confidences: Dict[str, float] = Field(default_factory=dict, alias="fieldConfidences")
    warnings: List[str] = Field(default_factory=list)
    email_type: Optional[EmailType] = Field(None, alias="emailType")

    @field_validator("field_confidences")
    @classmethod
    def _known_fields_only(cls, v: Dict[str, float]) -> Dict[str, float]:
        unknown = set(v) - FIELD_CONFIDENCE_KEYS
        if unknown:
            raise ValueError(f"unknown confidence fields: {sorted(unknown)}")
        for key, score in v.items():
            if not 0.0 <= score <= 1.0:
                raise ValueError(f"confidence for {key} out of range: {score}")
        return v
