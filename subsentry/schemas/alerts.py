from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from subsentry.models.domain import AlertStatus, AlertType, DeliveryMode


class AlertOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)
    id: str
    user_id: str
    subscription_id: str
    type: AlertType
    message: str
    data: Dict[str, Any] = {}
    scheduled_for: datetime
    sent_at: Optional[datetime] = None
    status: AlertStatus
    retry_count: int = 0
    delivery_mode: DeliveryMode
    cycle_key: str = ""


class SnoozeRequest(BaseModel):
    hours: Optional[int] = Field(None, gt=0, le=24 * 30)  # default from settings


class GenerationOut(BaseModel):
    created: int
    skipped_duplicate: int
    skipped_by_preference: int
    alerts: List[AlertOut] = []
