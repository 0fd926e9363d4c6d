from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException

from subsentry.deps import get_current_user_id, get_services
from subsentry.models.domain import Alert, AlertStatus, AlertType
from subsentry.schemas.alerts import AlertOut, GenerationOut, SnoozeRequest
from subsentry.services.wiring import Services

router = APIRouter(prefix="/alerts", tags=["alerts"])


def _owned(svc: Services, alert_id: str, user_id: str) -> Alert:
    alert = svc.scheduler.get_alert(alert_id)
    if alert.user_id != user_id:
        raise HTTPException(status_code=404, detail="alert not found")
    return alert


@router.get("", response_model=List[AlertOut])
def list_alerts(
    status: Optional[AlertStatus] = None,
    type: Optional[AlertType] = None,
    svc: Services = Depends(get_services),
    user_id: str = Depends(get_current_user_id),
):
    return [
        AlertOut.model_validate(a)
        for a in svc.scheduler.user_alerts(user_id, status=status, alert_type=type)
    ]


@router.post("/generate", response_model=GenerationOut)
def generate(
    svc: Services = Depends(get_services),
    user_id: str = Depends(get_current_user_id),
):
    """Run every alert rule for the caller now (the daily job does the same)."""
    summary = svc.scheduler.generate_alerts(user_id)
    return GenerationOut(
        **summary.as_dict(),
        alerts=[AlertOut.model_validate(a) for a in summary.alerts],
    )


@router.get("/pending", response_model=List[AlertOut])
def pending_feed(
    as_of: Optional[datetime] = None,
    svc: Services = Depends(get_services),
):
    """Delivery feed: Pending/Snoozed alerts that are due, across all users."""
    return [AlertOut.model_validate(a) for a in svc.scheduler.pending_alerts(as_of)]


@router.post("/{alert_id}/snooze", response_model=AlertOut)
def snooze(
    alert_id: str,
    payload: SnoozeRequest = SnoozeRequest(),
    svc: Services = Depends(get_services),
    user_id: str = Depends(get_current_user_id),
):
    _owned(svc, alert_id, user_id)
    return AlertOut.model_validate(svc.scheduler.snooze_alert(alert_id, hours=payload.hours))


@router.post("/{alert_id}/dismiss", response_model=AlertOut)
def dismiss(
    alert_id: str,
    svc: Services = Depends(get_services),
    user_id: str = Depends(get_current_user_id),
):
    _owned(svc, alert_id, user_id)
    return AlertOut.model_validate(svc.scheduler.dismiss_alert(alert_id))


# Delivery callbacks
@router.post("/{alert_id}/sent", response_model=AlertOut)
def mark_sent(alert_id: str, svc: Services = Depends(get_services)):
    return AlertOut.model_validate(svc.scheduler.mark_sent(alert_id))


@router.post("/{alert_id}/failed", response_model=AlertOut)
def mark_failed(alert_id: str, svc: Services = Depends(get_services)):
    return AlertOut.model_validate(svc.scheduler.mark_failed(alert_id))
