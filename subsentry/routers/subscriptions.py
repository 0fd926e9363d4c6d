from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException

from subsentry.deps import get_current_user_id, get_services
from subsentry.models.domain import Subscription, SubscriptionStatus
from subsentry.schemas.subscriptions import (
    ApproveRequest,
    ArchiveAccountOut,
    ExtractionIn,
    HistoryOut,
    PricePatch,
    ReconcileOut,
    SpendingOut,
    StatusPatch,
    SubscriptionIn,
    SubscriptionOut,
)
from subsentry.services.reconciliation import ReconcileResult, SubscriptionCandidate
from subsentry.services.wiring import Services

router = APIRouter(prefix="/subscriptions", tags=["subscriptions"])


def _owned(svc: Services, subscription_id: str, user_id: str) -> Subscription:
    sub = svc.engine.get(subscription_id)
    if sub.user_id != user_id:
        # same answer as a missing id; never leak other users' ids
        raise HTTPException(status_code=404, detail="subscription not found")
    return sub


def _out(sub: Subscription) -> SubscriptionOut:
    return SubscriptionOut.model_validate(sub)


def _reconcile_out(result: ReconcileResult) -> ReconcileOut:
    return ReconcileOut(
        effect=result.effect.value,
        subscription=_out(result.subscription),
        history_written=len(result.history),
    )


@router.get("", response_model=List[SubscriptionOut])
def list_subscriptions(
    status: Optional[SubscriptionStatus] = None,
    category: Optional[str] = None,
    svc: Services = Depends(get_services),
    user_id: str = Depends(get_current_user_id),
):
    return [_out(s) for s in svc.engine.list_for_user(user_id, status=status, category=category)]


@router.post("", response_model=ReconcileOut, status_code=201)
def create_subscription(
    payload: SubscriptionIn,
    svc: Services = Depends(get_services),
    user_id: str = Depends(get_current_user_id),
):
    candidate = SubscriptionCandidate(
        service_name=payload.service_name,
        price=payload.price,
        currency=payload.currency,
        billing_cycle=payload.billing_cycle,
        next_renewal_date=payload.next_renewal_date,
        category=payload.category,
        cancellation_link=payload.cancellation_link,
        status=payload.status,
    )
    return _reconcile_out(svc.engine.reconcile(user_id, candidate))


@router.post("/ingest", response_model=ReconcileOut, status_code=201)
def ingest_extraction(
    payload: ExtractionIn,
    svc: Services = Depends(get_services),
    user_id: str = Depends(get_current_user_id),
):
    """Reconcile one AI extraction result against the user's subscriptions."""
    result = svc.engine.reconcile_extraction(
        user_id,
        payload.extraction,
        email_account_id=payload.email_account_id,
        source_email_id=payload.source_email_id,
    )
    return _reconcile_out(result)


@router.get("/pending-review", response_model=List[SubscriptionOut])
def pending_review(
    svc: Services = Depends(get_services),
    user_id: str = Depends(get_current_user_id),
):
    return [_out(s) for s in svc.engine.pending_review(user_id)]


@router.get("/spending", response_model=SpendingOut)
def spending(
    days_ahead: int = 7,
    svc: Services = Depends(get_services),
    user_id: str = Depends(get_current_user_id),
):
    return SpendingOut(
        monthly_total=svc.engine.monthly_spending(user_id),
        by_category=svc.engine.spending_by_category(user_id),
        upcoming=[_out(s) for s in svc.engine.upcoming_renewals(user_id, days_ahead=days_ahead)],
    )


@router.delete("/email-accounts/{account_id}", response_model=ArchiveAccountOut)
def archive_email_account(
    account_id: str,
    svc: Services = Depends(get_services),
    user_id: str = Depends(get_current_user_id),
):
    """Account disconnected: archive everything discovered through it."""
    subs = svc.subscriptions.get_by_email_account(account_id)
    if any(s.user_id != user_id for s in subs):
        raise HTTPException(status_code=404, detail="email account not found")
    return ArchiveAccountOut(
        email_account_id=account_id,
        archived=svc.engine.archive_by_email_account(account_id),
    )


@router.get("/{subscription_id}", response_model=SubscriptionOut)
def get_subscription(
    subscription_id: str,
    svc: Services = Depends(get_services),
    user_id: str = Depends(get_current_user_id),
):
    return _out(_owned(svc, subscription_id, user_id))


@router.get("/{subscription_id}/history", response_model=List[HistoryOut])
def subscription_history(
    subscription_id: str,
    svc: Services = Depends(get_services),
    user_id: str = Depends(get_current_user_id),
):
    _owned(svc, subscription_id, user_id)
    return [HistoryOut.model_validate(h) for h in svc.engine.history(subscription_id)]


@router.post("/{subscription_id}/approve", response_model=SubscriptionOut)
def approve(
    subscription_id: str,
    payload: ApproveRequest = ApproveRequest(),
    svc: Services = Depends(get_services),
    user_id: str = Depends(get_current_user_id),
):
    _owned(svc, subscription_id, user_id)
    return _out(svc.engine.approve(subscription_id, billing_cycle=payload.billing_cycle))


@router.post("/{subscription_id}/reject", response_model=SubscriptionOut)
def reject(
    subscription_id: str,
    svc: Services = Depends(get_services),
    user_id: str = Depends(get_current_user_id),
):
    _owned(svc, subscription_id, user_id)
    return _out(svc.engine.reject(subscription_id))


@router.post("/{subscription_id}/archive", response_model=SubscriptionOut)
def archive(
    subscription_id: str,
    svc: Services = Depends(get_services),
    user_id: str = Depends(get_current_user_id),
):
    _owned(svc, subscription_id, user_id)
    return _out(svc.engine.archive(subscription_id))


@router.patch("/{subscription_id}/price", response_model=SubscriptionOut)
def patch_price(
    subscription_id: str,
    payload: PricePatch,
    svc: Services = Depends(get_services),
    user_id: str = Depends(get_current_user_id),
):
    _owned(svc, subscription_id, user_id)
    return _out(
        svc.engine.update_price(subscription_id, payload.price, source_email_id=payload.source_email_id)
    )


@router.patch("/{subscription_id}/status", response_model=SubscriptionOut)
def patch_status(
    subscription_id: str,
    payload: StatusPatch,
    svc: Services = Depends(get_services),
    user_id: str = Depends(get_current_user_id),
):
    _owned(svc, subscription_id, user_id)
    return _out(
        svc.engine.update_status(subscription_id, payload.status, source_email_id=payload.source_email_id)
    )
