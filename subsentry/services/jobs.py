"""
Batch entry points driven by an external ticker (cron, the CLI, a worker).

Plain functions: the caller supplies the time source (through the services it
builds) and the user ids. Work for different users runs in parallel on a
bounded thread pool; work for one user is sequential. A failing user is logged
and counted, never allowed to abort the rest of the batch.
"""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import date
from typing import Callable, Dict, Iterable, List, Optional, Sequence, Tuple

from dateutil.relativedelta import relativedelta

from subsentry.config import settings
from subsentry.errors import OperationCancelled, SubsentryError
from subsentry.models.domain import BillingCycle, SubscriptionStatus
from subsentry.schemas.extraction import ExtractionResult
from subsentry.services import metrics
from subsentry.services.reconciliation import ReconciliationEngine
from subsentry.services.wiring import ServiceFactory, Services
from subsentry.utils.cancel import CancelToken, check

logger = logging.getLogger(__name__)

_CYCLE_STEP = {
    BillingCycle.WEEKLY: relativedelta(weeks=1),
    BillingCycle.MONTHLY: relativedelta(months=1),
    BillingCycle.QUARTERLY: relativedelta(months=3),
    BillingCycle.ANNUAL: relativedelta(years=1),
}


@dataclass
class JobReport:
    job: str
    users: int = 0
    succeeded: int = 0
    failed: int = 0
    cancelled: bool = False
    failures: Dict[str, str] = field(default_factory=dict)
    totals: Dict[str, int] = field(default_factory=dict)

    def add(self, counts: Dict[str, int]) -> None:
        for k, v in counts.items():
            self.totals[k] = self.totals.get(k, 0) + v

    def record_failure(self, key: str, exc: BaseException) -> None:
        self.failed += 1
        self.failures[key] = str(exc)
        if isinstance(exc, OperationCancelled):
            self.cancelled = True


def next_cycle_date(current: date, cycle: BillingCycle) -> Optional[date]:
    """``current`` moved forward one billing cycle; None for Unknown."""
    step = _CYCLE_STEP.get(cycle)
    return current + step if step is not None else None


def _fan_out(
    job: str,
    open_services: ServiceFactory,
    user_ids: Optional[Sequence[str]],
    work: Callable[[Services, str], Dict[str, int]],
    max_workers: Optional[int],
    cancel: Optional[CancelToken],
) -> JobReport:
    if user_ids is None:
        with open_services() as svc:
            user_ids = svc.subscriptions.get_user_ids()
    report = JobReport(job=job, users=len(user_ids))
    if not user_ids:
        return report

    def run_one(user_id: str) -> Dict[str, int]:
        check(cancel)
        with open_services() as svc:
            return work(svc, user_id)

    workers = max(1, min(max_workers or settings.WORKER_POOL_SIZE, len(user_ids)))
    with ThreadPoolExecutor(max_workers=workers, thread_name_prefix=f"subsentry-{job}") as pool:
        futures = [(uid, pool.submit(run_one, uid)) for uid in user_ids]
        for user_id, fut in futures:
            try:
                report.add(fut.result())
                report.succeeded += 1
            except OperationCancelled as e:
                report.record_failure(user_id, e)
            except Exception as e:  # one bad user must not sink the batch
                report.record_failure(user_id, e)
                metrics.JOB_FAILURES.labels(job=job).inc()
                logger.exception("%s: user failed", job, extra={"user_id": user_id})

    logger.info(
        "%s: %d/%d user(s) ok",
        job,
        report.succeeded,
        report.users,
        extra={"totals": report.totals, "failed": report.failed, "cancelled": report.cancelled},
    )
    return report


def run_alert_generation(
    open_services: ServiceFactory,
    user_ids: Optional[Sequence[str]] = None,
    *,
    max_workers: Optional[int] = None,
    cancel: Optional[CancelToken] = None,
) -> JobReport:
    """Daily alert pass. ``user_ids=None`` means every user with a subscription."""

    def work(svc: Services, user_id: str) -> Dict[str, int]:
        return svc.scheduler.generate_alerts(user_id, cancel=cancel).as_dict()

    return _fan_out("alerts", open_services, user_ids, work, max_workers, cancel)


def run_reconciliation_batch(
    engine: ReconciliationEngine,
    user_id: str,
    items: Iterable[Tuple[ExtractionResult, Optional[str], Optional[str]]],
    cancel: Optional[CancelToken] = None,
) -> JobReport:
    """Reconcile one ingested email batch for one user, in order.

    ``items`` are ``(extraction, email_account_id, source_email_id)``. A bad
    item is logged and counted; cancellation stops the batch after the
    current item.
    """
    report = JobReport(job="reconcile", users=1)
    for extraction, account_id, source_email_id in items:
        key = source_email_id or extraction.service_name
        try:
            result = engine.reconcile_extraction(
                user_id,
                extraction,
                email_account_id=account_id,
                source_email_id=source_email_id,
                cancel=cancel,
            )
        except OperationCancelled as e:
            report.record_failure(key, e)
            break
        except SubsentryError as e:
            report.record_failure(key, e)
            metrics.JOB_FAILURES.labels(job="reconcile").inc()
            logger.warning(
                "reconcile batch: item rejected: %s",
                e.message,
                extra={"user_id": user_id, "source_email_id": source_email_id, "code": e.code},
            )
            continue
        report.succeeded += 1
        report.add({result.effect.value: 1})
    return report


def advance_subscriptions(
    engine: ReconciliationEngine,
    user_id: str,
    cancel: Optional[CancelToken] = None,
) -> int:
    """Daily date-advance for one user; returns how many subscriptions changed.

    Trials past their end convert to Active, long-overdue renewals are flagged
    for review, and past renewal dates move forward one billing cycle.
    """
    today = engine.clock().date()
    touched = 0
    for sub in engine.list_for_user(user_id):
        check(cancel)
        if sub.next_renewal_date is None or sub.next_renewal_date >= today:
            continue
        changed = False
        if sub.status == SubscriptionStatus.TRIAL_ACTIVE:
            sub = engine.update_status(sub.id, SubscriptionStatus.ACTIVE, cancel=cancel)
            changed = True
        if sub.status != SubscriptionStatus.ACTIVE:
            touched += changed
            continue
        overdue = (today - sub.next_renewal_date).days > engine.settings.OVERDUE_RENEWAL_DAYS
        if overdue and not sub.requires_review:
            sub = engine.flag_for_review(sub.id, cancel=cancel)
            changed = True
        new_date = next_cycle_date(sub.next_renewal_date, sub.billing_cycle)
        if new_date is not None:
            engine.update_renewal_date(sub.id, new_date, cancel=cancel)
            changed = True
        touched += changed
    return touched


def run_maintenance(
    open_services: ServiceFactory,
    user_ids: Optional[Sequence[str]] = None,
    *,
    max_workers: Optional[int] = None,
    cancel: Optional[CancelToken] = None,
) -> JobReport:
    def work(svc: Services, user_id: str) -> Dict[str, int]:
        return {"advanced": advance_subscriptions(svc.engine, user_id, cancel=cancel)}

    return _fan_out("maintenance", open_services, user_ids, work, max_workers, cancel)


__all__: List[str] = [
    "JobReport",
    "next_cycle_date",
    "run_alert_generation",
    "run_reconciliation_batch",
    "advance_subscriptions",
    "run_maintenance",
]
