"""Prometheus metrics for reconciliation and alert scheduling."""

from prometheus_client import Counter, Histogram

RECONCILE_TOTAL = Counter(
    "subsentry_reconcile_total",
    "Reconciliation outcomes",
    ["effect"],  # effect=created|merged|reviewed
)

LOW_CONFIDENCE_TOTAL = Counter(
    "subsentry_low_confidence_total",
    "Candidates below the review confidence floor (queued for manual triage)",
)

HISTORY_ENTRIES = Counter(
    "subsentry_history_entries_total",
    "Subscription history rows written",
    ["change_type"],
)

ALERTS_CREATED = Counter(
    "subsentry_alerts_created_total",
    "Alerts persisted by the scheduler",
    ["type"],
)

ALERTS_SKIPPED = Counter(
    "subsentry_alerts_skipped_total",
    "Alert candidates not persisted",
    ["reason"],  # reason=duplicate|preference
)

JOB_FAILURES = Counter(
    "subsentry_job_failures_total",
    "Per-user job failures",
    ["job"],
)

ALERT_GENERATION_SECONDS = Histogram(
    "subsentry_alert_generation_seconds",
    "Wall time of one generate_alerts call",
    buckets=(0.005, 0.01, 0.05, 0.1, 0.25, 0.5, 1, 2.5, 5),
)

# Prime metrics so they appear immediately in /metrics
for _effect in ("created", "merged", "reviewed"):
    RECONCILE_TOTAL.labels(effect=_effect).inc(0)
for _reason in ("duplicate", "preference"):
    ALERTS_SKIPPED.labels(reason=_reason).inc(0)
for _job in ("alerts", "reconcile", "maintenance"):
    JOB_FAILURES.labels(job=_job).inc(0)
