# insights_engine/jobs.py
from __future__ import annotations

import logging
from typing import Any, Callable, Dict, Optional

from sqlalchemy.orm import Session

from insights_engine.alerts.constants import AlertType
from insights_engine.alerts.service import AlertEngine
from insights_engine.config import Settings, settings as default_settings
from insights_engine.errors import BranchNotFoundError, FeatureDisabledError
from insights_engine.models import Branch, JobRun
from insights_engine.notifications.dispatcher import NotificationDispatcher
from insights_engine.scoring.anomaly import clear_inactive_anomalies
from insights_engine.scoring.batch import BatchRunner, BatchStats
from insights_engine.scoring.forecasts import forecast_attendance, forecast_finances
from insights_engine.scoring.scorers import (
    AttendanceAnomalyScorer, ChurnScorer, ClusterHealthScorer, HouseholdScorer,
    LifecycleScorer, VisitorConversionScorer,
)
from insights_engine.store import EntityStore
from insights_engine.utils.common import Clock, utcnow

log = logging.getLogger(__name__)


# ──────────────────────────────────────────────────────────────────────────────
# Job wrapper: flag + branch checks, JobRun bookkeeping, error taxonomy
# ──────────────────────────────────────────────────────────────────────────────

def _skipped(job_name: str, branch_id: str, reason: str, detail: str) -> Dict[str, Any]:
    return {"status": "skipped", "job": job_name, "branch_id": branch_id, "reason": reason, "detail": detail,
            "processed": 0, "errors": 0}

def _record(db: Session, run: Optional[JobRun], **fields) -> None:
    if run is None:
        return
    for k, v in fields.items():
        setattr(run, k, v)
    db.add(run)
    db.commit()

def _run_job(
    job_name: str,
    db: Session,
    branch_id: str,
    feature: str,
    body: Callable[[Branch], Dict[str, Any]],
    settings: Settings,
    clock: Clock,
    attempt: int = 1,
    max_attempts: Optional[int] = None,
) -> Dict[str, Any]:
    max_attempts = max_attempts or settings.JOB_MAX_ATTEMPTS
    try:
        if not getattr(settings, feature):
            raise FeatureDisabledError(feature)
        branch = EntityStore(db).get_branch(branch_id)
        if branch is None:
            raise BranchNotFoundError(branch_id)
    except FeatureDisabledError as e:
        log.info("⏭️ %s skipped for branch=%s: %s", job_name, branch_id, e)
        return _skipped(job_name, branch_id, "feature_disabled", str(e))
    except BranchNotFoundError as e:
        log.warning("⏭️ %s skipped: %s", job_name, e)
        return _skipped(job_name, branch_id, "branch_not_found", str(e))

    run = JobRun(job_name=job_name, branch_id=branch_id, status="running", attempt=attempt, started_at=clock())
    _record(db, run)
    log.info("▶️ %s started for branch=%s (attempt %d/%d)", job_name, branch_id, attempt, max_attempts)

    try:
        result = body(branch)
    except Exception as e:
        db.rollback()
        status = "failed" if attempt >= max_attempts else "retrying"
        log.exception("💥 %s %s for branch=%s (attempt %d/%d)", job_name, status, branch_id, attempt, max_attempts)
        try:
            _record(db, run, status=status, finished_at=clock(), error=f"{e.__class__.__name__}: {e}"[:2000])
        except Exception:
            db.rollback()
            log.exception("Could not record %s status for %s", status, job_name)
        raise

    result = {"status": "completed", "job": job_name, "branch_id": branch_id, "processed": 0, "errors": 0, **result}
    _record(db, run, status="completed", finished_at=clock(), result=result)
    log.info("✅ %s completed for branch=%s: %s", job_name, branch_id,
             {k: v for k, v in result.items() if k not in ("job", "branch_id", "status")})
    return result

def _batch(db: Session, settings: Settings, clock: Clock, branch: Branch, scorer, chunk_size: Optional[int]) -> BatchStats:
    return BatchRunner(EntityStore(db), settings, clock).run(branch.id, scorer, chunk_size)

def _dispatcher(db: Session, settings: Settings, clock: Clock, dispatcher: Optional[NotificationDispatcher]):
    return dispatcher or NotificationDispatcher(db, settings=settings, clock=clock)

def _notify(db: Session, settings: Settings, clock: Clock, dispatcher: Optional[NotificationDispatcher],
            job_name: str, branch_id: str, send: Callable[[NotificationDispatcher], int]) -> int:
    """Notification failures never fail the job; scoring and alert rows are already committed."""
    try:
        return send(_dispatcher(db, settings, clock, dispatcher))
    except Exception:
        db.rollback()
        log.exception("❌ %s notifications failed for branch=%s", job_name, branch_id)
        return 0


# ──────────────────────────────────────────────────────────────────────────────
# Scoring jobs
# ──────────────────────────────────────────────────────────────────────────────

def run_churn_scoring(db: Session, branch_id: str, chunk_size: Optional[int] = None, *,
                      settings: Settings = default_settings, clock: Clock = utcnow, **opts) -> Dict[str, Any]:
    def body(branch):
        return _batch(db, settings, clock, branch, ChurnScorer(), chunk_size).as_dict()
    return _run_job("churn_scoring", db, branch_id, "FEATURE_CHURN", body, settings, clock, **opts)


def run_lifecycle_detection(db: Session, branch_id: str, chunk_size: Optional[int] = None,
                            notify_on_transition: Optional[bool] = None, *,
                            settings: Settings = default_settings, clock: Clock = utcnow,
                            dispatcher: Optional[NotificationDispatcher] = None, **opts) -> Dict[str, Any]:
    if notify_on_transition is None:
        notify_on_transition = settings.LIFECYCLE_NOTIFY_ON_AT_RISK

    def body(branch):
        stats = _batch(db, settings, clock, branch, LifecycleScorer(), chunk_size)
        sent = 0
        if notify_on_transition and stats.concerning:
            lines = [f"• {c['name']}: {c['previous']} → {c['current']}" for c in stats.concerning[:10]]
            if len(stats.concerning) > 10:
                lines.append(f"...and {len(stats.concerning) - 10} more")
            sent = _notify(db, settings, clock, dispatcher, "lifecycle_detection", branch.id, lambda d: d.notify_summary(
                branch,
                f"{len(stats.concerning)} member(s) moved to a concerning lifecycle stage",
                "\n".join(lines),
                roles=["pastor", "admin"],
                data={"members": [c["id"] for c in stats.concerning]},
            ))
        return {**stats.as_dict(), "notifications_sent": sent}
    return _run_job("lifecycle_detection", db, branch_id, "FEATURE_LIFECYCLE", body, settings, clock, **opts)


def run_cluster_health(db: Session, branch_id: str, chunk_size: Optional[int] = None,
                       notify_on_struggling: Optional[bool] = None, *,
                       settings: Settings = default_settings, clock: Clock = utcnow,
                       dispatcher: Optional[NotificationDispatcher] = None, **opts) -> Dict[str, Any]:
    if notify_on_struggling is None:
        notify_on_struggling = settings.CLUSTER_NOTIFY_ON_STRUGGLING

    def body(branch):
        stats = _batch(db, settings, clock, branch, ClusterHealthScorer(), chunk_size)
        struggling = stats.needs_attention
        sent = 0
        if notify_on_struggling and struggling:
            lines = [f"• {c['name']}: {c['level']} ({c['score']:g}/100)" for c in struggling[:10]]
            sent = _notify(db, settings, clock, dispatcher, "cluster_health", branch.id, lambda d: d.notify_summary(
                branch,
                f"{len(struggling)} cluster(s) need attention",
                "\n".join(lines),
                roles=["admin", "manager"],
                data={"clusters": [c["id"] for c in struggling]},
            ))
        return {**stats.as_dict(), "struggling_clusters": len(struggling), "notifications_sent": sent}
    return _run_job("cluster_health", db, branch_id, "FEATURE_CLUSTER_HEALTH", body, settings, clock, **opts)


def run_household_engagement(db: Session, branch_id: str, chunk_size: Optional[int] = None, *,
                             settings: Settings = default_settings, clock: Clock = utcnow, **opts) -> Dict[str, Any]:
    def body(branch):
        return _batch(db, settings, clock, branch, HouseholdScorer(), chunk_size).as_dict()
    return _run_job("household_engagement", db, branch_id, "FEATURE_HOUSEHOLD", body, settings, clock, **opts)


def run_visitor_conversion(db: Session, branch_id: str, chunk_size: Optional[int] = None, *,
                           settings: Settings = default_settings, clock: Clock = utcnow, **opts) -> Dict[str, Any]:
    def body(branch):
        return _batch(db, settings, clock, branch, VisitorConversionScorer(), chunk_size).as_dict()
    return _run_job("visitor_conversion", db, branch_id, "FEATURE_VISITOR_CONVERSION", body, settings, clock, **opts)


def run_attendance_anomaly(db: Session, branch_id: str, chunk_size: Optional[int] = None, *,
                           settings: Settings = default_settings, clock: Clock = utcnow, **opts) -> Dict[str, Any]:
    def body(branch):
        stats = _batch(db, settings, clock, branch, AttendanceAnomalyScorer(), chunk_size)
        cleared = clear_inactive_anomalies(db, branch.id)
        return {**stats.as_dict(), "anomalies": len(stats.needs_attention), "cleared": cleared}
    return _run_job("attendance_anomaly", db, branch_id, "FEATURE_ATTENDANCE_ANOMALY", body, settings, clock, **opts)


# ──────────────────────────────────────────────────────────────────────────────
# Forecast jobs
# ──────────────────────────────────────────────────────────────────────────────

def run_attendance_forecast(db: Session, branch_id: str, weeks_ahead: Optional[int] = None, *,
                            settings: Settings = default_settings, clock: Clock = utcnow, **opts) -> Dict[str, Any]:
    def body(branch):
        out = forecast_attendance(db, branch.id, weeks_ahead, settings, clock)
        return {"processed": out["services"] - out["skipped"], **out}
    return _run_job("attendance_forecast", db, branch_id, "FEATURE_ATTENDANCE_FORECAST", body, settings, clock, **opts)


def run_financial_forecast(db: Session, branch_id: str, forecast_type: str = "monthly",
                           periods_ahead: Optional[int] = None, *,
                           settings: Settings = default_settings, clock: Clock = utcnow, **opts) -> Dict[str, Any]:
    def body(branch):
        out = forecast_finances(db, branch.id, forecast_type, periods_ahead, settings, clock)
        return {"processed": out["forecasts_written"], "forecast_type": forecast_type, **out}
    return _run_job("financial_forecast", db, branch_id, "FEATURE_FINANCIAL_FORECAST", body, settings, clock, **opts)


# ──────────────────────────────────────────────────────────────────────────────
# Alert jobs
# ──────────────────────────────────────────────────────────────────────────────

def process_alerts(db: Session, branch_id: str, alert_type: Optional[AlertType] = None,
                   send_notifications: bool = True, *,
                   settings: Settings = default_settings, clock: Clock = utcnow,
                   dispatcher: Optional[NotificationDispatcher] = None, **opts) -> Dict[str, Any]:
    def body(branch):
        engine = AlertEngine(db, settings, clock)
        if alert_type is not None:
            alerts = engine.process_type(branch, AlertType(alert_type))
            checked = 1
        else:
            alerts = engine.process_all_alerts(branch)
            checked = len(engine.checks)
        sent = 0
        if send_notifications and alerts:
            sent = _notify(db, settings, clock, dispatcher, "process_alerts", branch.id,
                           lambda d: d.dispatch(branch, alerts))
        return {
            "processed": checked,
            "alerts_created": len(alerts),
            "immediate": sum(1 for a in alerts if a.requires_immediate_attention()),
            "notifications_sent": sent,
        }
    return _run_job("process_alerts", db, branch_id, "FEATURE_ALERTS", body, settings, clock, **opts)


def send_alert_digest(db: Session, branch_id: str, hours_back: int = 24, *,
                      settings: Settings = default_settings, clock: Clock = utcnow,
                      dispatcher: Optional[NotificationDispatcher] = None, **opts) -> Dict[str, Any]:
    def body(branch):
        out = _dispatcher(db, settings, clock, dispatcher).send_digest(branch, hours_back)
        return {"processed": out["alerts"], **out}
    return _run_job("alert_digest", db, branch_id, "FEATURE_ALERTS", body, settings, clock, **opts)


# name → entry point; used by the HTTP triggers and the CLI
JOBS: Dict[str, Callable[..., Dict[str, Any]]] = {
    "churn-scoring": run_churn_scoring,
    "lifecycle-detection": run_lifecycle_detection,
    "cluster-health": run_cluster_health,
    "household-engagement": run_household_engagement,
    "visitor-conversion": run_visitor_conversion,
    "attendance-anomaly": run_attendance_anomaly,
    "attendance-forecast": run_attendance_forecast,
    "financial-forecast": run_financial_forecast,
    "process-alerts": process_alerts,
    "alert-digest": send_alert_digest,
}
