# insights_engine/routes.py
from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.orm import Session

from insights_engine import jobs
from insights_engine.alerts import dao, settings_dao
from insights_engine.alerts.constants import AlertType
from insights_engine.config import Settings, settings as default_settings
from insights_engine.db import get_db
from insights_engine.models import AcknowledgeInput, Alert, AlertSetting, AlertSettingUpdate, Branch, MarkReadInput
from insights_engine.utils.common import Clock, iso, utcnow

log = logging.getLogger(__name__)
router = APIRouter(prefix="/insights", tags=["Insights"])


def get_settings() -> Settings:
    return default_settings

def get_clock() -> Clock:
    return utcnow


# ─── serializers ─────────────────────────────────────────────────────────────

def _alert_out(a: Alert) -> Dict[str, Any]:
    return {
        "id": a.id,
        "alert_type": a.alert_type,
        "type_label": a.type_enum.label,
        "severity": a.severity,
        "color": a.severity_enum.color,
        "title": a.title,
        "description": a.description,
        "subject_type": a.subject_type,
        "subject_id": a.subject_id,
        "data": a.data or {},
        "recommendations": a.recommendations or [],
        "is_read": a.is_read,
        "is_acknowledged": a.is_acknowledged,
        "acknowledged_by": a.acknowledged_by,
        "acknowledged_at": iso(a.acknowledged_at),
        "requires_immediate_attention": a.requires_immediate_attention(),
        "created_at": iso(a.created_at),
    }

def _setting_out(s: AlertSetting) -> Dict[str, Any]:
    return {
        "alert_type": s.alert_type,
        "is_enabled": s.is_enabled,
        "threshold_value": s.threshold_value,
        "cooldown_hours": s.cooldown_hours,
        "notification_channels": s.notification_channels or [],
        "recipient_roles": s.recipient_roles or [],
        "last_triggered_at": iso(s.last_triggered_at),
    }

def _require_branch(db: Session, branch_id: str) -> Branch:
    branch = db.get(Branch, branch_id)
    if branch is None:
        raise HTTPException(status_code=404, detail=f"branch '{branch_id}' not found")
    return branch

def _parse_type(alert_type: str) -> AlertType:
    try:
        return AlertType(alert_type)
    except ValueError:
        raise HTTPException(status_code=404, detail=f"unknown alert type '{alert_type}'")


# ─── job triggers ────────────────────────────────────────────────────────────

def _trigger(fn, db: Session, settings: Settings, clock: Clock, branch_id: str,
             attempt: int, max_attempts: Optional[int], **kwargs) -> Dict[str, Any]:
    try:
        return fn(db, branch_id, settings=settings, clock=clock, attempt=attempt, max_attempts=max_attempts, **kwargs)
    except ValueError as e:
        raise HTTPException(status_code=422, detail=str(e))
    except Exception as e:
        log.exception("Job %s failed for branch=%s", fn.__name__, branch_id)
        raise HTTPException(status_code=500, detail=f"{fn.__name__} failed: {e.__class__.__name__}")


@router.post("/branches/{branch_id}/churn-scoring")
def trigger_churn_scoring(
    branch_id: str,
    chunk_size: Optional[int] = Query(None, ge=1, le=1000),
    attempt: int = Query(1, ge=1),
    max_attempts: Optional[int] = Query(None, ge=1),
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
    clock: Clock = Depends(get_clock),
):
    return _trigger(jobs.run_churn_scoring, db, settings, clock, branch_id, attempt, max_attempts,
                    chunk_size=chunk_size)


@router.post("/branches/{branch_id}/lifecycle-detection")
def trigger_lifecycle_detection(
    branch_id: str,
    chunk_size: Optional[int] = Query(None, ge=1, le=1000),
    notify_on_transition: Optional[bool] = None,
    attempt: int = Query(1, ge=1),
    max_attempts: Optional[int] = Query(None, ge=1),
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
    clock: Clock = Depends(get_clock),
):
    return _trigger(jobs.run_lifecycle_detection, db, settings, clock, branch_id, attempt, max_attempts,
                    chunk_size=chunk_size, notify_on_transition=notify_on_transition)


@router.post("/branches/{branch_id}/cluster-health")
def trigger_cluster_health(
    branch_id: str,
    chunk_size: Optional[int] = Query(None, ge=1, le=1000),
    notify_on_struggling: Optional[bool] = None,
    attempt: int = Query(1, ge=1),
    max_attempts: Optional[int] = Query(None, ge=1),
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
    clock: Clock = Depends(get_clock),
):
    return _trigger(jobs.run_cluster_health, db, settings, clock, branch_id, attempt, max_attempts,
                    chunk_size=chunk_size, notify_on_struggling=notify_on_struggling)


@router.post("/branches/{branch_id}/household-engagement")
def trigger_household_engagement(
    branch_id: str,
    chunk_size: Optional[int] = Query(None, ge=1, le=1000),
    attempt: int = Query(1, ge=1),
    max_attempts: Optional[int] = Query(None, ge=1),
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
    clock: Clock = Depends(get_clock),
):
    return _trigger(jobs.run_household_engagement, db, settings, clock, branch_id, attempt, max_attempts,
                    chunk_size=chunk_size)


@router.post("/branches/{branch_id}/visitor-conversion")
def trigger_visitor_conversion(
    branch_id: str,
    chunk_size: Optional[int] = Query(None, ge=1, le=1000),
    attempt: int = Query(1, ge=1),
    max_attempts: Optional[int] = Query(None, ge=1),
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
    clock: Clock = Depends(get_clock),
):
    return _trigger(jobs.run_visitor_conversion, db, settings, clock, branch_id, attempt, max_attempts,
                    chunk_size=chunk_size)


@router.post("/branches/{branch_id}/attendance-anomaly")
def trigger_attendance_anomaly(
    branch_id: str,
    chunk_size: Optional[int] = Query(None, ge=1, le=1000),
    attempt: int = Query(1, ge=1),
    max_attempts: Optional[int] = Query(None, ge=1),
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
    clock: Clock = Depends(get_clock),
):
    return _trigger(jobs.run_attendance_anomaly, db, settings, clock, branch_id, attempt, max_attempts,
                    chunk_size=chunk_size)


@router.post("/branches/{branch_id}/attendance-forecast")
def trigger_attendance_forecast(
    branch_id: str,
    weeks_ahead: Optional[int] = Query(None, ge=1, le=52),
    attempt: int = Query(1, ge=1),
    max_attempts: Optional[int] = Query(None, ge=1),
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
    clock: Clock = Depends(get_clock),
):
    return _trigger(jobs.run_attendance_forecast, db, settings, clock, branch_id, attempt, max_attempts,
                    weeks_ahead=weeks_ahead)


@router.post("/branches/{branch_id}/financial-forecast")
def trigger_financial_forecast(
    branch_id: str,
    forecast_type: str = Query("monthly", pattern="^(monthly|quarterly)$"),
    periods_ahead: Optional[int] = Query(None, ge=1, le=24),
    attempt: int = Query(1, ge=1),
    max_attempts: Optional[int] = Query(None, ge=1),
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
    clock: Clock = Depends(get_clock),
):
    return _trigger(jobs.run_financial_forecast, db, settings, clock, branch_id, attempt, max_attempts,
                    forecast_type=forecast_type, periods_ahead=periods_ahead)


@router.post("/branches/{branch_id}/process-alerts")
def trigger_process_alerts(
    branch_id: str,
    alert_type: Optional[str] = None,
    send_notifications: bool = True,
    attempt: int = Query(1, ge=1),
    max_attempts: Optional[int] = Query(None, ge=1),
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
    clock: Clock = Depends(get_clock),
):
    parsed = _parse_type(alert_type) if alert_type else None
    return _trigger(jobs.process_alerts, db, settings, clock, branch_id, attempt, max_attempts,
                    alert_type=parsed, send_notifications=send_notifications)


@router.post("/branches/{branch_id}/alert-digest")
def trigger_alert_digest(
    branch_id: str,
    hours_back: int = Query(24, ge=1, le=24 * 14),
    attempt: int = Query(1, ge=1),
    max_attempts: Optional[int] = Query(None, ge=1),
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
    clock: Clock = Depends(get_clock),
):
    return _trigger(jobs.send_alert_digest, db, settings, clock, branch_id, attempt, max_attempts,
                    hours_back=hours_back)


# ─── alert reads ─────────────────────────────────────────────────────────────

@router.get("/branches/{branch_id}/alerts")
def list_recent_alerts(branch_id: str, limit: int = Query(20, ge=1, le=200), db: Session = Depends(get_db)):
    _require_branch(db, branch_id)
    return [_alert_out(a) for a in dao.recent_alerts(db, branch_id, limit)]

@router.get("/branches/{branch_id}/alerts/unread-count")
def get_unread_count(branch_id: str, db: Session = Depends(get_db)):
    _require_branch(db, branch_id)
    return {"unread": dao.unread_count(db, branch_id)}

@router.get("/branches/{branch_id}/alerts/high-priority")
def list_high_priority(branch_id: str, limit: int = Query(10, ge=1, le=100), db: Session = Depends(get_db)):
    _require_branch(db, branch_id)
    return [_alert_out(a) for a in dao.high_priority_unacknowledged(db, branch_id, limit)]

@router.get("/branches/{branch_id}/alerts/by-type")
def list_by_type(branch_id: str, limit_per_type: int = Query(5, ge=1, le=50), db: Session = Depends(get_db)):
    _require_branch(db, branch_id)
    grouped = dao.alerts_by_type(db, branch_id, limit_per_type)
    return {t: [_alert_out(a) for a in rows] for t, rows in grouped.items()}

@router.get("/branches/{branch_id}/alerts/stats")
def get_alert_stats(
    branch_id: str,
    days: int = Query(30, ge=1, le=365),
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
):
    _require_branch(db, branch_id)
    return dao.alert_stats(db, branch_id, days, clock())

@router.post("/branches/{branch_id}/alerts/mark-read")
def mark_alerts_read(branch_id: str, payload: MarkReadInput, db: Session = Depends(get_db)):
    _require_branch(db, branch_id)
    return {"updated": dao.mark_read(db, branch_id, payload.alert_ids)}

@router.post("/branches/{branch_id}/alerts/{alert_id}/acknowledge")
def acknowledge_alert(
    branch_id: str,
    alert_id: str,
    payload: AcknowledgeInput,
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
):
    _require_branch(db, branch_id)
    alert = dao.acknowledge(db, branch_id, alert_id, payload.user_id, clock())
    if alert is None:
        raise HTTPException(status_code=404, detail="alert not found")
    return _alert_out(alert)


# ─── alert settings ──────────────────────────────────────────────────────────

@router.get("/branches/{branch_id}/alert-settings")
def list_alert_settings(branch_id: str, db: Session = Depends(get_db), settings: Settings = Depends(get_settings)):
    _require_branch(db, branch_id)
    return [_setting_out(s) for s in settings_dao.list_for_branch(db, branch_id, settings)]

@router.put("/branches/{branch_id}/alert-settings/{alert_type}")
def update_alert_setting(
    branch_id: str,
    alert_type: str,
    payload: AlertSettingUpdate,
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
):
    _require_branch(db, branch_id)
    parsed = _parse_type(alert_type)
    try:
        row = settings_dao.update_setting(db, branch_id, parsed, payload.model_dump(exclude_unset=True), settings)
    except ValueError as e:
        raise HTTPException(status_code=422, detail=str(e))
    return _setting_out(row)

@router.post("/branches/{branch_id}/alert-settings/{alert_type}/reset")
def reset_alert_setting(
    branch_id: str,
    alert_type: str,
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
):
    _require_branch(db, branch_id)
    return _setting_out(settings_dao.reset_to_defaults(db, branch_id, _parse_type(alert_type), settings))
