# insights_engine/alerts/dao.py
from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from sqlalchemy import case, func, select, update
from sqlalchemy.orm import Session

from insights_engine.alerts.constants import SEVERITY_ORDER, AlertSeverity, AlertType
from insights_engine.models import Alert
from insights_engine.utils.common import utcnow

# critical → 0 … low → 3
_severity_rank = case(
    {s.value: i for i, s in enumerate(SEVERITY_ORDER)},
    value=Alert.severity,
    else_=len(SEVERITY_ORDER),
)


def build_alert(
    branch_id: str,
    alert_type: AlertType,
    severity: AlertSeverity,
    title: str,
    description: str,
    subject_type: str,
    subject_id: str,
    data: Optional[Dict[str, Any]] = None,
    recommendations: Optional[List[Dict[str, str]]] = None,
    created_at: Optional[datetime] = None,
) -> Alert:
    return Alert(
        branch_id=branch_id,
        alert_type=alert_type.value,
        severity=severity.value,
        title=title,
        description=description,
        subject_type=subject_type,
        subject_id=str(subject_id),
        data=data or {},
        recommendations=recommendations or [],
        is_read=False,
        is_acknowledged=False,
        **({"created_at": created_at} if created_at else {}),
    )

def exists_for_subject(
    db: Session,
    branch_id: str,
    alert_type: AlertType,
    subject_type: str,
    subject_id: str,
    since: datetime,
) -> bool:
    stmt = (
        select(Alert.id)
        .where(
            Alert.branch_id == branch_id,
            Alert.alert_type == alert_type.value,
            Alert.subject_type == subject_type,
            Alert.subject_id == str(subject_id),
            Alert.created_at >= since,
        )
        .limit(1)
    )
    return db.execute(stmt).first() is not None


# ─── queries ─────────────────────────────────────────────────────────────────

def recent_alerts(db: Session, branch_id: str, limit: int = 20) -> List[Alert]:
    """Most severe first, then newest."""
    stmt = (
        select(Alert)
        .where(Alert.branch_id == branch_id)
        .order_by(_severity_rank, Alert.created_at.desc())
        .limit(limit)
    )
    return list(db.execute(stmt).scalars().all())

def alerts_since(db: Session, branch_id: str, since: datetime) -> List[Alert]:
    stmt = (
        select(Alert)
        .where(Alert.branch_id == branch_id, Alert.created_at >= since)
        .order_by(_severity_rank, Alert.created_at.desc())
    )
    return list(db.execute(stmt).scalars().all())

def unread_count(db: Session, branch_id: str) -> int:
    return db.execute(
        select(func.count(Alert.id)).where(Alert.branch_id == branch_id, Alert.is_read.is_(False))
    ).scalar_one()

def high_priority_unacknowledged(db: Session, branch_id: str, limit: int = 10) -> List[Alert]:
    stmt = (
        select(Alert)
        .where(
            Alert.branch_id == branch_id,
            Alert.is_acknowledged.is_(False),
            Alert.severity.in_([AlertSeverity.CRITICAL.value, AlertSeverity.HIGH.value]),
        )
        .order_by(_severity_rank, Alert.created_at.desc())
        .limit(limit)
    )
    return list(db.execute(stmt).scalars().all())

def alerts_by_type(db: Session, branch_id: str, limit_per_type: int = 5) -> Dict[str, List[Alert]]:
    grouped: Dict[str, List[Alert]] = {}
    for t in AlertType:
        rows = db.execute(
            select(Alert)
            .where(Alert.branch_id == branch_id, Alert.alert_type == t.value)
            .order_by(Alert.created_at.desc())
            .limit(limit_per_type)
        ).scalars().all()
        if rows:
            grouped[t.value] = list(rows)
    return grouped

def alert_stats(db: Session, branch_id: str, days: int = 30, now: Optional[datetime] = None) -> Dict[str, Any]:
    since = (now or utcnow()) - timedelta(days=days)
    base = [Alert.branch_id == branch_id, Alert.created_at >= since]

    by_severity = dict(
        db.execute(select(Alert.severity, func.count(Alert.id)).where(*base).group_by(Alert.severity)).all()
    )
    by_type = dict(
        db.execute(select(Alert.alert_type, func.count(Alert.id)).where(*base).group_by(Alert.alert_type)).all()
    )
    unacknowledged = db.execute(
        select(func.count(Alert.id)).where(*base, Alert.is_acknowledged.is_(False))
    ).scalar_one()
    return {
        "days": days,
        "total": sum(by_severity.values()),
        "unacknowledged": unacknowledged,
        "by_severity": {s.value: by_severity.get(s.value, 0) for s in SEVERITY_ORDER},
        "by_type": {t.value: by_type.get(t.value, 0) for t in AlertType},
    }


# ─── read / acknowledge state ────────────────────────────────────────────────

def mark_read(db: Session, branch_id: str, alert_ids: List[str]) -> int:
    if not alert_ids:
        return 0
    res = db.execute(
        update(Alert)
        .where(Alert.branch_id == branch_id, Alert.id.in_(alert_ids), Alert.is_read.is_(False))
        .values(is_read=True)
        .execution_options(synchronize_session=False)
    )
    db.commit()
    return res.rowcount or 0

def acknowledge(db: Session, branch_id: str, alert_id: str, user_id: str, now: datetime) -> Optional[Alert]:
    alert = db.execute(
        select(Alert).where(Alert.branch_id == branch_id, Alert.id == alert_id)
    ).scalar_one_or_none()
    if alert is None:
        return None
    if not alert.is_acknowledged:
        alert.is_acknowledged = True
        alert.acknowledged_by = user_id
        alert.acknowledged_at = now
        alert.is_read = True
        db.commit()
        db.refresh(alert)
    return alert
