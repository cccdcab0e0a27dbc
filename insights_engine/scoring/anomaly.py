# insights_engine/scoring/anomaly.py
from __future__ import annotations

import logging

from sqlalchemy import update
from sqlalchemy.orm import Session

from insights_engine.models import Member

log = logging.getLogger(__name__)


def clear_inactive_anomalies(db: Session, branch_id: str) -> int:
    """
    Members that left the active roll keep no anomaly score.
    Active members are cleared by the scorer itself.
    """
    res = db.execute(
        update(Member)
        .where(
            Member.branch_id == branch_id,
            Member.status != "active",
            Member.attendance_anomaly_score.is_not(None),
        )
        .values(
            attendance_anomaly_score=None,
            attendance_anomaly_factors=None,
            attendance_anomaly_detected_at=None,
        )
        .execution_options(synchronize_session=False)
    )
    db.commit()
    cleared = res.rowcount or 0
    if cleared:
        log.info("🧹 Cleared %d stale anomaly score(s) for branch=%s", cleared, branch_id)
    return cleared
