# insights_engine/alerts/settings_dao.py
from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from insights_engine.alerts.constants import DEFAULT_CHANNELS, KNOWN_CHANNELS, KNOWN_ROLES, AlertType
from insights_engine.config import Settings, settings as default_settings
from insights_engine.models import AlertSetting

log = logging.getLogger(__name__)


# ─── defaults ────────────────────────────────────────────────────────────────

def default_values(alert_type: AlertType, settings: Settings = default_settings) -> Dict[str, Any]:
    return {
        "is_enabled": True,
        "threshold_value": alert_type.default_threshold(),
        "cooldown_hours": alert_type.default_cooldown_hours(),
        "notification_channels": list(DEFAULT_CHANNELS),
        "recipient_roles": list(settings.default_recipient_roles),
    }


# ─── reads / creation ────────────────────────────────────────────────────────

def get_setting(db: Session, branch_id: str, alert_type: AlertType) -> Optional[AlertSetting]:
    return db.execute(
        select(AlertSetting).where(
            AlertSetting.branch_id == branch_id,
            AlertSetting.alert_type == alert_type.value,
        )
    ).scalar_one_or_none()

def get_or_create(db: Session, branch_id: str, alert_type: AlertType, settings: Settings = default_settings) -> AlertSetting:
    """Fetch the (branch, type) setting, creating it with type defaults on first access."""
    row = get_setting(db, branch_id, alert_type)
    if row is not None:
        return row
    row = AlertSetting(branch_id=branch_id, alert_type=alert_type.value, **default_values(alert_type, settings))
    db.add(row)
    try:
        db.commit()
    except IntegrityError:
        # Another worker created it first.
        db.rollback()
        row = get_setting(db, branch_id, alert_type)
    db.refresh(row)
    return row

def initialize_for_branch(db: Session, branch_id: str, settings: Settings = default_settings) -> List[AlertSetting]:
    return [get_or_create(db, branch_id, t, settings) for t in AlertType]

def list_for_branch(db: Session, branch_id: str, settings: Settings = default_settings) -> List[AlertSetting]:
    initialize_for_branch(db, branch_id, settings)
    rows = db.execute(
        select(AlertSetting).where(AlertSetting.branch_id == branch_id).order_by(AlertSetting.alert_type)
    ).scalars().all()
    return list(rows)


# ─── writes ──────────────────────────────────────────────────────────────────

def update_setting(
    db: Session,
    branch_id: str,
    alert_type: AlertType,
    changes: Dict[str, Any],
    settings: Settings = default_settings,
) -> AlertSetting:
    row = get_or_create(db, branch_id, alert_type, settings)
    for key, value in changes.items():
        if value is None and key != "threshold_value":
            continue
        if key == "notification_channels":
            bad = [c for c in value if c not in KNOWN_CHANNELS]
            if bad:
                raise ValueError(f"unknown channel(s): {', '.join(bad)}")
            value = list(dict.fromkeys(value))
        elif key == "recipient_roles":
            bad = [r for r in value if r not in KNOWN_ROLES]
            if bad:
                raise ValueError(f"unknown role(s): {', '.join(bad)}")
            value = list(dict.fromkeys(value))
        elif key == "cooldown_hours" and value < 0:
            raise ValueError("cooldown_hours must be >= 0")
        elif not hasattr(AlertSetting, key):
            raise ValueError(f"unknown setting field: {key}")
        setattr(row, key, value)
    db.commit()
    db.refresh(row)
    return row

def reset_to_defaults(db: Session, branch_id: str, alert_type: AlertType, settings: Settings = default_settings) -> AlertSetting:
    row = get_or_create(db, branch_id, alert_type, settings)
    for key, value in default_values(alert_type, settings).items():
        setattr(row, key, value)
    db.commit()
    db.refresh(row)
    return row


# ─── cooldown ────────────────────────────────────────────────────────────────

def can_trigger(setting: AlertSetting, now: datetime) -> bool:
    if not setting.is_enabled:
        return False
    if setting.last_triggered_at is None:
        return True
    return now - setting.last_triggered_at >= timedelta(hours=setting.cooldown_hours or 0)

def effective_threshold(setting: AlertSetting, alert_type: AlertType) -> Optional[float]:
    if setting.threshold_value is not None:
        return float(setting.threshold_value)
    return alert_type.default_threshold()

def try_mark_triggered(db: Session, setting: AlertSetting, observed: Optional[datetime], now: datetime) -> bool:
    """
    Compare-and-set on last_triggered_at. Returns False when another worker
    moved it since `observed` was read; the caller must then create nothing.
    """
    if observed is None:
        guard = AlertSetting.last_triggered_at.is_(None)
    else:
        guard = AlertSetting.last_triggered_at == observed
    res = db.execute(
        update(AlertSetting)
        .where(AlertSetting.id == setting.id, guard)
        .values(last_triggered_at=now)
        .execution_options(synchronize_session=False)
    )
    if res.rowcount != 1:
        db.rollback()
        log.info("Cooldown claim lost for branch=%s type=%s", setting.branch_id, setting.alert_type)
        return False
    return True
