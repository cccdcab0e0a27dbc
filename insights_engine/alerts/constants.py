# insights_engine/alerts/constants.py
from __future__ import annotations

from enum import Enum
from typing import Optional


class AlertType(str, Enum):
    CHURN_RISK = "churn_risk"
    ATTENDANCE_ANOMALY = "attendance_anomaly"
    LIFECYCLE_CHANGE = "lifecycle_change"
    CRITICAL_PRAYER = "critical_prayer"
    CLUSTER_HEALTH = "cluster_health"
    HOUSEHOLD_DISENGAGEMENT = "household_disengagement"

    @property
    def label(self) -> str:
        return _TYPE_LABELS[self]

    def default_threshold(self) -> Optional[float]:
        return _DEFAULT_THRESHOLDS.get(self)

    def default_cooldown_hours(self) -> int:
        return _DEFAULT_COOLDOWN_HOURS[self]

    def marks_cooldown(self) -> bool:
        # Prayer alerts are always processed immediately.
        return self is not AlertType.CRITICAL_PRAYER


class AlertSeverity(str, Enum):
    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"

    @property
    def label(self) -> str:
        return self.value.title()

    @property
    def color(self) -> str:
        return _SEVERITY_COLORS[self]

    @property
    def rank(self) -> int:
        """0 = most severe."""
        return SEVERITY_ORDER.index(self)

    def requires_immediate_attention(self) -> bool:
        return self in (AlertSeverity.CRITICAL, AlertSeverity.HIGH)


SEVERITY_ORDER = (
    AlertSeverity.CRITICAL,
    AlertSeverity.HIGH,
    AlertSeverity.MEDIUM,
    AlertSeverity.LOW,
)

_TYPE_LABELS = {
    AlertType.CHURN_RISK: "Churn Risk Alert",
    AlertType.ATTENDANCE_ANOMALY: "Attendance Anomaly",
    AlertType.LIFECYCLE_CHANGE: "Lifecycle Transition",
    AlertType.CRITICAL_PRAYER: "Critical Prayer Request",
    AlertType.CLUSTER_HEALTH: "Cluster Health Alert",
    AlertType.HOUSEHOLD_DISENGAGEMENT: "Household Disengagement",
}

# None = not threshold-based.
_DEFAULT_THRESHOLDS = {
    AlertType.CHURN_RISK: 70.0,
    AlertType.ATTENDANCE_ANOMALY: 50.0,
    AlertType.CLUSTER_HEALTH: 50.0,
}

_DEFAULT_COOLDOWN_HOURS = {
    AlertType.CHURN_RISK: 72,
    AlertType.ATTENDANCE_ANOMALY: 72,
    AlertType.LIFECYCLE_CHANGE: 24,
    AlertType.CRITICAL_PRAYER: 0,
    AlertType.CLUSTER_HEALTH: 168,
    AlertType.HOUSEHOLD_DISENGAGEMENT: 168,
}

_SEVERITY_COLORS = {
    AlertSeverity.CRITICAL: "red",
    AlertSeverity.HIGH: "orange",
    AlertSeverity.MEDIUM: "amber",
    AlertSeverity.LOW: "zinc",
}

# Per-subject dedup window when a setting has no cooldown of its own.
FALLBACK_COOLDOWN_HOURS = 24

DEFAULT_CHANNELS = ["database"]
KNOWN_CHANNELS = ("database", "mail", "sms")
KNOWN_ROLES = ("admin", "pastor", "manager", "staff", "leader")

# Digest rendering
DIGEST_MAX_PER_TYPE = 5
