# insights_engine/alerts/recommendations.py
from __future__ import annotations

from dataclasses import asdict, dataclass
from typing import Any, Callable, Dict, List

from insights_engine.alerts.constants import AlertSeverity, AlertType

PRIORITIES = ("immediate", "soon", "when_possible")


@dataclass(frozen=True)
class Recommendation:
    action: str
    description: str
    priority: str = "soon"
    assign_to: str = "pastor"

    def to_dict(self) -> Dict[str, str]:
        return asdict(self)


R = Recommendation

# ─── per-type builders (data = the alert payload) ────────────────────────────

def _churn(severity: AlertSeverity, data: Dict[str, Any]) -> List[Recommendation]:
    recs = []
    if (data.get("churn_score") or 0) >= 85 or severity is AlertSeverity.CRITICAL:
        recs.append(R("Schedule pastoral visit", "Visit in person within 48 hours to check on their wellbeing.", "immediate"))
    else:
        recs.append(R("Make a personal call", "Call to express care and check in on how they are doing."))
    factors = data.get("factors") or {}
    if "declining_trend" in factors or "days_inactive" in factors:
        recs.append(R("Review giving history", "Look for life changes behind the shift in giving that may need pastoral support."))
    recs += [
        R("Send personalized message", "Send a caring note acknowledging their place in the church family.", "soon", "care_team"),
        R("Connect with small group leader", "Ask their cluster leader to follow up as well.", "soon", "leader"),
    ]
    return recs

def _attendance(severity, data):
    return [
        R("Check in personally", "Attendance has dropped sharply; reach out to ask how they are doing.", "soon", "care_team"),
        R("Notify cluster leader", "Share the attendance change with their small group leader.", "soon", "leader"),
        R("Invite to upcoming service", "Send a personal invitation to this week's service or event.", "when_possible", "care_team"),
    ]

def _lifecycle(severity, data):
    stage = data.get("current_stage")
    if stage == "at_risk":
        return [
            R("Schedule pastoral conversation", "Member moved to At-Risk; arrange a conversation this week.", "immediate"),
            R("Assign care team follow-up", "Add the member to the care team's follow-up list.", "soon", "care_team"),
        ]
    if stage == "dormant":
        return [
            R("Send re-engagement message", "Reach out with a warm invitation to reconnect.", "soon", "care_team"),
            R("Verify contact details", "Confirm phone and email are still current.", "when_possible", "staff"),
        ]
    return [
        R("Check in with member", "Engagement is declining; a short call or message helps.", "soon", "leader"),
        R("Suggest a serving opportunity", "Offer a ministry or volunteer role that fits their interests.", "when_possible", "leader"),
    ]

def _prayer(severity, data):
    recs = [R("Pray and respond today", "Acknowledge the request and pray with the requester.", "immediate")]
    if severity is AlertSeverity.CRITICAL:
        recs.append(R("Arrange a pastoral visit", "Critical requests warrant an in-person visit or call within 24 hours.", "immediate"))
    recs.append(R("Mobilise prayer team", "Share the request (with consent) with the prayer team.", "soon", "care_team"))
    return recs

def _cluster(severity, data):
    recs = [
        R("Meet with cluster leader", "Review attendance and engagement with the cluster leader.", "soon", "manager"),
        R("Review meeting format", "Consider changes to time, venue or format that may lift attendance.", "when_possible", "leader"),
    ]
    if data.get("health_level") == "critical":
        recs.insert(0, R("Plan cluster intervention", "Cluster health is critical; agree on a recovery plan this week.", "immediate", "manager"))
    return recs

def _household(severity, data):
    return [
        R("Contact the household", "Call the household head to check in on the family.", "soon", "care_team"),
        R("Invite to family event", "Send an invitation to an upcoming family-friendly event.", "when_possible", "care_team"),
    ]


_BUILDERS: Dict[AlertType, Callable[[AlertSeverity, Dict[str, Any]], List[Recommendation]]] = {
    AlertType.CHURN_RISK: _churn,
    AlertType.ATTENDANCE_ANOMALY: _attendance,
    AlertType.LIFECYCLE_CHANGE: _lifecycle,
    AlertType.CRITICAL_PRAYER: _prayer,
    AlertType.CLUSTER_HEALTH: _cluster,
    AlertType.HOUSEHOLD_DISENGAGEMENT: _household,
}


def recommendations_for(alert_type: AlertType, severity: AlertSeverity, data: Dict[str, Any]) -> List[Dict[str, str]]:
    """Storable recommendations for a new alert."""
    return [r.to_dict() for r in _BUILDERS[alert_type](severity, data or {})]
