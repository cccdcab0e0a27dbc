# insights_engine/scoring/constants.py
from __future__ import annotations

from enum import Enum


class LifecycleStage(str, Enum):
    PROSPECT = "prospect"
    NEW_MEMBER = "new_member"
    GROWING = "growing"
    ENGAGED = "engaged"
    DISENGAGING = "disengaging"
    AT_RISK = "at_risk"
    DORMANT = "dormant"
    INACTIVE = "inactive"

    @property
    def label(self) -> str:
        return self.value.replace("_", " ").title().replace("At Risk", "At-Risk")

    def needs_attention(self) -> bool:
        return self in (LifecycleStage.DISENGAGING, LifecycleStage.AT_RISK, LifecycleStage.DORMANT)


class ClusterHealthLevel(str, Enum):
    THRIVING = "thriving"
    HEALTHY = "healthy"
    STABLE = "stable"
    STRUGGLING = "struggling"
    CRITICAL = "critical"

    def needs_attention(self) -> bool:
        return self in (ClusterHealthLevel.STRUGGLING, ClusterHealthLevel.CRITICAL)


class HouseholdEngagementLevel(str, Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"
    DISENGAGED = "disengaged"


class PrayerUrgencyLevel(str, Enum):
    NORMAL = "normal"
    ELEVATED = "elevated"
    HIGH = "high"
    CRITICAL = "critical"


# Ordinal scales, best first. The transition detector ranks states by index.
LIFECYCLE_SCALE = (
    LifecycleStage.ENGAGED,
    LifecycleStage.GROWING,
    LifecycleStage.NEW_MEMBER,
    LifecycleStage.PROSPECT,
    LifecycleStage.DISENGAGING,
    LifecycleStage.AT_RISK,
    LifecycleStage.DORMANT,
    LifecycleStage.INACTIVE,
)

CLUSTER_HEALTH_SCALE = (
    ClusterHealthLevel.THRIVING,
    ClusterHealthLevel.HEALTHY,
    ClusterHealthLevel.STABLE,
    ClusterHealthLevel.STRUGGLING,
    ClusterHealthLevel.CRITICAL,
)

HOUSEHOLD_ENGAGEMENT_SCALE = (
    HouseholdEngagementLevel.HIGH,
    HouseholdEngagementLevel.MEDIUM,
    HouseholdEngagementLevel.LOW,
    HouseholdEngagementLevel.DISENGAGED,
)

# Score → level cut-offs (inclusive lower bounds).
def cluster_level_for(score: float) -> ClusterHealthLevel:
    if score >= 80: return ClusterHealthLevel.THRIVING
    if score >= 65: return ClusterHealthLevel.HEALTHY
    if score >= 50: return ClusterHealthLevel.STABLE
    if score >= 30: return ClusterHealthLevel.STRUGGLING
    return ClusterHealthLevel.CRITICAL

def household_level_for(score: float) -> HouseholdEngagementLevel:
    if score >= 70: return HouseholdEngagementLevel.HIGH
    if score >= 45: return HouseholdEngagementLevel.MEDIUM
    if score >= 25: return HouseholdEngagementLevel.LOW
    return HouseholdEngagementLevel.DISENGAGED

# Heuristic weights for the default scorers.
CLUSTER_WEIGHTS = {
    "attendance": 0.35,
    "engagement": 0.25,
    "growth": 0.20,
    "retention": 0.20,
}

HOUSEHOLD_WEIGHTS = {
    "attendance": 0.45,
    "giving": 0.35,
    "lifecycle": 0.20,
}
