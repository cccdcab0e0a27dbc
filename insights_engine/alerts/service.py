# insights_engine/alerts/service.py
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from insights_engine.alerts import dao, settings_dao
from insights_engine.alerts.constants import FALLBACK_COOLDOWN_HOURS, AlertSeverity, AlertType
from insights_engine.alerts.recommendations import recommendations_for
from insights_engine.config import Settings, settings as default_settings
from insights_engine.errors import is_infrastructure_error
from insights_engine.models import Alert, AlertSetting, Branch, Cluster, Household, Member, PrayerRequest
from insights_engine.scoring.constants import (
    ClusterHealthLevel, HouseholdEngagementLevel, LifecycleStage, PrayerUrgencyLevel,
)
from insights_engine.utils.common import Clock, iso, utcnow

log = logging.getLogger(__name__)

Recommender = Callable[[AlertType, AlertSeverity, Dict[str, Any]], List[Dict[str, str]]]

LIFECYCLE_ALERT_STAGES = (LifecycleStage.AT_RISK, LifecycleStage.DORMANT, LifecycleStage.DISENGAGING)


def determine_severity(score: float, threshold: float) -> AlertSeverity:
    """Severity from how far a score overshoots its threshold."""
    excess = abs(score - threshold)
    if excess >= 25:
        return AlertSeverity.CRITICAL
    if excess >= 15:
        return AlertSeverity.HIGH
    if excess >= 5:
        return AlertSeverity.MEDIUM
    return AlertSeverity.LOW


@dataclass
class Candidate:
    subject_type: str
    subject_id: str
    severity: AlertSeverity
    title: str
    description: str
    data: Dict[str, Any] = field(default_factory=dict)


class AlertEngine:
    """
    Evaluates every alert type for a branch.

    Per (branch, type) the flow is: setting enabled and out of cooldown →
    collect candidates (threshold / state rules, minus subjects already
    alerted within the window) → claim `last_triggered_at` with a
    compare-and-set → insert. A lost claim inserts nothing.
    """

    def __init__(
        self,
        db: Session,
        settings: Settings = default_settings,
        clock: Clock = utcnow,
        recommender: Optional[Recommender] = recommendations_for,
    ):
        self.db = db
        self.settings = settings
        self.clock = clock
        self.recommender = recommender if settings.FEATURE_RECOMMENDATIONS else None
        self.checks: Dict[AlertType, Callable[[Branch], List[Alert]]] = {
            AlertType.CHURN_RISK: self.check_churn_risk_alerts,
            AlertType.ATTENDANCE_ANOMALY: self.check_attendance_anomaly_alerts,
            AlertType.LIFECYCLE_CHANGE: self.check_lifecycle_change_alerts,
            AlertType.CRITICAL_PRAYER: self.check_critical_prayer_alerts,
            AlertType.CLUSTER_HEALTH: self.check_cluster_health_alerts,
            AlertType.HOUSEHOLD_DISENGAGEMENT: self.check_household_disengagement_alerts,
        }

    # ─── orchestration ──────────────────────────────────────────────────────

    def process_all_alerts(self, branch: Branch) -> List[Alert]:
        created: List[Alert] = []
        for alert_type, check in self.checks.items():
            try:
                created.extend(check(branch))
            except Exception as e:
                if is_infrastructure_error(e):
                    raise
                self.db.rollback()
                log.exception("Alert check %s failed for branch=%s", alert_type.value, branch.id)
        log.info("🔔 branch=%s alerts created=%d", branch.id, len(created))
        return created

    def process_type(self, branch: Branch, alert_type: AlertType) -> List[Alert]:
        return self.checks[alert_type](branch)

    def _run(
        self,
        branch: Branch,
        alert_type: AlertType,
        collect: Callable[[Branch, AlertSetting, datetime], List[Candidate]],
    ) -> List[Alert]:
        setting = settings_dao.get_or_create(self.db, branch.id, alert_type, self.settings)
        now = self.clock()
        if not settings_dao.can_trigger(setting, now):
            return []

        observed = setting.last_triggered_at
        window_start = now - timedelta(hours=setting.cooldown_hours or FALLBACK_COOLDOWN_HOURS)
        candidates = [
            c for c in collect(branch, setting, now)
            if not dao.exists_for_subject(self.db, branch.id, alert_type, c.subject_type, c.subject_id, window_start)
        ]
        if not candidates:
            return []

        if alert_type.marks_cooldown() and not settings_dao.try_mark_triggered(self.db, setting, observed, now):
            return []

        alerts = []
        for c in candidates:
            recs = self.recommender(alert_type, c.severity, c.data) if self.recommender else []
            alerts.append(dao.build_alert(
                branch_id=branch.id,
                alert_type=alert_type,
                severity=c.severity,
                title=c.title,
                description=c.description,
                subject_type=c.subject_type,
                subject_id=c.subject_id,
                data=c.data,
                recommendations=recs,
                created_at=now,
            ))
        self.db.add_all(alerts)
        self.db.commit()
        log.info("branch=%s type=%s created %d alert(s)", branch.id, alert_type.value, len(alerts))
        return alerts

    # ─── churn risk ─────────────────────────────────────────────────────────

    def check_churn_risk_alerts(self, branch: Branch) -> List[Alert]:
        return self._run(branch, AlertType.CHURN_RISK, self._churn_candidates)

    def _churn_candidates(self, branch, setting, now):
        threshold = settings_dao.effective_threshold(setting, AlertType.CHURN_RISK)
        members = self.db.execute(
            select(Member)
            .where(
                Member.branch_id == branch.id,
                Member.status == "active",
                Member.churn_risk_score > threshold,
            )
            .order_by(Member.churn_risk_score.desc())
        ).scalars().all()
        out = []
        for m in members:
            score = float(m.churn_risk_score)
            severity = determine_severity(score, threshold)
            # Churn alerts are never below high.
            if severity.rank > AlertSeverity.HIGH.rank:
                severity = AlertSeverity.HIGH
            out.append(Candidate(
                subject_type="member",
                subject_id=m.id,
                severity=severity,
                title=f"High churn risk detected for {m.full_name()}",
                description=(
                    f"Member {m.full_name()} has a churn risk score of {score:g}%, "
                    f"exceeding the threshold of {threshold:g}%."
                ),
                data={"churn_score": score, "threshold": threshold, "factors": m.churn_risk_factors or {}},
            ))
        return out

    # ─── attendance anomaly ─────────────────────────────────────────────────

    def check_attendance_anomaly_alerts(self, branch: Branch) -> List[Alert]:
        return self._run(branch, AlertType.ATTENDANCE_ANOMALY, self._anomaly_candidates)

    def _anomaly_candidates(self, branch, setting, now):
        threshold = settings_dao.effective_threshold(setting, AlertType.ATTENDANCE_ANOMALY)
        members = self.db.execute(
            select(Member)
            .where(
                Member.branch_id == branch.id,
                Member.status == "active",
                Member.attendance_anomaly_score > threshold,
            )
            .order_by(Member.attendance_anomaly_score.desc())
        ).scalars().all()
        return [
            Candidate(
                subject_type="member",
                subject_id=m.id,
                severity=AlertSeverity.MEDIUM,
                title=f"Attendance anomaly detected for {m.full_name()}",
                description=(
                    f"Member {m.full_name()} shows a significant attendance pattern change "
                    f"with an anomaly score of {m.attendance_anomaly_score:g}."
                ),
                data={
                    "anomaly_score": float(m.attendance_anomaly_score),
                    "threshold": threshold,
                    "anomaly_factors": m.attendance_anomaly_factors or {},
                },
            )
            for m in members
        ]

    # ─── lifecycle transitions ──────────────────────────────────────────────

    def check_lifecycle_change_alerts(self, branch: Branch) -> List[Alert]:
        return self._run(branch, AlertType.LIFECYCLE_CHANGE, self._lifecycle_candidates)

    def _lifecycle_candidates(self, branch, setting, now):
        since = now - timedelta(hours=setting.cooldown_hours or FALLBACK_COOLDOWN_HOURS)
        members = self.db.execute(
            select(Member)
            .where(
                Member.branch_id == branch.id,
                Member.lifecycle_stage.in_([s.value for s in LIFECYCLE_ALERT_STAGES]),
                Member.lifecycle_stage_changed_at >= since,
            )
            .order_by(Member.lifecycle_stage_changed_at.desc())
        ).scalars().all()
        out = []
        for m in members:
            stage = LifecycleStage(m.lifecycle_stage)
            out.append(Candidate(
                subject_type="member",
                subject_id=m.id,
                severity=AlertSeverity.HIGH if stage is LifecycleStage.AT_RISK else AlertSeverity.MEDIUM,
                title=f"Lifecycle transition: {m.full_name()} is now {stage.label}",
                description=f"Member {m.full_name()} has transitioned to the {stage.label} stage.",
                data={
                    "current_stage": stage.value,
                    "previous_stage": m.previous_lifecycle_stage,
                    "changed_at": iso(m.lifecycle_stage_changed_at),
                },
            ))
        return out

    # ─── critical prayer requests ───────────────────────────────────────────

    def check_critical_prayer_alerts(self, branch: Branch) -> List[Alert]:
        return self._run(branch, AlertType.CRITICAL_PRAYER, self._prayer_candidates)

    def _prayer_candidates(self, branch, setting, now):
        prayers = self.db.execute(
            select(PrayerRequest)
            .where(
                PrayerRequest.branch_id == branch.id,
                PrayerRequest.urgency_level.in_([PrayerUrgencyLevel.CRITICAL.value, PrayerUrgencyLevel.HIGH.value]),
                PrayerRequest.status != "answered",
                PrayerRequest.created_at >= now - timedelta(hours=24),
            )
            .order_by(PrayerRequest.created_at.desc())
        ).scalars().all()
        out = []
        for p in prayers:
            member = self.db.get(Member, p.member_id) if p.member_id else None
            who = member.full_name() if member else "Anonymous"
            urgency = p.urgency_level.title()
            out.append(Candidate(
                subject_type="prayer_request",
                subject_id=p.id,
                severity=AlertSeverity.CRITICAL if p.urgency_level == PrayerUrgencyLevel.CRITICAL.value else AlertSeverity.HIGH,
                title=f"{urgency} prayer request requires attention",
                description=f"A {urgency.lower()} prayer request from {who} needs pastoral attention: {p.title}",
                data={
                    "prayer_id": p.id,
                    "urgency_level": p.urgency_level,
                    "category": p.category,
                    "member_id": p.member_id,
                    "submitted_at": iso(p.created_at),
                },
            ))
        return out

    # ─── cluster health ─────────────────────────────────────────────────────

    def check_cluster_health_alerts(self, branch: Branch) -> List[Alert]:
        return self._run(branch, AlertType.CLUSTER_HEALTH, self._cluster_candidates)

    def _cluster_candidates(self, branch, setting, now):
        threshold = settings_dao.effective_threshold(setting, AlertType.CLUSTER_HEALTH)
        clusters = self.db.execute(
            select(Cluster)
            .where(
                Cluster.branch_id == branch.id,
                Cluster.is_active.is_(True),
                Cluster.health_level.in_([ClusterHealthLevel.STRUGGLING.value, ClusterHealthLevel.CRITICAL.value]),
                Cluster.health_score < threshold,
            )
            .order_by(Cluster.health_score)
        ).scalars().all()
        out = []
        for c in clusters:
            member_count = self.db.execute(
                select(func.count(Member.id)).where(Member.cluster_id == c.id)
            ).scalar_one()
            is_critical = c.health_level == ClusterHealthLevel.CRITICAL.value
            out.append(Candidate(
                subject_type="cluster",
                subject_id=c.id,
                severity=AlertSeverity.CRITICAL if is_critical else AlertSeverity.HIGH,
                title=f"Cluster '{c.name}' health is {c.health_level}",
                description=(
                    f"Cluster {c.name} has a health score of {c.health_score:g}/100 "
                    f"and is in {c.health_level} condition."
                ),
                data={
                    "cluster_id": c.id,
                    "health_score": float(c.health_score),
                    "health_level": c.health_level,
                    "member_count": member_count,
                    "threshold": threshold,
                },
            ))
        return out

    # ─── household disengagement ────────────────────────────────────────────

    def check_household_disengagement_alerts(self, branch: Branch) -> List[Alert]:
        return self._run(branch, AlertType.HOUSEHOLD_DISENGAGEMENT, self._household_candidates)

    def _household_candidates(self, branch, setting, now):
        households = self.db.execute(
            select(Household)
            .where(
                Household.branch_id == branch.id,
                Household.engagement_level == HouseholdEngagementLevel.DISENGAGED.value,
            )
            .order_by(Household.id)
        ).scalars().all()
        out = []
        for h in households:
            member_count = self.db.execute(
                select(func.count(Member.id)).where(Member.household_id == h.id)
            ).scalar_one()
            if not member_count:
                continue
            out.append(Candidate(
                subject_type="household",
                subject_id=h.id,
                severity=AlertSeverity.MEDIUM,
                title=f"Household '{h.name}' is disengaged",
                description=(
                    f"The {h.name} household ({member_count} members) has dropped to disengaged status "
                    f"with an engagement score of {h.engagement_score or 0:g}."
                ),
                data={
                    "household_id": h.id,
                    "engagement_score": h.engagement_score,
                    "engagement_level": h.engagement_level,
                    "member_count": member_count,
                },
            ))
        return out
