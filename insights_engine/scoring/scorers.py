# insights_engine/scoring/scorers.py
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from statistics import pvariance
from typing import Any, Dict, List, Optional, Type

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from insights_engine.config import Settings
from insights_engine.models import (
    AttendanceRecord, Cluster, Donation, Household, Member, Visitor, VisitorFollowUp,
)
from insights_engine.scoring.constants import (
    CLUSTER_HEALTH_SCALE, CLUSTER_WEIGHTS, HOUSEHOLD_ENGAGEMENT_SCALE, HOUSEHOLD_WEIGHTS,
    LIFECYCLE_SCALE, ClusterHealthLevel, HouseholdEngagementLevel, LifecycleStage,
    cluster_level_for, household_level_for,
)
from insights_engine.scoring.result import Result, ScoreResult, safe_score
from insights_engine.scoring.transitions import OrdinalScale, Transition
from insights_engine.utils.common import clamp, days_between, safe_percent

log = logging.getLogger(__name__)


@dataclass
class ScoringContext:
    db: Session
    settings: Settings
    branch_id: str
    now: datetime

    @property
    def today(self) -> date:
        return self.now.date()


# ──────────────────────────────────────────────────────────────────────────────
# Shared signal readers
# ──────────────────────────────────────────────────────────────────────────────

def member_attendance_dates(db: Session, member_id: str, since: Optional[date] = None) -> List[date]:
    stmt = select(AttendanceRecord.date).where(AttendanceRecord.member_id == member_id)
    if since is not None:
        stmt = stmt.where(AttendanceRecord.date >= since)
    return list(db.execute(stmt.order_by(AttendanceRecord.date.desc())).scalars().all())

def member_donations(db: Session, member_id: str) -> List[Donation]:
    stmt = (
        select(Donation)
        .where(Donation.member_id == member_id)
        .order_by(Donation.donated_at.desc())
    )
    return list(db.execute(stmt).scalars().all())

def typical_interval_days(donation_dates: List[date]) -> float:
    """Mean gap between consecutive gifts (dates newest first)."""
    if len(donation_dates) < 2:
        return 0.0
    gaps = [(a - b).days for a, b in zip(donation_dates, donation_dates[1:])]
    return sum(gaps) / len(gaps)

def giving_trend_percent(donations: List[Donation], today: date) -> float:
    """Last 3 months vs the 3 months before, as a percent change."""
    recent_start = today - timedelta(days=90)
    prior_start = today - timedelta(days=180)
    recent = sum(d.amount for d in donations if d.donated_at >= recent_start)
    prior = sum(d.amount for d in donations if prior_start <= d.donated_at < recent_start)
    if prior <= 0:
        return 0.0
    return safe_percent(recent - prior, prior)

def attended_weeks(dates: List[date]) -> int:
    return len({d.isocalendar()[:2] for d in dates})


# ──────────────────────────────────────────────────────────────────────────────
# Scorer protocol
# ──────────────────────────────────────────────────────────────────────────────

class Scorer:
    """
    A pluggable scoring strategy for one entity type.

    `score` returns Ok(ScoreResult) or Err(exc); `project` maps the result (and
    the detected transition, for stateful scorers) onto the entity's columns.
    """
    name: str = "scorer"
    entity_type: str = ""
    model: Type[Any] = None
    state_field: Optional[str] = None
    scale: Optional[OrdinalScale] = None

    def filters(self) -> List[Any]:
        return []

    def display_name(self, entity: Any) -> str:
        return getattr(entity, "name", None) or str(entity.id)

    def score(self, entity: Any, ctx: ScoringContext) -> Result:
        return safe_score(self.compute, entity, ctx)

    def compute(self, entity: Any, ctx: ScoringContext) -> ScoreResult:
        raise NotImplementedError

    def project(self, entity: Any, result: ScoreResult, transition: Optional[Transition], now: datetime) -> Dict[str, Any]:
        raise NotImplementedError


# ──────────────────────────────────────────────────────────────────────────────
# Churn risk (giving-based)
# ──────────────────────────────────────────────────────────────────────────────

class ChurnScorer(Scorer):
    name = "churn"
    entity_type = "member"
    model = Member
    base_score = 20.0

    def filters(self):
        return [Member.status == "active"]

    def display_name(self, entity):
        return entity.full_name()

    def compute(self, member: Member, ctx: ScoringContext) -> ScoreResult:
        donations = member_donations(ctx.db, member.id)
        if not donations:
            return ScoreResult(score=0.0, level="low", factors={"no_donation_history": {"description": "No donation history"}})

        factors: Dict[str, Any] = {}
        score = self.base_score
        dates = [d.donated_at for d in donations]
        days_since = (ctx.today - dates[0]).days

        interval = typical_interval_days(dates)
        if interval > 0:
            ratio = days_since / interval
            if ratio > 2:
                impact = min((ratio - 1) * 15, 40)
                score += impact
                factors["exceeded_interval"] = {"value": round(ratio, 1), "impact": round(impact, 2)}

        if days_since > ctx.settings.CHURN_INACTIVE_DAYS:
            impact = min((days_since - ctx.settings.CHURN_INACTIVE_DAYS) / 30 * 10, 30)
            score += impact
            factors["days_inactive"] = {"value": days_since, "impact": round(impact, 2)}

        trend = giving_trend_percent(donations, ctx.today)
        if trend < -30:
            impact = min(abs(trend) / 100 * 20, 20)
            score += impact
            factors["declining_trend"] = {"value": trend, "impact": round(impact, 2)}
        elif trend > 20:
            impact = min(trend / 100 * 15, 15)
            score -= impact
            factors["increasing_trend"] = {"value": trend, "impact": -round(impact, 2)}

        recent_attendance = member_attendance_dates(ctx.db, member.id, ctx.today - timedelta(days=90))
        if not recent_attendance and days_since > 30:
            score += 15
            factors["no_recent_attendance"] = {"value": 0, "impact": 15}

        if len(donations) >= 12:
            score += 5
            factors["regular_donor"] = {"value": len(donations), "impact": 5}

        score = round(clamp(score), 2)
        level = "high" if score >= 70 else "medium" if score >= 40 else "low"
        return ScoreResult(
            score=score,
            level=level,
            scores={"days_since_last_donation": float(days_since)},
            factors=factors,
            needs_attention=level == "high",
        )

    def project(self, member, result, transition, now):
        return {
            "churn_risk_score": result.score,
            "churn_risk_factors": result.factors,
            "churn_risk_calculated_at": now,
        }


# ──────────────────────────────────────────────────────────────────────────────
# Lifecycle stage
# ──────────────────────────────────────────────────────────────────────────────

class LifecycleScorer(Scorer):
    name = "lifecycle"
    entity_type = "member"
    model = Member
    state_field = "lifecycle_stage"
    scale = OrdinalScale(LIFECYCLE_SCALE)

    def display_name(self, entity):
        return entity.full_name()

    def compute(self, member: Member, ctx: ScoringContext) -> ScoreResult:
        cfg = ctx.settings
        recent = member_attendance_dates(ctx.db, member.id, ctx.today - timedelta(weeks=8))
        last_seen = member_attendance_dates(ctx.db, member.id)
        days_since_seen = days_between(last_seen[0], ctx.today) if last_seen else None
        tenure = days_between(member.joined_at, ctx.today)
        churn = member.churn_risk_score

        factors = {
            "attended_weeks_8": attended_weeks(recent),
            "days_since_attendance": days_since_seen,
            "tenure_days": tenure,
            "churn_risk_score": churn,
        }

        if member.status != "active":
            stage = LifecycleStage.INACTIVE
        elif member.joined_at is None and not last_seen:
            stage = LifecycleStage.PROSPECT
        elif tenure is not None and tenure <= cfg.NEW_MEMBER_DAYS:
            stage = LifecycleStage.NEW_MEMBER
        elif days_since_seen is None or days_since_seen >= cfg.DORMANT_DAYS:
            stage = LifecycleStage.DORMANT
        elif churn is not None and churn >= cfg.LIFECYCLE_AT_RISK_CHURN:
            stage = LifecycleStage.AT_RISK
        elif churn is not None and churn >= cfg.LIFECYCLE_DISENGAGING_CHURN:
            stage = LifecycleStage.DISENGAGING
        elif factors["attended_weeks_8"] >= 6:
            stage = LifecycleStage.ENGAGED
        elif factors["attended_weeks_8"] <= 1:
            stage = LifecycleStage.DISENGAGING
        else:
            stage = LifecycleStage.GROWING

        return ScoreResult(level=stage.value, factors=factors, needs_attention=stage.needs_attention())

    def project(self, member, result, transition, now):
        fields = {
            "lifecycle_stage": result.level,
            "lifecycle_stage_factors": result.factors,
            "lifecycle_calculated_at": now,
        }
        if transition is not None and transition.is_transition:
            fields["previous_lifecycle_stage"] = transition.previous
            fields["lifecycle_stage_changed_at"] = now
        return fields


# ──────────────────────────────────────────────────────────────────────────────
# Cluster health
# ──────────────────────────────────────────────────────────────────────────────

class ClusterHealthScorer(Scorer):
    name = "cluster_health"
    entity_type = "cluster"
    model = Cluster
    state_field = "health_level"
    scale = OrdinalScale(CLUSTER_HEALTH_SCALE)

    def filters(self):
        return [Cluster.is_active.is_(True)]

    def compute(self, cluster: Cluster, ctx: ScoringContext) -> ScoreResult:
        members = list(ctx.db.execute(select(Member).where(Member.cluster_id == cluster.id)).scalars().all())
        if not members:
            level = ClusterHealthLevel.CRITICAL
            return ScoreResult(score=0.0, level=level.value, factors={"member_count": 0}, needs_attention=True)

        since = ctx.today - timedelta(weeks=4)
        active = [m for m in members if m.status == "active"]
        attending = sum(1 for m in active if member_attendance_dates(ctx.db, m.id, since))
        healthy_stage = sum(1 for m in active if not _stage_needs_attention(m.lifecycle_stage))
        new_members = sum(
            1 for m in members
            if m.joined_at and (ctx.today - m.joined_at).days <= ctx.settings.NEW_MEMBER_DAYS
        )
        at_risk = sum(1 for m in active if m.lifecycle_stage in ("at_risk", "dormant"))

        sub = {
            "attendance": safe_percent(attending, len(active)),
            "engagement": safe_percent(healthy_stage, len(active)),
            "growth": clamp(50 + safe_percent(new_members, len(members)) * 2),
            "retention": clamp(100 - safe_percent(at_risk, len(active))),
        }
        score = round(sum(sub[k] * w for k, w in CLUSTER_WEIGHTS.items()), 2)
        level = cluster_level_for(score)
        return ScoreResult(
            score=score,
            level=level.value,
            scores=sub,
            factors={"member_count": len(members), "active_members": len(active), **sub},
            needs_attention=level.needs_attention(),
        )

    def project(self, cluster, result, transition, now):
        return {
            "health_score": result.score,
            "health_level": result.level,
            "health_factors": result.factors,
            "health_calculated_at": now,
        }


def _stage_needs_attention(stage: Optional[str]) -> bool:
    if stage is None:
        return False
    try:
        return LifecycleStage(stage).needs_attention()
    except ValueError:
        return False


# ──────────────────────────────────────────────────────────────────────────────
# Household engagement
# ──────────────────────────────────────────────────────────────────────────────

_STAGE_SCORES = {
    LifecycleStage.ENGAGED: 100,
    LifecycleStage.GROWING: 80,
    LifecycleStage.NEW_MEMBER: 70,
    LifecycleStage.PROSPECT: 50,
    LifecycleStage.DISENGAGING: 40,
    LifecycleStage.AT_RISK: 25,
    LifecycleStage.DORMANT: 15,
    LifecycleStage.INACTIVE: 0,
}

class HouseholdScorer(Scorer):
    name = "household"
    entity_type = "household"
    model = Household
    state_field = "engagement_level"
    scale = OrdinalScale(HOUSEHOLD_ENGAGEMENT_SCALE)

    def compute(self, household: Household, ctx: ScoringContext) -> ScoreResult:
        members = list(ctx.db.execute(select(Member).where(Member.household_id == household.id)).scalars().all())
        if not members:
            return ScoreResult(
                score=0.0,
                level=HouseholdEngagementLevel.DISENGAGED.value,
                factors={"member_count": 0},
                needs_attention=False,
            )

        since = ctx.today - timedelta(weeks=8)
        giving_since = ctx.today - timedelta(days=90)
        member_scores: Dict[str, float] = {}
        for m in members:
            attendance = min(attended_weeks(member_attendance_dates(ctx.db, m.id, since)) / 8 * 100, 100)
            gave = ctx.db.execute(
                select(func.count(Donation.id))
                .where(Donation.member_id == m.id, Donation.donated_at >= giving_since)
            ).scalar_one()
            giving = 100.0 if gave else 0.0
            stage_score = _STAGE_SCORES.get(_as_stage(m.lifecycle_stage), 50)
            member_scores[m.id] = round(
                attendance * HOUSEHOLD_WEIGHTS["attendance"]
                + giving * HOUSEHOLD_WEIGHTS["giving"]
                + stage_score * HOUSEHOLD_WEIGHTS["lifecycle"],
                2,
            )

        values = list(member_scores.values())
        score = round(sum(values) / len(values), 2)
        level = household_level_for(score)
        variance = round(pvariance(values), 2) if len(values) > 1 else 0.0
        return ScoreResult(
            score=score,
            level=level.value,
            scores={"member_variance": variance},
            factors={"member_count": len(members), "member_scores": member_scores, "member_variance": variance},
            needs_attention=level in (HouseholdEngagementLevel.LOW, HouseholdEngagementLevel.DISENGAGED),
        )

    def project(self, household, result, transition, now):
        return {
            "engagement_score": result.score,
            "engagement_level": result.level,
            "engagement_factors": result.factors,
            "engagement_calculated_at": now,
        }


def _as_stage(value: Optional[str]) -> Optional[LifecycleStage]:
    try:
        return LifecycleStage(value) if value else None
    except ValueError:
        return None


# ──────────────────────────────────────────────────────────────────────────────
# Visitor conversion
# ──────────────────────────────────────────────────────────────────────────────

class VisitorConversionScorer(Scorer):
    name = "visitor_conversion"
    entity_type = "visitor"
    model = Visitor
    base_score = 20.0

    def filters(self):
        return [Visitor.converted_member_id.is_(None)]

    def compute(self, visitor: Visitor, ctx: ScoringContext) -> ScoreResult:
        score = self.base_score
        factors: Dict[str, Any] = {}

        attendance = list(ctx.db.execute(
            select(AttendanceRecord.date)
            .where(AttendanceRecord.visitor_id == visitor.id)
            .order_by(AttendanceRecord.date.desc())
        ).scalars().all())
        visits = max(len(attendance), visitor.visit_count or 0)
        if visits:
            impact = min(visits * 10, 45)
            score += impact
            factors["visit_count"] = {"value": visits, "impact": impact}

        if visitor.referred_by_member:
            score += 15
            factors["referral_source"] = {"value": "member", "impact": 15}

        outcomes = list(ctx.db.execute(
            select(VisitorFollowUp.outcome).where(VisitorFollowUp.visitor_id == visitor.id)
        ).scalars().all())
        good = sum(1 for o in outcomes if o in ("successful", "callback", "rescheduled"))
        bad = sum(1 for o in outcomes if o in ("not_interested", "wrong_number", "no_answer", "declined"))
        if good:
            score += good * 10
            factors["successful_followups"] = {"value": good, "impact": good * 10}
        if bad:
            penalty = min(bad * 10, 30)
            score -= penalty
            factors["failed_followups"] = {"value": bad, "impact": -penalty}

        last = attendance[0] if attendance else visitor.first_visit_date
        if last is not None:
            days = (ctx.today - last).days
            if days <= 7:
                score += 10
                factors["recent_attendance"] = {"value": days, "impact": 10}
            elif days > 14:
                penalty = min((days // 7) * 5, 25)
                score -= penalty
                factors["time_since_attendance"] = {"value": days, "impact": -penalty}

        if visitor.email and visitor.phone:
            score += 5
            factors["contact_complete"] = {"value": True, "impact": 5}

        score = round(clamp(score), 2)
        return ScoreResult(score=score, level=None, factors=factors, needs_attention=score >= 70)

    def project(self, visitor, result, transition, now):
        return {
            "conversion_score": result.score,
            "conversion_factors": result.factors,
            "conversion_calculated_at": now,
        }


# ──────────────────────────────────────────────────────────────────────────────
# Attendance anomaly
# ──────────────────────────────────────────────────────────────────────────────

class AttendanceAnomalyScorer(Scorer):
    """
    Compares the member's weekly attendance over the comparison window with
    the baseline window before it. Non-anomalous members get their stale
    anomaly fields cleared.
    """
    name = "attendance_anomaly"
    entity_type = "member"
    model = Member

    def filters(self):
        return [Member.status == "active"]

    def display_name(self, entity):
        return entity.full_name()

    def compute(self, member: Member, ctx: ScoringContext) -> ScoreResult:
        cfg = ctx.settings
        comparison_start = ctx.today - timedelta(weeks=cfg.ATTENDANCE_COMPARISON_WEEKS)
        baseline_start = comparison_start - timedelta(weeks=cfg.ATTENDANCE_BASELINE_WEEKS)

        dates = member_attendance_dates(ctx.db, member.id, baseline_start)
        baseline = [d for d in dates if d < comparison_start]
        comparison = [d for d in dates if d >= comparison_start]

        baseline_avg = len(baseline) / cfg.ATTENDANCE_BASELINE_WEEKS
        comparison_avg = len(comparison) / cfg.ATTENDANCE_COMPARISON_WEEKS
        factors = {
            "baseline_avg_per_week": round(baseline_avg, 2),
            "comparison_avg_per_week": round(comparison_avg, 2),
        }
        # Too little history to call anything a drop.
        if baseline_avg < 0.5:
            return ScoreResult(score=None, factors=factors)

        decline = safe_percent(baseline_avg - comparison_avg, baseline_avg)
        factors["decline_percent"] = decline
        if decline <= cfg.ATTENDANCE_DECLINE_PERCENT:
            return ScoreResult(score=None, factors=factors)
        return ScoreResult(score=round(clamp(decline), 2), level="declining", factors=factors, needs_attention=True)

    def project(self, member, result, transition, now):
        if result.score is None:
            if member.attendance_anomaly_score is None:
                return {}
            return {
                "attendance_anomaly_score": None,
                "attendance_anomaly_factors": None,
                "attendance_anomaly_detected_at": None,
            }
        return {
            "attendance_anomaly_score": result.score,
            "attendance_anomaly_factors": result.factors,
            "attendance_anomaly_detected_at": now,
        }
