from datetime import timedelta

import pytest

from insights_engine.scoring.anomaly import clear_inactive_anomalies
from insights_engine.scoring.batch import BatchRunner
from insights_engine.scoring.result import Err, Ok
from insights_engine.scoring.scorers import (
    AttendanceAnomalyScorer, ChurnScorer, ClusterHealthScorer, HouseholdScorer,
    LifecycleScorer, ScoringContext, VisitorConversionScorer,
)
from insights_engine.store import EntityStore

from conftest import NOW

TODAY = NOW.date()
LAST_SUNDAY = TODAY - timedelta(days=7)


def _ctx(db, settings, branch):
    return ScoringContext(db=db, settings=settings, branch_id=branch.id, now=NOW)

def _sundays(factory, branch, member, weeks, offset_weeks=0):
    for w in range(offset_weeks, offset_weeks + weeks):
        factory.attendance(branch, LAST_SUNDAY - timedelta(weeks=w), member=member)

def _runner(db, settings, clock):
    return BatchRunner(EntityStore(db), settings, clock)


class TestChurnScorer:
    def test_regular_recent_giver_is_low_risk(self, db, factory, branch, settings):
        member = factory.member(branch)
        for k in range(12):
            factory.donation(branch, member, 100, TODAY - timedelta(days=10 + 30 * k))
        _sundays(factory, branch, member, 4)

        result = ChurnScorer().score(member, _ctx(db, settings, branch))
        assert isinstance(result, Ok)
        assert result.value.score == 25
        assert result.value.level == "low"
        assert set(result.value.factors) == {"regular_donor"}

    def test_no_donations_scores_zero(self, db, factory, branch, settings):
        member = factory.member(branch)
        result = ChurnScorer().score(member, _ctx(db, settings, branch)).value
        assert result.score == 0
        assert "no_donation_history" in result.factors

    def test_compute_errors_become_err(self, db, factory, branch, settings):
        class Broken(ChurnScorer):
            def compute(self, member, ctx):
                raise KeyError("boom")

        assert isinstance(Broken().score(factory.member(branch), _ctx(db, settings, branch)), Err)


class TestLifecycleScorer:
    def test_regular_attender_is_engaged(self, db, factory, branch, settings):
        member = factory.member(branch)
        _sundays(factory, branch, member, 8)
        assert LifecycleScorer().compute(member, _ctx(db, settings, branch)).level == "engaged"

    def test_recent_joiner_is_new_member(self, db, factory, branch, settings):
        member = factory.member(branch, joined_at=TODAY - timedelta(days=20))
        assert LifecycleScorer().compute(member, _ctx(db, settings, branch)).level == "new_member"

    def test_high_churn_means_at_risk(self, db, factory, branch, settings):
        member = factory.member(branch, churn_risk_score=75.0)
        _sundays(factory, branch, member, 8)
        result = LifecycleScorer().compute(member, _ctx(db, settings, branch))
        assert result.level == "at_risk"
        assert result.needs_attention

    def test_inactive_status_wins(self, db, factory, branch, settings):
        member = factory.member(branch, status="inactive")
        _sundays(factory, branch, member, 8)
        assert LifecycleScorer().compute(member, _ctx(db, settings, branch)).level == "inactive"


class TestAttendanceAnomaly:
    def test_drop_after_steady_baseline_is_flagged(self, db, factory, branch, settings, clock):
        member = factory.member(branch)
        _sundays(factory, branch, member, 8, offset_weeks=4)

        stats = _runner(db, settings, clock).run(branch.id, AttendanceAnomalyScorer())
        assert len(stats.needs_attention) == 1
        db.refresh(member)
        assert member.attendance_anomaly_score == 100
        assert member.attendance_anomaly_detected_at == NOW

    def test_recovered_member_is_cleared(self, db, factory, branch, settings, clock):
        member = factory.member(branch, attendance_anomaly_score=60.0, attendance_anomaly_detected_at=NOW)
        _sundays(factory, branch, member, 12)

        stats = _runner(db, settings, clock).run(branch.id, AttendanceAnomalyScorer())
        assert stats.needs_attention == []
        db.refresh(member)
        assert member.attendance_anomaly_score is None
        assert member.attendance_anomaly_detected_at is None

    def test_thin_history_is_not_an_anomaly(self, db, factory, branch, settings):
        member = factory.member(branch)
        factory.attendance(branch, LAST_SUNDAY - timedelta(weeks=6), member=member)
        result = AttendanceAnomalyScorer().compute(member, _ctx(db, settings, branch))
        assert result.score is None
        assert not result.needs_attention

    def test_clear_inactive_only_touches_non_active(self, db, factory, branch):
        gone = factory.member(branch, status="inactive", attendance_anomaly_score=80.0)
        here = factory.member(branch, attendance_anomaly_score=80.0)
        assert clear_inactive_anomalies(db, branch.id) == 1
        db.refresh(gone)
        db.refresh(here)
        assert gone.attendance_anomaly_score is None
        assert here.attendance_anomaly_score == 80.0


class TestVisitorConversion:
    def test_referred_recent_visitor_scores_high(self, db, factory, branch, settings):
        visitor = factory.visitor(
            branch, visit_count=3, referred_by_member=True, email="v@example.com", phone="555-0100",
            first_visit_date=TODAY - timedelta(days=3),
        )
        result = VisitorConversionScorer().compute(visitor, _ctx(db, settings, branch))
        assert result.score == 80
        assert result.needs_attention

    def test_converted_visitors_are_not_rescored(self, db, factory, branch, settings, clock):
        member = factory.member(branch)
        factory.visitor(branch, converted_member_id=member.id)
        pending = factory.visitor(branch, first_visit_date=TODAY - timedelta(days=40))

        stats = _runner(db, settings, clock).run(branch.id, VisitorConversionScorer())
        assert stats.processed == 1
        db.refresh(pending)
        assert pending.conversion_calculated_at == NOW
        assert "time_since_attendance" in pending.conversion_factors


class TestClusterAndHousehold:
    def test_empty_cluster_is_critical(self, db, factory, branch, settings, clock):
        empty = factory.cluster(branch, health_level="healthy")
        factory.cluster(branch, is_active=False)

        stats = _runner(db, settings, clock).run(branch.id, ClusterHealthScorer())
        assert stats.processed == 1
        assert [c["id"] for c in stats.concerning] == [empty.id]
        db.refresh(empty)
        assert (empty.health_score, empty.health_level) == (0, "critical")

    def test_engaged_giving_household_is_high(self, db, factory, branch, settings):
        home = factory.household(branch)
        member = factory.member(branch, household_id=home.id, lifecycle_stage="engaged")
        _sundays(factory, branch, member, 8)
        factory.donation(branch, member, 50, TODAY - timedelta(days=14))

        result = HouseholdScorer().compute(home, _ctx(db, settings, branch))
        assert result.score == pytest.approx(100)
        assert result.level == "high"
        assert not result.needs_attention

    def test_household_without_members_is_disengaged_but_quiet(self, db, factory, branch, settings):
        home = factory.household(branch)
        result = HouseholdScorer().compute(home, _ctx(db, settings, branch))
        assert result.level == "disengaged"
        assert not result.needs_attention
