from datetime import timedelta

import pytest
from sqlalchemy import select, update

from insights_engine.alerts import settings_dao
from insights_engine.alerts.constants import AlertSeverity, AlertType
from insights_engine.alerts.service import AlertEngine, determine_severity
from insights_engine.models import Alert, AlertSetting

from conftest import NOW


def _engine(db, settings, clock):
    return AlertEngine(db, settings, clock)

def _set(db, branch, alert_type, settings, **fields):
    row = settings_dao.get_or_create(db, branch.id, alert_type, settings)
    for k, v in fields.items():
        setattr(row, k, v)
    db.commit()
    return row


class TestDetermineSeverity:
    @pytest.mark.parametrize("score,expected", [
        (100, AlertSeverity.CRITICAL),
        (95, AlertSeverity.CRITICAL),
        (85, AlertSeverity.HIGH),
        (75, AlertSeverity.MEDIUM),
        (72, AlertSeverity.LOW),
    ])
    def test_by_excess_over_threshold(self, score, expected):
        assert determine_severity(score, 70) is expected


class TestThresholds:
    def test_exactly_at_threshold_creates_nothing(self, db, factory, branch, settings, clock):
        factory.member(branch, churn_risk_score=70.0)
        assert _engine(db, settings, clock).check_churn_risk_alerts(branch) == []

    def test_above_threshold_creates_alert(self, db, factory, branch, settings, clock):
        m = factory.member(branch, churn_risk_score=70.5)
        alerts = _engine(db, settings, clock).check_churn_risk_alerts(branch)
        assert [a.subject_id for a in alerts] == [m.id]
        assert alerts[0].severity == "high"
        assert alerts[0].requires_immediate_attention()
        assert alerts[0].recommendations

    def test_custom_threshold_is_honoured(self, db, factory, branch, settings, clock):
        _set(db, branch, AlertType.CHURN_RISK, settings, threshold_value=80.0)
        factory.member(branch, churn_risk_score=75.0)
        assert _engine(db, settings, clock).check_churn_risk_alerts(branch) == []

    def test_churn_far_above_threshold_is_critical(self, db, factory, branch, settings, clock):
        factory.member(branch, churn_risk_score=96.0)
        [alert] = _engine(db, settings, clock).check_churn_risk_alerts(branch)
        assert alert.severity == "critical"

    def test_cluster_health_triggers_below_threshold(self, db, factory, branch, settings, clock):
        factory.cluster(branch, health_score=50.0, health_level="struggling")
        weak = factory.cluster(branch, health_score=20.0, health_level="critical")
        factory.cluster(branch, health_score=10.0, health_level="critical", is_active=False)

        alerts = _engine(db, settings, clock).check_cluster_health_alerts(branch)
        assert [a.subject_id for a in alerts] == [weak.id]
        assert alerts[0].severity == "critical"

    def test_inactive_members_are_ignored(self, db, factory, branch, settings, clock):
        factory.member(branch, churn_risk_score=99.0, status="inactive")
        assert _engine(db, settings, clock).check_churn_risk_alerts(branch) == []


class TestCooldown:
    def test_recently_triggered_type_is_suppressed(self, db, factory, branch, settings, clock):
        _set(db, branch, AlertType.CHURN_RISK, settings, cooldown_hours=24, last_triggered_at=NOW - timedelta(hours=1))
        factory.member(branch, churn_risk_score=90.0)
        assert _engine(db, settings, clock).check_churn_risk_alerts(branch) == []

    def test_expired_cooldown_allows_alert(self, db, factory, branch, settings, clock):
        _set(db, branch, AlertType.CHURN_RISK, settings, cooldown_hours=24, last_triggered_at=NOW - timedelta(hours=25))
        factory.member(branch, churn_risk_score=90.0)
        alerts = _engine(db, settings, clock).check_churn_risk_alerts(branch)
        assert len(alerts) == 1
        setting = settings_dao.get_setting(db, branch.id, AlertType.CHURN_RISK)
        db.refresh(setting)
        assert setting.last_triggered_at == NOW

    def test_cooldown_is_per_type_not_per_subject(self, db, factory, branch, settings, clock):
        _set(db, branch, AlertType.CHURN_RISK, settings, cooldown_hours=72)
        first = factory.member(branch, churn_risk_score=90.0)
        engine = _engine(db, settings, clock)
        assert [a.subject_id for a in engine.check_churn_risk_alerts(branch)] == [first.id]

        second = factory.member(branch, churn_risk_score=91.0)
        clock.advance(hours=1)
        assert engine.check_churn_risk_alerts(branch) == []

        clock.advance(hours=72)
        later = engine.check_churn_risk_alerts(branch)
        assert second.id in [a.subject_id for a in later]

    def test_disabled_setting_never_triggers(self, db, factory, branch, settings, clock):
        _set(db, branch, AlertType.CHURN_RISK, settings, is_enabled=False)
        factory.member(branch, churn_risk_score=99.0)
        assert _engine(db, settings, clock).check_churn_risk_alerts(branch) == []

    def test_subject_already_alerted_in_window_is_skipped(self, db, factory, branch, settings, clock):
        m = factory.member(branch, churn_risk_score=90.0)
        factory.alert(branch, alert_type="churn_risk", subject_id=m.id, created_at=NOW - timedelta(hours=2))
        assert _engine(db, settings, clock).check_churn_risk_alerts(branch) == []

    def test_lost_compare_and_set_creates_nothing(self, db, factory, branch, settings, clock):
        factory.member(branch, churn_risk_score=90.0)
        engine = _engine(db, settings, clock)
        collect = engine._churn_candidates

        def racing_collect(b, setting, now):
            # another worker claims the cooldown between our read and our write
            db.execute(
                update(AlertSetting)
                .where(AlertSetting.id == setting.id)
                .values(last_triggered_at=now - timedelta(minutes=1))
            )
            db.commit()
            return collect(b, setting, now)

        engine._churn_candidates = racing_collect
        assert engine.check_churn_risk_alerts(branch) == []
        assert db.execute(select(Alert)).scalars().all() == []

    def test_critical_prayer_does_not_mark_cooldown(self, db, factory, branch, settings, clock):
        factory.prayer(branch, urgency_level="critical", created_at=NOW - timedelta(hours=1))
        engine = _engine(db, settings, clock)

        [alert] = engine.check_critical_prayer_alerts(branch)
        assert alert.severity == "critical"
        setting = settings_dao.get_setting(db, branch.id, AlertType.CRITICAL_PRAYER)
        assert setting.last_triggered_at is None

        factory.prayer(branch, urgency_level="high", created_at=NOW - timedelta(minutes=5))
        [second] = engine.check_critical_prayer_alerts(branch)
        assert second.severity == "high"

    def test_prayer_urgency_below_high_is_ignored(self, db, factory, branch, settings, clock):
        factory.prayer(branch, urgency_level="elevated", created_at=NOW - timedelta(hours=1))
        factory.prayer(branch, urgency_level="normal", created_at=NOW - timedelta(hours=1))
        factory.prayer(branch, urgency_level="critical", created_at=NOW - timedelta(hours=30))
        factory.prayer(branch, urgency_level="critical", status="answered", created_at=NOW - timedelta(hours=1))
        urgent = factory.prayer(branch, urgency_level="high", created_at=NOW - timedelta(hours=2))

        [alert] = _engine(db, settings, clock).check_critical_prayer_alerts(branch)
        assert alert.subject_id == urgent.id
        assert alert.data["urgency_level"] == "high"


class TestOtherTypes:
    def test_lifecycle_change_considers_recent_concerning_stages(self, db, factory, branch, settings, clock):
        at_risk = factory.member(branch, lifecycle_stage="at_risk", previous_lifecycle_stage="engaged",
                                 lifecycle_stage_changed_at=NOW - timedelta(hours=2))
        dormant = factory.member(branch, lifecycle_stage="dormant", lifecycle_stage_changed_at=NOW - timedelta(hours=3))
        factory.member(branch, lifecycle_stage="at_risk", lifecycle_stage_changed_at=NOW - timedelta(days=3))
        factory.member(branch, lifecycle_stage="growing", lifecycle_stage_changed_at=NOW - timedelta(hours=1))

        alerts = _engine(db, settings, clock).check_lifecycle_change_alerts(branch)
        by_subject = {a.subject_id: a for a in alerts}
        assert set(by_subject) == {at_risk.id, dormant.id}
        assert by_subject[at_risk.id].severity == "high"
        assert by_subject[dormant.id].severity == "medium"
        assert by_subject[at_risk.id].data["previous_stage"] == "engaged"

    def test_attendance_anomaly_is_medium(self, db, factory, branch, settings, clock):
        factory.member(branch, attendance_anomaly_score=80.0)
        factory.member(branch, attendance_anomaly_score=50.0)
        [alert] = _engine(db, settings, clock).check_attendance_anomaly_alerts(branch)
        assert alert.severity == "medium"
        assert not alert.requires_immediate_attention()

    def test_household_disengagement_skips_empty_households(self, db, factory, branch, settings, clock):
        quiet = factory.household(branch, engagement_level="disengaged", engagement_score=10.0)
        factory.member(branch, household_id=quiet.id)
        factory.household(branch, engagement_level="disengaged", engagement_score=0.0)

        [alert] = _engine(db, settings, clock).check_household_disengagement_alerts(branch)
        assert alert.subject_id == quiet.id
        assert alert.data["member_count"] == 1


class TestProcessAll:
    def test_failing_type_does_not_stop_the_others(self, db, factory, branch, settings, clock):
        factory.member(branch, churn_risk_score=90.0)
        engine = _engine(db, settings, clock)

        def boom(_branch):
            raise RuntimeError("bad data")

        engine.checks[AlertType.ATTENDANCE_ANOMALY] = boom
        alerts = engine.process_all_alerts(branch)
        assert [a.alert_type for a in alerts] == ["churn_risk"]

    def test_recommendations_can_be_switched_off(self, db, factory, branch, settings, clock):
        settings.FEATURE_RECOMMENDATIONS = False
        factory.member(branch, churn_risk_score=90.0)
        [alert] = _engine(db, settings, clock).check_churn_risk_alerts(branch)
        assert alert.recommendations == []
