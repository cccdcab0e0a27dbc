from datetime import timedelta

import pytest

from insights_engine.alerts import settings_dao
from insights_engine.alerts.constants import AlertType

from conftest import NOW


class TestDefaults:
    def test_first_access_creates_type_defaults(self, db, branch, settings):
        row = settings_dao.get_or_create(db, branch.id, AlertType.CLUSTER_HEALTH, settings)
        assert row.is_enabled
        assert row.threshold_value == 50.0
        assert row.cooldown_hours == 168
        assert row.recipient_roles == ["admin", "pastor"]
        assert settings_dao.get_or_create(db, branch.id, AlertType.CLUSTER_HEALTH, settings).id == row.id

    def test_prayer_has_no_threshold(self, db, branch, settings):
        row = settings_dao.get_or_create(db, branch.id, AlertType.CRITICAL_PRAYER, settings)
        assert row.threshold_value is None
        assert settings_dao.effective_threshold(row, AlertType.CRITICAL_PRAYER) is None

    def test_initialize_covers_every_type(self, db, branch, settings):
        rows = settings_dao.initialize_for_branch(db, branch.id, settings)
        assert {r.alert_type for r in rows} == {t.value for t in AlertType}


class TestUpdate:
    def test_none_values_are_ignored_except_threshold(self, db, branch, settings):
        row = settings_dao.update_setting(db, branch.id, AlertType.CHURN_RISK,
                                          {"cooldown_hours": None, "threshold_value": None}, settings)
        assert row.cooldown_hours == 72
        assert row.threshold_value is None
        assert settings_dao.effective_threshold(row, AlertType.CHURN_RISK) == 70.0

    def test_duplicate_channels_are_collapsed(self, db, branch, settings):
        row = settings_dao.update_setting(db, branch.id, AlertType.CHURN_RISK,
                                          {"notification_channels": ["mail", "database", "mail"]}, settings)
        assert row.notification_channels == ["mail", "database"]

    @pytest.mark.parametrize("changes", [
        {"recipient_roles": ["janitor"]},
        {"notification_channels": ["fax"]},
        {"cooldown_hours": -5},
        {"last_seen_by": "x"},
    ])
    def test_invalid_changes_raise(self, db, branch, settings, changes):
        with pytest.raises(ValueError):
            settings_dao.update_setting(db, branch.id, AlertType.CHURN_RISK, changes, settings)


class TestCooldownClaim:
    def test_can_trigger_respects_cooldown(self, db, branch, settings):
        row = settings_dao.get_or_create(db, branch.id, AlertType.LIFECYCLE_CHANGE, settings)
        assert settings_dao.can_trigger(row, NOW)
        row.last_triggered_at = NOW - timedelta(hours=23)
        assert not settings_dao.can_trigger(row, NOW)
        assert settings_dao.can_trigger(row, NOW + timedelta(hours=1))

    def test_only_one_claim_wins(self, db, branch, settings):
        row = settings_dao.get_or_create(db, branch.id, AlertType.CHURN_RISK, settings)
        observed = row.last_triggered_at

        assert settings_dao.try_mark_triggered(db, row, observed, NOW)
        db.commit()
        assert not settings_dao.try_mark_triggered(db, row, observed, NOW + timedelta(seconds=1))

        db.refresh(row)
        assert row.last_triggered_at == NOW
