from datetime import timedelta

import pytest
from sqlalchemy import select

from insights_engine.alerts import settings_dao
from insights_engine.alerts.constants import AlertType
from insights_engine.alerts.service import AlertEngine
from insights_engine.errors import DeliveryError
from insights_engine.models import InAppNotification
from insights_engine.notifications import dispatcher as dispatcher_module
from insights_engine.notifications.dispatcher import NotificationDispatcher
from insights_engine.notifications.messages import digest_subject, summary_message
from insights_engine.notifications.transports import (
    DatabaseTransport, MailTransport, SmsTransport, Transport, default_transports,
)

from conftest import NOW, FlakyLookup, RecordingTransport


class FailingTransport(Transport):
    channel = "mail"

    def __init__(self, bad_user_id):
        self.bad_user_id = bad_user_id
        self.sent = []

    def send(self, user, message, branch):
        if user.id == self.bad_user_id:
            raise DeliveryError("mailbox unavailable")
        self.sent.append(user.id)
        return True


class TestImmediateDispatch:
    def test_three_members_two_admins(self, db, factory, branch, settings, clock):
        """Three members over the churn threshold reach both admins in-app."""
        admins = [factory.user(branch, role="admin") for _ in range(2)]
        factory.user(branch, role="staff")
        for score in (72.0, 80.0, 91.0):
            factory.member(branch, churn_risk_score=score)

        alerts = AlertEngine(db, settings, clock).check_churn_risk_alerts(branch)
        assert len(alerts) == 3
        assert all(a.requires_immediate_attention() for a in alerts)

        dispatcher = NotificationDispatcher(db, {"database": DatabaseTransport(db, clock)}, settings, clock)
        assert dispatcher.dispatch(branch, alerts) == 6

        rows = db.execute(select(InAppNotification)).scalars().all()
        assert len(rows) == 6
        assert {r.user_id for r in rows} == {a.id for a in admins}
        assert all(r.kind == "alert" for r in rows)

    def test_no_recipients_is_a_noop(self, db, factory, branch, settings, clock, transports):
        factory.user(branch, role="staff")
        alert = factory.alert(branch, severity="critical")
        dispatcher = NotificationDispatcher(db, transports, settings, clock)
        assert dispatcher.dispatch(branch, [alert]) == 0
        assert transports["database"].sent == []

    def test_medium_alerts_wait_for_the_digest(self, db, factory, branch, settings, clock, transports):
        factory.user(branch, role="admin")
        alert = factory.alert(branch, alert_type="attendance_anomaly", severity="medium")
        assert NotificationDispatcher(db, transports, settings, clock).dispatch(branch, [alert]) == 0

    def test_uses_configured_roles_and_channels(self, db, factory, branch, settings, clock, transports):
        factory.user(branch, role="admin")
        leader = factory.user(branch, role="leader")
        settings_dao.update_setting(db, branch.id, AlertType.CHURN_RISK, {
            "recipient_roles": ["leader"],
            "notification_channels": ["database", "mail"],
        }, settings)
        alert = factory.alert(branch, severity="high")

        sent = NotificationDispatcher(db, transports, settings, clock).dispatch(branch, [alert])
        assert sent == 2
        assert [u for u, _ in transports["database"].sent] == [leader.id]
        assert [u for u, _ in transports["mail"].sent] == [leader.id]

    def test_failed_send_does_not_stop_other_recipients(self, db, factory, branch, settings, clock):
        first = factory.user(branch, role="admin")
        second = factory.user(branch, role="pastor")
        settings_dao.update_setting(db, branch.id, AlertType.CHURN_RISK, {"notification_channels": ["mail"]}, settings)
        alert = factory.alert(branch, severity="critical")
        failing = FailingTransport(first.id)

        sent = NotificationDispatcher(db, {"mail": failing}, settings, clock).dispatch(branch, [alert])
        assert sent == 1
        assert failing.sent == [second.id]

    def test_failed_alert_does_not_stop_later_alerts(self, db, factory, branch, settings, clock, transports,
                                                     monkeypatch):
        admin = factory.user(branch, role="admin")
        churn = factory.alert(branch, severity="critical")
        prayer = factory.alert(branch, alert_type="critical_prayer", severity="critical",
                               subject_type="prayer_request", subject_id="p-1")
        lookup = FlakyLookup(dispatcher_module.users_with_roles)
        monkeypatch.setattr(dispatcher_module, "users_with_roles", lookup)

        sent = NotificationDispatcher(db, transports, settings, clock).dispatch(branch, [churn, prayer])
        assert sent == 1
        assert lookup.calls == 2
        [(user_id, message)] = transports["database"].sent
        assert user_id == admin.id
        assert message.data["alert_id"] == prayer.id

    def test_failed_summary_returns_zero(self, db, factory, branch, settings, clock, transports, monkeypatch):
        factory.user(branch, role="manager")
        monkeypatch.setattr(dispatcher_module, "users_with_roles", FlakyLookup(dispatcher_module.users_with_roles))
        sent = NotificationDispatcher(db, transports, settings, clock).notify_summary(
            branch, "1 cluster(s) need attention", "• A", roles=["manager"],
        )
        assert sent == 0
        assert transports["database"].sent == []

    def test_unknown_channel_is_skipped(self, db, factory, branch, settings, clock):
        factory.user(branch, role="admin")
        settings_dao.update_setting(db, branch.id, AlertType.CHURN_RISK, {"notification_channels": ["sms"]}, settings)
        alert = factory.alert(branch, severity="high")
        database = RecordingTransport("database")
        assert NotificationDispatcher(db, {"database": database}, settings, clock).dispatch(branch, [alert]) == 0


class TestDigest:
    def test_window_and_order(self, db, factory, branch, settings, clock, transports):
        factory.user(branch, role="pastor")
        old = factory.alert(branch, severity="critical", created_at=NOW - timedelta(hours=25))
        low = factory.alert(branch, severity="low", created_at=NOW - timedelta(hours=1))
        high_old = factory.alert(branch, severity="high", created_at=NOW - timedelta(hours=10))
        high_new = factory.alert(branch, severity="high", created_at=NOW - timedelta(hours=2))
        medium = factory.alert(branch, alert_type="attendance_anomaly", severity="medium",
                               created_at=NOW - timedelta(hours=3))

        out = NotificationDispatcher(db, transports, settings, clock).send_digest(branch, hours_back=24)

        assert out == {"alerts": 4, "recipients": 1, "notifications_sent": 2}
        [(_, message)] = transports["database"].sent
        assert message.data["alert_ids"] == [high_new.id, high_old.id, medium.id, low.id]
        assert old.id not in message.data["alert_ids"]
        assert message.subject == "Daily AI Digest: 2 high priority alert(s) for Main Campus"
        assert len(transports["mail"].sent) == 1

    def test_no_alerts_sends_nothing(self, db, factory, branch, settings, clock, transports):
        factory.user(branch, role="admin")
        factory.alert(branch, created_at=NOW - timedelta(days=3))
        out = NotificationDispatcher(db, transports, settings, clock).send_digest(branch)
        assert out["notifications_sent"] == 0
        assert transports["database"].sent == []

    def test_body_caps_entries_per_type(self, db, factory, branch, settings, clock, transports):
        factory.user(branch, role="admin")
        for i in range(7):
            factory.alert(branch, severity="medium", created_at=NOW - timedelta(minutes=i + 1))
        NotificationDispatcher(db, transports, settings, clock).send_digest(branch)
        [(_, message)] = transports["database"].sent
        assert "Churn Risk Alert (7)" in message.body
        assert "...and 2 more" in message.body

    def test_subject_wording(self, factory, branch):
        crit = factory.alert(branch, severity="critical")
        med = factory.alert(branch, severity="medium")
        assert digest_subject(branch, [crit, med]) == "[CRITICAL] Daily AI Digest: 1 critical alert(s) for Main Campus"
        assert digest_subject(branch, [med]) == "Daily AI Digest: 1 alert(s) for Main Campus"


class TestSummary:
    def test_summary_goes_in_app_to_requested_roles(self, db, factory, branch, settings, clock, transports):
        manager = factory.user(branch, role="manager")
        factory.user(branch, role="pastor")
        sent = NotificationDispatcher(db, transports, settings, clock).notify_summary(
            branch, "2 cluster(s) need attention", "• A\n• B", roles=["manager"],
        )
        assert sent == 1
        [(user_id, message)] = transports["database"].sent
        assert user_id == manager.id
        assert message.kind == "summary"


class _Response:
    def __init__(self, status_code, text=""):
        self.status_code = status_code
        self.text = text


class TestTransports:
    def test_misconfigured_channels_are_dropped(self, db, settings, clock):
        settings.EMAIL_BACKEND = "sendgrid"
        settings.SENDGRID_API_KEY = None
        settings.SMS_BACKEND = "carrier-pigeon"
        assert set(default_transports(db, settings, clock)) == {"database"}

    def test_sendgrid_error_raises_delivery_error(self, factory, branch, settings, monkeypatch):
        settings.EMAIL_BACKEND = "sendgrid"
        settings.SENDGRID_API_KEY = "SG.test"
        calls = []

        def fake_post(url, **kw):
            calls.append(kw["json"])
            return _Response(401, "unauthorized")

        monkeypatch.setattr("insights_engine.notifications.transports.requests.post", fake_post)
        user = factory.user(branch, email="pastor@example.com")
        with pytest.raises(DeliveryError):
            MailTransport(settings).send(user, summary_message(branch, "Hi", "Body"), branch)
        assert calls[0]["personalizations"] == [{"to": [{"email": "pastor@example.com"}]}]

    def test_users_without_an_address_are_skipped(self, factory, branch, settings):
        user = factory.user(branch)
        user.phone = None
        assert SmsTransport(settings).send(user, summary_message(branch, "Hi", "Body"), branch) is False
