# insights_engine/notifications/dispatcher.py
from __future__ import annotations

import logging
from datetime import timedelta
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy.orm import Session

from insights_engine.alerts import dao, settings_dao
from insights_engine.alerts.constants import AlertType
from insights_engine.config import Settings, settings as default_settings
from insights_engine.errors import is_infrastructure_error
from insights_engine.models import Alert, Branch, User
from insights_engine.notifications.messages import Message, alert_message, digest_message, summary_message
from insights_engine.notifications.recipients import roles_for, users_with_roles
from insights_engine.notifications.transports import Transport, default_transports
from insights_engine.utils.common import Clock, utcnow

log = logging.getLogger(__name__)


class NotificationDispatcher:
    """
    Fans alerts out to the branch users holding the configured roles, over
    the configured channels. A failed send is logged and never fails the run.
    """

    def __init__(
        self,
        db: Session,
        transports: Optional[Dict[str, Transport]] = None,
        settings: Settings = default_settings,
        clock: Clock = utcnow,
    ):
        self.db = db
        self.settings = settings
        self.clock = clock
        self.transports = transports if transports is not None else default_transports(db, settings, clock)

    # ─── immediate path ─────────────────────────────────────────────────────

    def dispatch(self, branch: Branch, alerts: Iterable[Alert]) -> int:
        """
        Send each critical/high alert right away. Returns deliveries made.
        A failure on one alert is logged and the remaining alerts still go out.
        """
        urgent = [a for a in alerts if a.requires_immediate_attention()]
        if not urgent:
            return 0

        sent = 0
        for alert in urgent:
            alert_id = alert.id
            try:
                sent += self._dispatch_one(branch, alert)
            except Exception:
                self.db.rollback()
                log.exception("❌ Dispatch failed for alert=%s on branch=%s; continuing", alert_id, branch.id)
        log.info("📣 branch=%s immediate notifications sent=%d", branch.id, sent)
        return sent

    def _dispatch_one(self, branch: Branch, alert: Alert) -> int:
        setting = settings_dao.get_or_create(self.db, branch.id, AlertType(alert.alert_type), self.settings)
        recipients = users_with_roles(self.db, branch.id, roles_for(setting, self.settings))
        if not recipients:
            log.info("No recipients for %s alert %s on branch=%s", alert.alert_type, alert.id, branch.id)
            return 0
        message = alert_message(alert, branch, self.settings.APP_URL)
        return self._deliver(branch, recipients, setting.notification_channels or [], message, f"alert={alert.id}")

    # ─── digest ─────────────────────────────────────────────────────────────

    def send_digest(self, branch: Branch, hours_back: int = 24) -> Dict[str, Any]:
        since = self.clock() - timedelta(hours=hours_back)
        alerts = dao.alerts_since(self.db, branch.id, since)
        if not alerts:
            log.info("No alerts for branch=%s in the last %dh; digest skipped", branch.id, hours_back)
            return {"alerts": 0, "recipients": 0, "notifications_sent": 0}

        recipients = users_with_roles(self.db, branch.id, self.settings.default_recipient_roles)
        if not recipients:
            log.info("No digest recipients for branch=%s", branch.id)
            return {"alerts": len(alerts), "recipients": 0, "notifications_sent": 0}

        message = digest_message(branch, alerts, hours_back, self.settings.APP_URL)
        sent = self._deliver(branch, recipients, self.settings.digest_channels, message, "digest")
        return {"alerts": len(alerts), "recipients": len(recipients), "notifications_sent": sent}

    # ─── job summaries ──────────────────────────────────────────────────────

    def notify_summary(
        self,
        branch: Branch,
        subject: str,
        body: str,
        roles: Iterable[str],
        data: Optional[Dict[str, Any]] = None,
    ) -> int:
        roles = list(roles)
        try:
            recipients = users_with_roles(self.db, branch.id, roles)
            if not recipients:
                log.info("No %s recipients for summary on branch=%s", "/".join(roles), branch.id)
                return 0
            message = summary_message(branch, subject, body, data)
            return self._deliver(branch, recipients, ["database"], message, "summary")
        except Exception:
            self.db.rollback()
            log.exception("❌ Summary notification failed on branch=%s", branch.id)
            return 0

    # ─── delivery ───────────────────────────────────────────────────────────

    def _deliver(self, branch: Branch, recipients: List[User], channels: Iterable[str], message: Message, what: str) -> int:
        sent = 0
        for user in recipients:
            for channel in channels:
                transport = self.transports.get(channel)
                if transport is None:
                    log.warning("Unknown or unavailable channel '%s' (%s); skipped", channel, what)
                    continue
                try:
                    if transport.send(user, message, branch):
                        sent += 1
                except Exception as e:
                    if is_infrastructure_error(e):
                        raise
                    self.db.rollback()
                    log.warning("❌ %s send failed for user=%s (%s): %s", channel, user.id, what, e)
        return sent
