# insights_engine/notifications/transports.py
from __future__ import annotations

import logging
from email.utils import parseaddr
from typing import Dict

import requests
from sqlalchemy.orm import Session

from insights_engine.config import Settings, settings as default_settings
from insights_engine.errors import DeliveryError, TransportConfigError
from insights_engine.models import Branch, InAppNotification, User
from insights_engine.notifications.messages import Message
from insights_engine.utils.common import Clock, utcnow

log = logging.getLogger(__name__)

SENDGRID_URL = "https://api.sendgrid.com/v3/mail/send"


class Transport:
    """One delivery channel. `send` returns False when the user has no address for it."""
    channel = ""

    def send(self, user: User, message: Message, branch: Branch) -> bool:
        raise NotImplementedError


# ─── database (in-app) ───────────────────────────────────────────────────────

class DatabaseTransport(Transport):
    channel = "database"

    def __init__(self, db: Session, clock: Clock = utcnow):
        self.db = db
        self.clock = clock

    def send(self, user, message, branch):
        self.db.add(InAppNotification(
            user_id=user.id,
            branch_id=branch.id,
            kind=message.kind,
            title=message.subject,
            body=message.body,
            data=message.data,
            created_at=self.clock(),
        ))
        self.db.commit()
        return True


# ─── mail ────────────────────────────────────────────────────────────────────

def _split_name_email(s: str):
    name, email = parseaddr(s or "")
    return (name or None), (email or "no-reply@example.com")

class MailTransport(Transport):
    channel = "mail"

    def __init__(self, settings: Settings = default_settings):
        self.settings = settings
        backend = settings.EMAIL_BACKEND.lower()
        if backend not in ("sendgrid", "console"):
            raise TransportConfigError(f"Unknown EMAIL_BACKEND={backend} (use 'sendgrid' or 'console')")
        if backend == "sendgrid" and not settings.SENDGRID_API_KEY:
            raise TransportConfigError("SENDGRID_API_KEY is not set (required for SendGrid backend)")
        self.backend = backend

    def send(self, user, message, branch):
        if not user.email:
            return False
        if self.backend == "console":
            return self._console_send(user.email, message)
        return self._sendgrid_send(user.email, message)

    def _console_send(self, to: str, message: Message) -> bool:
        print("\n— EMAIL (console) —")
        print(f"From: {self.settings.EMAIL_FROM}\nTo: {to}\nSubject: {message.subject}")
        print("Text:", message.body or "")
        print("— END —\n")
        return True

    def _sendgrid_send(self, to: str, message: Message) -> bool:
        name, email = _split_name_email(self.settings.EMAIL_FROM)
        payload = {
            "personalizations": [{"to": [{"email": to}]}],
            "from": {"email": email, "name": name},
            "subject": message.subject,
            "content": [{"type": "text/plain", "value": message.body or ""}],
        }
        if self.settings.REPLY_TO:
            rn, re = _split_name_email(self.settings.REPLY_TO)
            payload["reply_to"] = {"email": re, "name": rn}

        r = requests.post(
            SENDGRID_URL,
            headers={
                "Authorization": f"Bearer {self.settings.SENDGRID_API_KEY}",
                "Content-Type": "application/json",
            },
            json=payload,
            timeout=self.settings.EMAIL_TIMEOUT_SECONDS,
        )
        if r.status_code >= 300:
            raise DeliveryError(f"SendGrid error {r.status_code}: {r.text[:300]}")
        return True


# ─── sms ─────────────────────────────────────────────────────────────────────

class SmsTransport(Transport):
    channel = "sms"

    def __init__(self, settings: Settings = default_settings):
        self.settings = settings
        backend = settings.SMS_BACKEND.lower()
        if backend not in ("http", "console"):
            raise TransportConfigError(f"Unknown SMS_BACKEND={backend} (use 'http' or 'console')")
        if backend == "http" and not (settings.SMS_API_URL and settings.SMS_API_KEY):
            raise TransportConfigError("SMS_API_URL and SMS_API_KEY are required for the http SMS backend")
        self.backend = backend

    def send(self, user, message, branch):
        if not user.phone:
            return False
        if self.backend == "console":
            print(f"\n— SMS (console) — To: {user.phone} From: {self.settings.SMS_SENDER_ID}\n{message.short}\n— END —\n")
            return True

        r = requests.post(
            self.settings.SMS_API_URL,
            headers={"Authorization": f"Bearer {self.settings.SMS_API_KEY}"},
            json={"to": user.phone, "from": self.settings.SMS_SENDER_ID, "message": message.short},
            timeout=self.settings.SMS_TIMEOUT_SECONDS,
        )
        if r.status_code >= 300:
            raise DeliveryError(f"SMS gateway error {r.status_code}: {r.text[:300]}")
        return True


def default_transports(db: Session, settings: Settings = default_settings, clock: Clock = utcnow) -> Dict[str, Transport]:
    """
    Build every channel the deployment can serve. A channel whose backend is
    misconfigured is left out (and logged) rather than failing the job.
    """
    transports: Dict[str, Transport] = {"database": DatabaseTransport(db, clock)}
    for cls in (MailTransport, SmsTransport):
        try:
            transports[cls.channel] = cls(settings)
        except TransportConfigError as e:
            log.warning("⚠️ %s channel disabled: %s", cls.channel, e)
    return transports
