"""
Shared fixtures: in-memory SQLite, a frozen clock, recording transports and
small factories for branches, users and scoreable entities.
"""

from datetime import date, datetime, timedelta

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from insights_engine import models
from insights_engine.config import Settings
from insights_engine.db import Base
from insights_engine.notifications.transports import Transport

# Sunday, mid-day UTC
NOW = datetime(2026, 3, 15, 12, 0, 0)


class FrozenClock:
    def __init__(self, now: datetime = NOW):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **delta):
        self.now = self.now + timedelta(**delta)


class RecordingTransport(Transport):
    def __init__(self, channel: str):
        self.channel = channel
        self.sent = []

    def send(self, user, message, branch):
        self.sent.append((user.id, message))
        return True


class FlakyLookup:
    """Wraps a recipient lookup so its first call raises."""

    def __init__(self, real):
        self.real = real
        self.calls = 0

    def __call__(self, *args, **kwargs):
        self.calls += 1
        if self.calls == 1:
            raise RuntimeError("role lookup timed out")
        return self.real(*args, **kwargs)


class Factory:
    def __init__(self, db):
        self.db = db
        self._n = 0

    def _next(self) -> int:
        self._n += 1
        return self._n

    def _save(self, obj):
        self.db.add(obj)
        self.db.commit()
        return obj

    def branch(self, name="Main Campus", **kw):
        return self._save(models.Branch(tenant_id="tenant-1", name=name, **kw))

    def user(self, branch, role="admin", email=None, phone=None, **kw):
        n = self._next()
        user = self._save(models.User(name=f"User {n}", email=email or f"user{n}@example.com", phone=phone, **kw))
        self._save(models.BranchUserAccess(branch_id=branch.id, user_id=user.id, role=role))
        return user

    def member(self, branch, **kw):
        n = self._next()
        kw.setdefault("first_name", "Member")
        kw.setdefault("last_name", str(n))
        kw.setdefault("status", "active")
        kw.setdefault("joined_at", date(2020, 1, 1))
        return self._save(models.Member(branch_id=branch.id, **kw))

    def household(self, branch, **kw):
        kw.setdefault("name", f"Household {self._next()}")
        return self._save(models.Household(branch_id=branch.id, **kw))

    def cluster(self, branch, **kw):
        kw.setdefault("name", f"Cluster {self._next()}")
        return self._save(models.Cluster(branch_id=branch.id, **kw))

    def visitor(self, branch, **kw):
        kw.setdefault("name", f"Visitor {self._next()}")
        return self._save(models.Visitor(branch_id=branch.id, **kw))

    def service(self, branch, **kw):
        kw.setdefault("name", "Sunday Service")
        return self._save(models.Service(branch_id=branch.id, **kw))

    def attendance(self, branch, on: date, member=None, visitor=None, service=None):
        return self._save(models.AttendanceRecord(
            branch_id=branch.id,
            member_id=member.id if member else None,
            visitor_id=visitor.id if visitor else None,
            service_id=service.id if service else None,
            date=on,
        ))

    def donation(self, branch, member, amount: float, on: date):
        return self._save(models.Donation(
            branch_id=branch.id, member_id=member.id if member else None, amount=amount, donated_at=on,
        ))

    def prayer(self, branch, **kw):
        kw.setdefault("title", "Please pray")
        return self._save(models.PrayerRequest(branch_id=branch.id, **kw))

    def alert(self, branch, alert_type="churn_risk", severity="high", created_at=NOW, **kw):
        kw.setdefault("title", f"Alert {self._next()}")
        kw.setdefault("subject_type", "member")
        kw.setdefault("subject_id", "m-1")
        return self._save(models.Alert(
            branch_id=branch.id, alert_type=alert_type, severity=severity, created_at=created_at,
            description="", **kw,
        ))


@pytest.fixture
def engine():
    eng = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=eng)
    yield eng
    eng.dispose()


@pytest.fixture
def db(engine):
    Session = sessionmaker(bind=engine, autocommit=False, autoflush=False)
    session = Session()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def clock():
    return FrozenClock()


@pytest.fixture
def settings():
    return Settings(
        DATABASE_URL="sqlite://",
        EMAIL_BACKEND="console",
        SMS_BACKEND="console",
        DIGEST_CHANNELS="database,mail",
        DEFAULT_RECIPIENT_ROLES="admin,pastor",
    )


@pytest.fixture
def factory(db):
    return Factory(db)


@pytest.fixture
def branch(factory):
    return factory.branch()


@pytest.fixture
def transports():
    return {
        "database": RecordingTransport("database"),
        "mail": RecordingTransport("mail"),
        "sms": RecordingTransport("sms"),
    }
