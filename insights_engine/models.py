# insights_engine/models.py
import uuid

from pydantic import BaseModel, Field
from typing import List, Optional
from sqlalchemy import (
    Boolean, Column, Date, DateTime, Float, ForeignKey, Integer, JSON, String, Text,
    UniqueConstraint,
)

from insights_engine.db import Base
from insights_engine.alerts.constants import AlertSeverity, AlertType, DEFAULT_CHANNELS
from insights_engine.utils.common import utcnow


def _uuid() -> str:
    return str(uuid.uuid4())


# ──────────────────────────────────────────────────────────────────────────────
# Tenancy & access
# ──────────────────────────────────────────────────────────────────────────────

class Branch(Base):
    __tablename__ = "branches"
    id         = Column(String(36), primary_key=True, default=_uuid)
    tenant_id  = Column(String(36), nullable=False, index=True)
    name       = Column(String, nullable=False)
    created_at = Column(DateTime, nullable=False, default=utcnow)

class User(Base):
    __tablename__ = "users"
    id    = Column(String(36), primary_key=True, default=_uuid)
    name  = Column(String, nullable=False)
    email = Column(String, nullable=True)
    phone = Column(String, nullable=True)

class BranchUserAccess(Base):
    __tablename__ = "branch_user_access"
    __table_args__ = (UniqueConstraint("branch_id", "user_id", "role"),)
    id        = Column(Integer, primary_key=True, autoincrement=True)
    branch_id = Column(String(36), ForeignKey("branches.id"), nullable=False, index=True)
    user_id   = Column(String(36), ForeignKey("users.id"), nullable=False, index=True)
    role      = Column(String, nullable=False)

# ──────────────────────────────────────────────────────────────────────────────
# Scoreable entities
# ──────────────────────────────────────────────────────────────────────────────

class Member(Base):
    __tablename__ = "members"
    id           = Column(String(36), primary_key=True, default=_uuid)
    branch_id    = Column(String(36), ForeignKey("branches.id"), nullable=False, index=True)
    household_id = Column(String(36), ForeignKey("households.id"), nullable=True, index=True)
    cluster_id   = Column(String(36), ForeignKey("clusters.id"), nullable=True, index=True)
    first_name   = Column(String, nullable=False, default="")
    last_name    = Column(String, nullable=False, default="")
    email        = Column(String, nullable=True)
    phone        = Column(String, nullable=True)
    status       = Column(String, nullable=False, default="active")  # active | inactive
    joined_at    = Column(Date, nullable=True)

    churn_risk_score         = Column(Float, nullable=True)
    churn_risk_factors       = Column(JSON, nullable=True)
    churn_risk_calculated_at = Column(DateTime, nullable=True)

    attendance_anomaly_score       = Column(Float, nullable=True)
    attendance_anomaly_factors     = Column(JSON, nullable=True)
    attendance_anomaly_detected_at = Column(DateTime, nullable=True)

    lifecycle_stage            = Column(String, nullable=True)
    previous_lifecycle_stage   = Column(String, nullable=True)
    lifecycle_stage_factors    = Column(JSON, nullable=True)
    lifecycle_stage_changed_at = Column(DateTime, nullable=True)
    lifecycle_calculated_at    = Column(DateTime, nullable=True)

    def full_name(self) -> str:
        return f"{self.first_name or ''} {self.last_name or ''}".strip()

class Household(Base):
    __tablename__ = "households"
    id        = Column(String(36), primary_key=True, default=_uuid)
    branch_id = Column(String(36), ForeignKey("branches.id"), nullable=False, index=True)
    name      = Column(String, nullable=False)

    engagement_score         = Column(Float, nullable=True)
    engagement_level         = Column(String, nullable=True)
    engagement_factors       = Column(JSON, nullable=True)
    engagement_calculated_at = Column(DateTime, nullable=True)

class Cluster(Base):
    __tablename__ = "clusters"
    id        = Column(String(36), primary_key=True, default=_uuid)
    branch_id = Column(String(36), ForeignKey("branches.id"), nullable=False, index=True)
    name      = Column(String, nullable=False)
    is_active = Column(Boolean, nullable=False, default=True)

    health_score         = Column(Float, nullable=True)
    health_level         = Column(String, nullable=True)
    health_factors       = Column(JSON, nullable=True)
    health_calculated_at = Column(DateTime, nullable=True)

class Visitor(Base):
    __tablename__ = "visitors"
    id                  = Column(String(36), primary_key=True, default=_uuid)
    branch_id           = Column(String(36), ForeignKey("branches.id"), nullable=False, index=True)
    name                = Column(String, nullable=False)
    email               = Column(String, nullable=True)
    phone               = Column(String, nullable=True)
    first_visit_date    = Column(Date, nullable=True)
    visit_count         = Column(Integer, nullable=False, default=1)
    referred_by_member  = Column(Boolean, nullable=False, default=False)
    converted_member_id = Column(String(36), ForeignKey("members.id"), nullable=True)

    conversion_score         = Column(Float, nullable=True)
    conversion_factors       = Column(JSON, nullable=True)
    conversion_calculated_at = Column(DateTime, nullable=True)

# ──────────────────────────────────────────────────────────────────────────────
# Raw signals read by the default scorers
# ──────────────────────────────────────────────────────────────────────────────

class Service(Base):
    __tablename__ = "services"
    id          = Column(String(36), primary_key=True, default=_uuid)
    branch_id   = Column(String(36), ForeignKey("branches.id"), nullable=False, index=True)
    name        = Column(String, nullable=False)
    day_of_week = Column(Integer, nullable=False, default=6)  # Monday=0..Sunday=6
    is_active   = Column(Boolean, nullable=False, default=True)

    forecast_next_attendance = Column(Integer, nullable=True)
    forecast_confidence      = Column(Float, nullable=True)
    forecast_calculated_at   = Column(DateTime, nullable=True)

class AttendanceRecord(Base):
    __tablename__ = "attendance_records"
    id         = Column(Integer, primary_key=True, autoincrement=True)
    branch_id  = Column(String(36), ForeignKey("branches.id"), nullable=False, index=True)
    service_id = Column(String(36), ForeignKey("services.id"), nullable=True, index=True)
    member_id  = Column(String(36), ForeignKey("members.id"), nullable=True, index=True)
    visitor_id = Column(String(36), ForeignKey("visitors.id"), nullable=True, index=True)
    date       = Column(Date, nullable=False, index=True)

class Donation(Base):
    __tablename__ = "donations"
    id            = Column(Integer, primary_key=True, autoincrement=True)
    branch_id     = Column(String(36), ForeignKey("branches.id"), nullable=False, index=True)
    member_id     = Column(String(36), ForeignKey("members.id"), nullable=True, index=True)
    amount        = Column(Float, nullable=False)
    donation_type = Column(String, nullable=False, default="offering")  # tithe | offering | special | other
    donated_at    = Column(Date, nullable=False, index=True)

class VisitorFollowUp(Base):
    __tablename__ = "visitor_follow_ups"
    id         = Column(Integer, primary_key=True, autoincrement=True)
    visitor_id = Column(String(36), ForeignKey("visitors.id"), nullable=False, index=True)
    outcome    = Column(String, nullable=False)  # successful | no_answer | declined
    created_at = Column(DateTime, nullable=False, default=utcnow)

class PrayerRequest(Base):
    __tablename__ = "prayer_requests"
    id            = Column(String(36), primary_key=True, default=_uuid)
    branch_id     = Column(String(36), ForeignKey("branches.id"), nullable=False, index=True)
    member_id     = Column(String(36), ForeignKey("members.id"), nullable=True)
    title         = Column(String, nullable=False)
    urgency_level = Column(String, nullable=False, default="normal")
    category      = Column(String, nullable=True)
    status        = Column(String, nullable=False, default="open")
    created_at    = Column(DateTime, nullable=False, default=utcnow)

# ──────────────────────────────────────────────────────────────────────────────
# Forecasts
# ──────────────────────────────────────────────────────────────────────────────

class AttendanceForecast(Base):
    __tablename__ = "attendance_forecasts"
    __table_args__ = (UniqueConstraint("service_id", "forecast_date"),)
    id                   = Column(Integer, primary_key=True, autoincrement=True)
    branch_id            = Column(String(36), ForeignKey("branches.id"), nullable=False, index=True)
    service_id           = Column(String(36), ForeignKey("services.id"), nullable=False)
    forecast_date        = Column(Date, nullable=False)
    predicted_attendance = Column(Integer, nullable=False)
    confidence_score     = Column(Float, nullable=False)
    factors              = Column(JSON, nullable=True)
    updated_at           = Column(DateTime, nullable=False, default=utcnow)

class FinancialForecast(Base):
    __tablename__ = "financial_forecasts"
    __table_args__ = (UniqueConstraint("branch_id", "forecast_type", "period_start"),)
    id               = Column(Integer, primary_key=True, autoincrement=True)
    branch_id        = Column(String(36), ForeignKey("branches.id"), nullable=False, index=True)
    forecast_type    = Column(String, nullable=False)  # monthly | quarterly
    period_start     = Column(Date, nullable=False)
    period_end       = Column(Date, nullable=False)
    predicted_total  = Column(Float, nullable=False)
    confidence_lower = Column(Float, nullable=False)
    confidence_upper = Column(Float, nullable=False)
    confidence_score = Column(Float, nullable=False)
    factors          = Column(JSON, nullable=True)
    updated_at       = Column(DateTime, nullable=False, default=utcnow)

# ──────────────────────────────────────────────────────────────────────────────
# Alerts, settings, notifications, job runs
# ──────────────────────────────────────────────────────────────────────────────

class Alert(Base):
    __tablename__ = "alerts"
    id              = Column(String(36), primary_key=True, default=_uuid)
    branch_id       = Column(String(36), ForeignKey("branches.id"), nullable=False, index=True)
    alert_type      = Column(String, nullable=False, index=True)
    severity        = Column(String, nullable=False)
    title           = Column(String, nullable=False)
    description     = Column(Text, nullable=False, default="")
    subject_type    = Column(String, nullable=False)
    subject_id      = Column(String(36), nullable=False, index=True)
    data            = Column(JSON, nullable=True)
    recommendations = Column(JSON, nullable=True)
    is_read         = Column(Boolean, nullable=False, default=False)
    is_acknowledged = Column(Boolean, nullable=False, default=False)
    acknowledged_by = Column(String(36), nullable=True)
    acknowledged_at = Column(DateTime, nullable=True)
    created_at      = Column(DateTime, nullable=False, default=utcnow, index=True)

    @property
    def type_enum(self) -> AlertType:
        return AlertType(self.alert_type)

    @property
    def severity_enum(self) -> AlertSeverity:
        return AlertSeverity(self.severity)

    def requires_immediate_attention(self) -> bool:
        return self.severity_enum.requires_immediate_attention()

class AlertSetting(Base):
    __tablename__ = "alert_settings"
    __table_args__ = (UniqueConstraint("branch_id", "alert_type"),)
    id                    = Column(Integer, primary_key=True, autoincrement=True)
    branch_id             = Column(String(36), ForeignKey("branches.id"), nullable=False, index=True)
    alert_type            = Column(String, nullable=False)
    is_enabled            = Column(Boolean, nullable=False, default=True)
    threshold_value       = Column(Float, nullable=True)
    cooldown_hours        = Column(Integer, nullable=False, default=24)
    notification_channels = Column(JSON, nullable=False, default=lambda: list(DEFAULT_CHANNELS))
    recipient_roles       = Column(JSON, nullable=True)
    last_triggered_at     = Column(DateTime, nullable=True)

class InAppNotification(Base):
    __tablename__ = "in_app_notifications"
    id         = Column(Integer, primary_key=True, autoincrement=True)
    user_id    = Column(String(36), ForeignKey("users.id"), nullable=False, index=True)
    branch_id  = Column(String(36), ForeignKey("branches.id"), nullable=False, index=True)
    kind       = Column(String, nullable=False)
    title      = Column(String, nullable=False)
    body       = Column(Text, nullable=False, default="")
    data       = Column(JSON, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    read_at    = Column(DateTime, nullable=True)

class JobRun(Base):
    __tablename__ = "job_runs"
    id          = Column(Integer, primary_key=True, autoincrement=True)
    job_name    = Column(String, nullable=False, index=True)
    branch_id   = Column(String(36), nullable=False, index=True)
    status      = Column(String, nullable=False, default="running")
    attempt     = Column(Integer, nullable=False, default=1)
    started_at  = Column(DateTime, nullable=False, default=utcnow)
    finished_at = Column(DateTime, nullable=True)
    result      = Column(JSON, nullable=True)
    error       = Column(Text, nullable=True)

# ──────────────────────────────────────────────────────────────────────────────
# API payloads
# ──────────────────────────────────────────────────────────────────────────────

class AlertSettingUpdate(BaseModel):
    is_enabled: Optional[bool] = None
    threshold_value: Optional[float] = None
    cooldown_hours: Optional[int] = Field(default=None, ge=0, le=24 * 30)
    notification_channels: Optional[List[str]] = None
    recipient_roles: Optional[List[str]] = None

class AcknowledgeInput(BaseModel):
    user_id: str

class MarkReadInput(BaseModel):
    alert_ids: List[str]
