# insights_engine/config.py
from pathlib import Path
from dotenv import load_dotenv
from pydantic_settings import BaseSettings
from pydantic import Field
from typing import Optional, List

# Load local .env for development
load_dotenv(dotenv_path=Path(__file__).parent.parent / ".env")


class Settings(BaseSettings):
    # ─── Database ───────────────────────────────────────────────────────────────
    DATABASE_URL: str = "sqlite:///./insights.db"
    DB_POOL_SIZE: int = 10
    DB_MAX_OVERFLOW: int = 20

    # ─── Feature flags (deployment-wide) ───────────────────────────────────────
    FEATURE_CHURN: bool = True
    FEATURE_LIFECYCLE: bool = True
    FEATURE_CLUSTER_HEALTH: bool = True
    FEATURE_HOUSEHOLD: bool = True
    FEATURE_VISITOR_CONVERSION: bool = True
    FEATURE_ATTENDANCE_ANOMALY: bool = True
    FEATURE_ATTENDANCE_FORECAST: bool = True
    FEATURE_FINANCIAL_FORECAST: bool = True
    FEATURE_ALERTS: bool = True
    FEATURE_RECOMMENDATIONS: bool = True

    LIFECYCLE_NOTIFY_ON_AT_RISK: bool = True
    CLUSTER_NOTIFY_ON_STRUGGLING: bool = True

    # ─── Batch / job control ───────────────────────────────────────────────────
    DEFAULT_CHUNK_SIZE: int = Field(default=50, ge=1)
    JOB_MAX_ATTEMPTS: int = Field(default=3, ge=1)
    JOB_TIMEOUT_SECONDS: int = Field(default=600, ge=30)
    BRANCH_CONCURRENCY: int = Field(default=1, ge=1)

    # ─── Notifications ─────────────────────────────────────────────────────────
    DIGEST_CHANNELS: str = "database,mail"        # comma-separated
    DEFAULT_RECIPIENT_ROLES: str = "admin,pastor"  # comma-separated
    APP_URL: str = "http://localhost:8000"

    EMAIL_BACKEND: str = "console"   # sendgrid | console
    EMAIL_FROM: str = "Church Insights <no-reply@example.com>"
    REPLY_TO: Optional[str] = None
    SENDGRID_API_KEY: Optional[str] = None
    EMAIL_TIMEOUT_SECONDS: int = 15

    SMS_BACKEND: str = "console"     # http | console
    SMS_API_URL: Optional[str] = None
    SMS_API_KEY: Optional[str] = None
    SMS_SENDER_ID: str = "CHURCH"
    SMS_TIMEOUT_SECONDS: int = 15

    # ─── Heuristic scoring knobs ───────────────────────────────────────────────
    NEW_MEMBER_DAYS: int = 90
    DORMANT_DAYS: int = 90
    CHURN_INACTIVE_DAYS: int = 90
    LIFECYCLE_AT_RISK_CHURN: float = 70
    LIFECYCLE_DISENGAGING_CHURN: float = 50
    ATTENDANCE_BASELINE_WEEKS: int = 8
    ATTENDANCE_COMPARISON_WEEKS: int = 4
    ATTENDANCE_DECLINE_PERCENT: float = 50
    FORECAST_HISTORY_WEEKS: int = 12
    FORECAST_WEEKS_AHEAD: int = 4
    FINANCIAL_PERIODS_AHEAD: int = 4

    # ─── Optional Extras ────────────────────────────────────────────────────────
    API_BASE_URL: str = "http://127.0.0.1:8000"

    class Config:
        env_file = ".env"
        case_sensitive = True
        extra = "ignore"

    @property
    def digest_channels(self) -> List[str]:
        return _split_csv(self.DIGEST_CHANNELS)

    @property
    def default_recipient_roles(self) -> List[str]:
        return _split_csv(self.DEFAULT_RECIPIENT_ROLES)


def _split_csv(csv_value: str) -> List[str]:
    """
    Example: "database, mail" -> ["database", "mail"]
    """
    out: List[str] = []
    for raw in (csv_value or "").split(","):
        v = raw.strip().lower()
        if v and v not in out:
            out.append(v)
    return out


# single settings instance; components take it as an injectable default
settings = Settings()
