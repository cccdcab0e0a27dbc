from __future__ import annotations
from datetime import datetime, date, timezone
from typing import Any, Callable, Optional

# ─────────────────────────────
# Time & Date helpers
# ─────────────────────────────
# Timestamps are stored as naive UTC.
Clock = Callable[[], datetime]

def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None, microsecond=0)

def month_start(d: date, months_ahead: int = 0) -> date:
    """First day of the month `months_ahead` months after d's month."""
    idx = d.year * 12 + (d.month - 1) + months_ahead
    return date(idx // 12, idx % 12 + 1, 1)

def quarter_start(d: date, quarters_ahead: int = 0) -> date:
    q_month = ((d.month - 1) // 3) * 3 + 1
    return month_start(date(d.year, q_month, 1), quarters_ahead * 3)

def to_date(val: Any) -> Optional[date]:
    if val is None:
        return None
    if isinstance(val, datetime):
        return val.date()
    if isinstance(val, date):
        return val
    return date.fromisoformat(str(val))

def days_between(earlier: Optional[date], later: date) -> Optional[int]:
    if earlier is None:
        return None
    return (to_date(later) - to_date(earlier)).days

def iso(dt: Optional[datetime]) -> Optional[str]:
    return dt.isoformat() if dt else None

# ─────────────────────────────
# Math helpers
# ─────────────────────────────
def safe_percent(numer: float, denom: float, precision: int = 2) -> float:
    if not denom:
        return 0.0
    return round((numer / denom) * 100.0, precision)

def clamp(value: float, lo: float = 0.0, hi: float = 100.0) -> float:
    return max(lo, min(hi, value))

def weighted_average(values: list[float]) -> float:
    """Linear weights, most recent last and heaviest."""
    if not values:
        return 0.0
    weights = range(1, len(values) + 1)
    return sum(v * w for v, w in zip(values, weights)) / sum(weights)
