# insights_engine/scoring/forecasts.py
from __future__ import annotations

import logging
import math
from collections import defaultdict
from datetime import date, timedelta
from typing import Dict, List, Optional, Tuple

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from insights_engine.config import Settings, settings as default_settings
from insights_engine.models import AttendanceForecast, AttendanceRecord, Donation, FinancialForecast, Service
from insights_engine.utils.common import Clock, month_start, quarter_start, utcnow, weighted_average

log = logging.getLogger(__name__)

FORECAST_TYPES = ("monthly", "quarterly")

# ─── shared statistics ────────────────────────────────────────────────────────

def trend_factor(totals_newest_first: List[float]) -> float:
    """Recent half vs older half, bounded to 0.8..1.2."""
    if len(totals_newest_first) < 4:
        return 1.0
    half = len(totals_newest_first) // 2
    recent, older = totals_newest_first[:half], totals_newest_first[half:]
    older_avg = sum(older) / len(older)
    if older_avg == 0:
        return 1.0
    return max(0.8, min(1.2, (sum(recent) / len(recent)) / older_avg))

def _std_dev(values: List[float], mean: float) -> float:
    if not values:
        return 0.0
    return math.sqrt(sum((v - mean) ** 2 for v in values) / len(values))

def confidence_score(totals: List[float], base: float = 70, min_points: int = 4) -> float:
    points = [v for v in totals if v > 0]
    if len(points) < min_points:
        return max(40.0, base - (min_points - len(points)) * 10)
    mean = sum(points) / len(points)
    if mean == 0:
        return 40.0
    variation_penalty = (_std_dev(points, mean) / mean) * 50
    data_bonus = min(15, (len(points) - min_points) * 3)
    return max(40.0, min(95.0, round(base - variation_penalty + data_bonus, 1)))

def confidence_interval(totals: List[float], prediction: float) -> Tuple[float, float]:
    points = [v for v in totals if v > 0]
    if len(points) < 3:
        return prediction * 0.70, prediction * 1.30
    mean = sum(points) / len(points)
    margin = 1.96 * (_std_dev(points, mean) / math.sqrt(len(points)))
    return max(0.0, prediction - margin), prediction + margin


# ─── attendance ───────────────────────────────────────────────────────────────

def next_service_date(service: Service, today: date) -> date:
    """Next occurrence of the service weekday strictly after today."""
    delta = (service.day_of_week - today.weekday()) % 7
    return today + timedelta(days=delta or 7)

def weekly_service_totals(db: Session, service: Service, today: date, weeks: int) -> List[float]:
    """Head counts per week, newest first, including empty weeks."""
    since = today - timedelta(weeks=weeks)
    rows = db.execute(
        select(AttendanceRecord.date, func.count(AttendanceRecord.id))
        .where(AttendanceRecord.service_id == service.id, AttendanceRecord.date >= since, AttendanceRecord.date < today)
        .group_by(AttendanceRecord.date)
    ).all()
    buckets: Dict[int, float] = defaultdict(float)
    for d, n in rows:
        buckets[((today - d).days - 1) // 7] += n
    return [buckets.get(i, 0.0) for i in range(weeks)]

def forecast_attendance(
    db: Session,
    branch_id: str,
    weeks_ahead: Optional[int] = None,
    settings: Settings = default_settings,
    clock: Clock = utcnow,
) -> Dict[str, int]:
    """
    Upsert AttendanceForecast rows (keyed service_id + forecast_date) for each
    active service and refresh the service's next-forecast columns.
    """
    weeks_ahead = weeks_ahead or settings.FORECAST_WEEKS_AHEAD
    now = clock()
    today = now.date()
    services = db.execute(
        select(Service).where(Service.branch_id == branch_id, Service.is_active.is_(True)).order_by(Service.id)
    ).scalars().all()

    written = skipped = 0
    for service in services:
        totals = weekly_service_totals(db, service, today, settings.FORECAST_HISTORY_WEEKS)
        weeks_with_data = sum(1 for t in totals if t > 0)
        if weeks_with_data < 2:
            skipped += 1
            log.info("Skipping forecast for service=%s (only %d week(s) of data)", service.id, weeks_with_data)
            continue

        base = weighted_average([t for t in reversed(totals) if t > 0])
        trend = trend_factor(totals)
        confidence = confidence_score(totals)
        first = next_service_date(service, today)

        for k in range(weeks_ahead):
            target = first + timedelta(weeks=k)
            predicted = max(0, int(round(base * trend)))
            factors = {
                "weighted_average": round(base, 2),
                "trend_factor": round(trend, 3),
                "weeks_with_data": weeks_with_data,
            }
            _upsert_attendance_forecast(db, branch_id, service.id, target, predicted, confidence, factors, now)
            written += 1
            if k == 0:
                service.forecast_next_attendance = predicted
                service.forecast_confidence = confidence
                service.forecast_calculated_at = now
        db.commit()

    return {"services": len(services), "forecasts_written": written, "skipped": skipped}

def _upsert_attendance_forecast(db, branch_id, service_id, target, predicted, confidence, factors, now):
    row = db.execute(
        select(AttendanceForecast).where(
            AttendanceForecast.service_id == service_id,
            AttendanceForecast.forecast_date == target,
        )
    ).scalar_one_or_none()
    if row is None:
        row = AttendanceForecast(branch_id=branch_id, service_id=service_id, forecast_date=target)
        db.add(row)
    row.predicted_attendance = predicted
    row.confidence_score = confidence
    row.factors = factors
    row.updated_at = now


# ─── giving ───────────────────────────────────────────────────────────────────

def _period_start(d: date, forecast_type: str, ahead: int = 0) -> date:
    if forecast_type == "monthly":
        return month_start(d, ahead)
    return quarter_start(d, ahead)

def _period_end(start: date, forecast_type: str) -> date:
    return _period_start(start, forecast_type, 1) - timedelta(days=1)

def period_totals(db: Session, branch_id: str, forecast_type: str, today: date, periods: int) -> List[float]:
    """Giving totals per completed period, newest first."""
    current = _period_start(today, forecast_type)
    since = _period_start(today, forecast_type, -periods)
    rows = db.execute(
        select(Donation.donated_at, Donation.amount)
        .where(Donation.branch_id == branch_id, Donation.donated_at >= since, Donation.donated_at < current)
    ).all()
    starts = [_period_start(today, forecast_type, -i) for i in range(1, periods + 1)]
    totals = {s: 0.0 for s in starts}
    for donated_at, amount in rows:
        totals[_period_start(donated_at, forecast_type)] += float(amount)
    return [totals[s] for s in starts]

def forecast_finances(
    db: Session,
    branch_id: str,
    forecast_type: str = "monthly",
    periods_ahead: Optional[int] = None,
    settings: Settings = default_settings,
    clock: Clock = utcnow,
) -> Dict[str, int]:
    """Upsert FinancialForecast rows keyed branch_id + forecast_type + period_start."""
    if forecast_type not in FORECAST_TYPES:
        raise ValueError(f"forecast_type must be one of {FORECAST_TYPES}")
    periods_ahead = periods_ahead or settings.FINANCIAL_PERIODS_AHEAD
    now = clock()
    today = now.date()

    history = 12 if forecast_type == "monthly" else 8
    totals = period_totals(db, branch_id, forecast_type, today, history)
    if not any(totals):
        log.info("No giving history for branch=%s; no %s forecast", branch_id, forecast_type)
        return {"forecasts_written": 0, "skipped": periods_ahead}

    base = weighted_average([t for t in reversed(totals) if t > 0])
    trend = trend_factor(totals)
    predicted = round(base * trend, 2)
    lower, upper = confidence_interval(totals, predicted)
    confidence = confidence_score(totals, min_points=3 if forecast_type == "quarterly" else 4)

    written = 0
    for k in range(1, periods_ahead + 1):
        start = _period_start(today, forecast_type, k)
        row = db.execute(
            select(FinancialForecast).where(
                FinancialForecast.branch_id == branch_id,
                FinancialForecast.forecast_type == forecast_type,
                FinancialForecast.period_start == start,
            )
        ).scalar_one_or_none()
        if row is None:
            row = FinancialForecast(branch_id=branch_id, forecast_type=forecast_type, period_start=start)
            db.add(row)
        row.period_end = _period_end(start, forecast_type)
        row.predicted_total = predicted
        row.confidence_lower = round(lower, 2)
        row.confidence_upper = round(upper, 2)
        row.confidence_score = confidence
        row.factors = {
            "weighted_average": round(base, 2),
            "trend_factor": round(trend, 3),
            "periods_with_data": sum(1 for t in totals if t > 0),
        }
        row.updated_at = now
        written += 1
    db.commit()
    return {"forecasts_written": written, "skipped": 0}
