# scheduler.py

import time
import logging
from concurrent.futures import ThreadPoolExecutor
from typing import List, Optional

import schedule
import requests
from sqlalchemy import select

from insights_engine.config import settings
from insights_engine.db import SessionLocal
from insights_engine.models import Branch

# Base URL for the FastAPI app (override via .env if needed)
BASE_URL = settings.API_BASE_URL

# Configure structured logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
log = logging.getLogger("scheduler")

RETRY_STATUSES = (500, 502, 503, 504)


# ─── Job Schedule Definitions ────────────────────────────────────────────────
# (cadence, at, endpoint, label, read-timeout seconds)
#   cadence: "daily" | "hourly" | "monday"
JOBS = [
    ("daily",  "02:00", "churn-scoring",        "Churn risk scoring",        600),
    ("daily",  "02:30", "lifecycle-detection",  "Lifecycle stage detection", 600),
    ("daily",  "03:00", "attendance-anomaly",   "Attendance anomalies",      600),
    ("daily",  "03:30", "household-engagement", "Household engagement",      600),
    ("daily",  "04:00", "visitor-conversion",   "Visitor conversion",        300),
    ("monday", "04:30", "cluster-health",       "Cluster health",            600),
    ("monday", "05:00", "attendance-forecast",  "Attendance forecast",       300),
    ("monday", "05:15", "financial-forecast",   "Financial forecast",        300),
    ("hourly", ":05",   "process-alerts",       "Alert processing",          600),
    ("daily",  "07:00", "alert-digest",         "Daily alert digest",        300),
]


# ─── Branch discovery ────────────────────────────────────────────────────────
def branch_ids() -> List[str]:
    with SessionLocal() as db:
        return list(db.execute(select(Branch.id).order_by(Branch.id)).scalars().all())


# ─── Generic API Caller (with retries) ───────────────────────────────────────
def call_job(branch_id: str, endpoint: str, label: str, timeout_s: Optional[int] = None) -> bool:
    """
    POSTs the branch trigger. Retries 5xx and connection errors with exponential
    backoff, passing attempt/max_attempts so the server can record a terminal failure.
    """
    url = f"{BASE_URL.rstrip('/')}/insights/branches/{branch_id}/{endpoint}"
    to = min(timeout_s or settings.JOB_TIMEOUT_SECONDS, settings.JOB_TIMEOUT_SECONDS)
    max_tries = settings.JOB_MAX_ATTEMPTS

    for attempt in range(1, max_tries + 1):
        t0 = time.perf_counter()
        params = {"attempt": attempt, "max_attempts": max_tries}
        log.info("📡 %s – branch=%s (timeout=%ss try=%d/%d)", label, branch_id, to, attempt, max_tries)
        try:
            r = requests.post(url, params=params, timeout=(10, to))
            elapsed = time.perf_counter() - t0
            if r.status_code == 200:
                body = r.json() if r.content else {}
                log.info("✅ %s branch=%s %s in %.1fs", label, branch_id, body.get("status", "ok"), elapsed)
                return True
            if r.status_code in RETRY_STATUSES:
                log.warning("↩️ %s branch=%s got %s in %.1fs, will retry", label, branch_id, r.status_code, elapsed)
                time.sleep(0.5 * (2 ** (attempt - 1)))
                continue
            log.error("❌ %s branch=%s failed (%s): %s", label, branch_id, r.status_code, (r.text or "")[:300])
            return False
        except (requests.ConnectionError, requests.Timeout) as e:
            elapsed = time.perf_counter() - t0
            log.warning("↩️ %s branch=%s %s in %.1fs, will retry", label, branch_id, e.__class__.__name__, elapsed)
            time.sleep(0.5 * (2 ** (attempt - 1)))
    log.error("❌ %s branch=%s exhausted retries", label, branch_id)
    return False


def run_for_all_branches(endpoint: str, label: str, timeout_s: int):
    try:
        ids = branch_ids()
    except Exception:
        log.exception("💥 Could not load branches for %s", label)
        return
    if not ids:
        log.info("No branches; %s skipped", label)
        return
    with ThreadPoolExecutor(max_workers=settings.BRANCH_CONCURRENCY) as pool:
        list(pool.map(lambda b: call_job(b, endpoint, label, timeout_s), ids))


def schedule_jobs():
    for cadence, at, endpoint, label, timeout_s in JOBS:
        if cadence == "hourly":
            schedule.every().hour.at(at).do(run_for_all_branches, endpoint, label, timeout_s)
        elif cadence == "monday":
            schedule.every().monday.at(at).do(run_for_all_branches, endpoint, label, timeout_s)
        else:
            schedule.every().day.at(at).do(run_for_all_branches, endpoint, label, timeout_s)
        logging.info(f"Scheduled '{label}' ({cadence} at {at})")


# ─── Entrypoint ─────────────────────────────────────────────────────────────
def main():
    schedule_jobs()
    logging.info("⏱ Scheduler started. Waiting for jobs…")
    while True:
        schedule.run_pending()
        time.sleep(30)


if __name__ == "__main__":
    main()
