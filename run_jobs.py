# run_jobs.py
import json, logging, argparse

from insights_engine.alerts.constants import AlertType
from insights_engine.db import SessionLocal, init_db
from insights_engine.jobs import JOBS

# ── Logging ───────────────────────────────────────────────────────────────────
log = logging.getLogger("run_jobs")
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)s run_jobs: %(message)s"
)


def _json_default(o):
    from datetime import date, datetime, time
    if isinstance(o, (datetime, date, time)):
        return o.isoformat()
    return str(o)


def job_kwargs(args) -> dict:
    """Only forward the options the selected job understands."""
    kw = {}
    if args.job in ("churn-scoring", "lifecycle-detection", "cluster-health", "household-engagement",
                    "visitor-conversion", "attendance-anomaly"):
        kw["chunk_size"] = args.chunk_size
    if args.job == "lifecycle-detection" and args.no_notify:
        kw["notify_on_transition"] = False
    if args.job == "cluster-health" and args.no_notify:
        kw["notify_on_struggling"] = False
    if args.job == "attendance-forecast":
        kw["weeks_ahead"] = args.weeks_ahead
    if args.job == "financial-forecast":
        kw["forecast_type"] = args.forecast_type
        kw["periods_ahead"] = args.periods_ahead
    if args.job == "process-alerts":
        kw["alert_type"] = AlertType(args.alert_type) if args.alert_type else None
        kw["send_notifications"] = not args.no_notify
    if args.job == "alert-digest":
        kw["hours_back"] = args.hours_back
    return kw


def main(argv=None) -> int:
    ap = argparse.ArgumentParser(description="Run one insights job in-process for a branch.")
    ap.add_argument("job", choices=sorted(JOBS))
    ap.add_argument("--branch", required=True, help="Branch id")
    ap.add_argument("--chunk-size", type=int, default=None)
    ap.add_argument("--weeks-ahead", type=int, default=None)
    ap.add_argument("--forecast-type", choices=["monthly", "quarterly"], default="monthly")
    ap.add_argument("--periods-ahead", type=int, default=None)
    ap.add_argument("--alert-type", choices=[t.value for t in AlertType], default=None)
    ap.add_argument("--hours-back", type=int, default=24)
    ap.add_argument("--no-notify", action="store_true", help="Skip notifications for this run")
    ap.add_argument("--init-db", action="store_true", help="Create missing tables first")
    args = ap.parse_args(argv)

    if args.init_db:
        init_db()

    log.info("🚀 Running %s for branch=%s", args.job, args.branch)
    with SessionLocal() as db:
        try:
            result = JOBS[args.job](db, args.branch, **job_kwargs(args))
        except Exception:
            log.exception("💥 %s failed", args.job)
            return 1
    print(json.dumps(result, indent=2, default=_json_default))
    return 0 if result.get("status") in ("completed", "skipped") else 1


if __name__ == "__main__":
    raise SystemExit(main())
