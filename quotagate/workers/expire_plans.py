"""Daily plan expiration job.

Run once from cron:
    python -m quotagate.workers.expire_plans --once
or keep it resident, firing at RECONCILE_HOUR:RECONCILE_MINUTE in QUOTA_TIMEZONE:
    python -m quotagate.workers.expire_plans --loop
"""
import argparse
import json
import logging
import time
from datetime import datetime, timedelta
from typing import Callable, Optional

from quotagate.core.clock import as_utc, reference_zone, utc_now
from quotagate.core.config import settings
from quotagate.core.database import create_all_tables
from quotagate.core.errors import StoreUnavailableError
from quotagate.core.logging import configure_logging
from quotagate.features.plans.reconciler import expire_due_plans

logger = logging.getLogger("quotagate.workers.expire_plans")


def next_run_at(
    now: Optional[datetime] = None,
    *,
    hour: Optional[int] = None,
    minute: Optional[int] = None,
    tz_name: Optional[str] = None,
) -> datetime:
    """Next scheduled run (UTC) strictly after `now`, at local wall-clock hour:minute."""
    zone = reference_zone(tz_name)
    now = as_utc(now) or utc_now()
    local_now = now.astimezone(zone)
    hour = settings.RECONCILE_HOUR if hour is None else hour
    minute = settings.RECONCILE_MINUTE if minute is None else minute

    candidate_day = local_now.date()
    while True:
        candidate = datetime(candidate_day.year, candidate_day.month, candidate_day.day, hour, minute, tzinfo=zone)
        if candidate > local_now:
            return as_utc(candidate)
        candidate_day += timedelta(days=1)


def run_once(now: Optional[datetime] = None) -> dict:
    report = expire_due_plans(now)
    result = {
        "status": report.status,
        **report.stats(),
        "started_at": report.started_at.isoformat(),
    }
    logger.info("[expire_plans] run complete", extra={"event_type": "plans.expire", "status": report.status})
    return result


def run_loop(
    *,
    sleep_fn: Callable[[float], None] = time.sleep,
    max_runs: Optional[int] = None,
) -> int:
    runs = 0
    while max_runs is None or runs < max_runs:
        wake_at = next_run_at()
        delay = max((wake_at - utc_now()).total_seconds(), 0.0)
        logger.info("[expire_plans] sleeping until %s", wake_at.isoformat())
        sleep_fn(delay)
        try:
            run_once()
        except StoreUnavailableError as exc:
            # The next scheduled run retries
            logger.error("[expire_plans] run aborted: %s", exc)
        runs += 1
    return runs


def main() -> int:
    parser = argparse.ArgumentParser(description="Expire plans whose expires_at has passed.")
    mode = parser.add_mutually_exclusive_group()
    mode.add_argument("--once", action="store_true", help="Run a single pass and exit (default).")
    mode.add_argument("--loop", action="store_true", help="Stay resident and run daily.")
    parser.add_argument("--now", dest="now", help="ISO timestamp to reconcile against (testing/backfill).")
    args = parser.parse_args()

    configure_logging(settings.ENV)
    create_all_tables()

    if args.loop:
        run_loop()
        return 0

    now = datetime.fromisoformat(args.now) if args.now else None
    try:
        result = run_once(now)
    except StoreUnavailableError as exc:
        logger.error("[expire_plans] run aborted: %s", exc)
        return 1
    print(json.dumps(result, default=str))
    return 0 if result["status"] == "success" else 2


if __name__ == "__main__":
    raise SystemExit(main())
