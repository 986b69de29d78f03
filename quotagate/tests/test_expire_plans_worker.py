from datetime import datetime, timedelta, timezone

import pytest

from quotagate.conftest import NOON
from quotagate.core.errors import StoreUnavailableError
from quotagate.features.plans.service import get_plan_record, set_plan
from quotagate.models.plan import PlanStatus
from quotagate.workers import expire_plans
from quotagate.workers.expire_plans import next_run_at, run_loop, run_once


def test_next_run_is_later_today_in_rome():
    # 11:00 UTC is 12:00 in Rome; a 23:30 local run is 22:30 UTC
    assert next_run_at(NOON, hour=23, minute=30) == datetime(2026, 1, 15, 22, 30, tzinfo=timezone.utc)


def test_next_run_rolls_to_tomorrow():
    assert next_run_at(NOON, hour=0, minute=5) == datetime(2026, 1, 15, 23, 5, tzinfo=timezone.utc)


def test_next_run_tracks_daylight_saving():
    summer = datetime(2026, 7, 1, 12, 0, tzinfo=timezone.utc)
    assert next_run_at(summer, hour=0, minute=5) == datetime(2026, 7, 1, 22, 5, tzinfo=timezone.utc)


def test_run_once_reports_stats(make_user, admin_actor):
    user_id = make_user("cron_target")
    set_plan(user_id, "pro", actor=admin_actor, expires_at=NOON - timedelta(hours=1), now=NOON - timedelta(days=7))

    result = run_once(NOON)

    assert result["status"] == "success"
    assert result["expired"] == 1
    assert get_plan_record(user_id).status == PlanStatus.EXPIRED


def test_loop_sleeps_until_each_run_and_survives_store_outage(monkeypatch):
    sleeps = []
    calls = {"n": 0}

    def fake_run_once(now=None):
        calls["n"] += 1
        if calls["n"] == 1:
            raise StoreUnavailableError("down")
        return {"status": "success"}

    monkeypatch.setattr(expire_plans, "run_once", fake_run_once)
    runs = run_loop(sleep_fn=sleeps.append, max_runs=2)

    assert runs == 2
    assert calls["n"] == 2
    assert len(sleeps) == 2
    assert all(0 <= delay <= 24 * 3600 for delay in sleeps)


@pytest.mark.parametrize(
    "status, exit_code",
    [("success", 0), ("partial", 2)],
)
def test_main_exit_codes(monkeypatch, status, exit_code):
    monkeypatch.setattr(expire_plans, "run_once", lambda now=None: {"status": status})
    monkeypatch.setattr(expire_plans, "create_all_tables", lambda: None)
    monkeypatch.setattr("sys.argv", ["expire_plans", "--once"])
    assert expire_plans.main() == exit_code


def test_main_returns_1_when_store_unavailable(monkeypatch):
    def unavailable(now=None):
        raise StoreUnavailableError("down")

    monkeypatch.setattr(expire_plans, "run_once", unavailable)
    monkeypatch.setattr(expire_plans, "create_all_tables", lambda: None)
    monkeypatch.setattr("sys.argv", ["expire_plans", "--now", "2026-01-15T11:00:00+00:00"])
    assert expire_plans.main() == 1
