"""
Expiration reconciler.

Moves active plans whose expiry has passed to free/expired, keeping the
profile summary, history ledger and audit trail consistent. Each record is
processed in its own transaction; one failing record is logged and counted
and never stops the rest. Writes one job_runs row per run.

The decision path already treats a past-due active plan as free, so the
reconciler only has to converge stored state, not race live requests.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field, asdict
from datetime import datetime
from typing import List, Optional

from sqlalchemy import select, insert, update
from sqlalchemy.exc import SQLAlchemyError

from quotagate.core.admin_auth import SYSTEM_ACTOR
from quotagate.core.clock import as_utc, utc_now
from quotagate.core.database import get_db_session, user_plans, plan_history, job_runs
from quotagate.core.errors import StoreUnavailableError
from quotagate.core import metrics
from quotagate.features.audit.service import append_audit_entry
from quotagate.features.plans.service import load_plan_record
from quotagate.features.users.service import sync_plan_summary
from quotagate.models.plan import PlanStatus, Tier

logger = logging.getLogger("quotagate.reconciler")

JOB_NAME = "plans.expire"
EXPIRED_REASON = "Auto-expired"


@dataclass
class ReconcileReport:
    started_at: datetime
    finished_at: Optional[datetime] = None
    matched: int = 0
    expired: int = 0
    skipped: int = 0  # changed by someone else between query and update
    failed: int = 0
    failed_user_ids: List[str] = field(default_factory=list)

    @property
    def status(self) -> str:
        if self.failed == 0:
            return "success"
        return "partial" if self.expired or self.skipped else "failed"

    def stats(self) -> dict:
        data = asdict(self)
        data.pop("started_at")
        data.pop("finished_at")
        return data


def _find_due(now: datetime) -> List[str]:
    stmt = (
        select(user_plans.c.user_id)
        .where(user_plans.c.status == PlanStatus.ACTIVE.value)
        .where(user_plans.c.expires_at.is_not(None))
        .where(user_plans.c.expires_at < now)
        .order_by(user_plans.c.expires_at)
    )
    with get_db_session() as session:
        return [row.user_id for row in session.execute(stmt).fetchall()]


def _expire_one(user_id: str, now: datetime) -> bool:
    """Expire one record. Returns False when it no longer qualifies."""
    with get_db_session() as session:
        previous = load_plan_record(session, user_id)
        if previous is None or not previous.is_expired_at(now):
            return False

        result = session.execute(
            update(user_plans)
            .where(user_plans.c.user_id == user_id)
            .where(user_plans.c.status == PlanStatus.ACTIVE.value)
            .where(user_plans.c.expires_at < now)
            .values(
                tier=Tier.FREE.value,
                status=PlanStatus.EXPIRED.value,
                updated_at=now,
                updated_by=SYSTEM_ACTOR.actor_id,
                reason=EXPIRED_REASON,
            )
        )
        if result.rowcount != 1:
            return False

        record = previous.model_copy(
            update={
                "tier": Tier.FREE,
                "status": PlanStatus.EXPIRED,
                "updated_at": now,
                "updated_by": SYSTEM_ACTOR.actor_id,
                "reason": EXPIRED_REASON,
            }
        )
        sync_plan_summary(session, record, now)
        session.execute(
            insert(plan_history).values(
                user_id=user_id,
                old_tier=previous.tier.value,
                new_tier=Tier.FREE.value,
                old_status=previous.status.value,
                new_status=PlanStatus.EXPIRED.value,
                actor_id=SYSTEM_ACTOR.actor_id,
                actor_name=SYSTEM_ACTOR.actor_name,
                source=previous.source.value,
                reason=EXPIRED_REASON,
                expires_at=previous.expires_at,
                created_at=now,
            )
        )
        append_audit_entry(
            session,
            action="monetization.plan_expired",
            actor=SYSTEM_ACTOR,
            target_type="user",
            target_id=user_id,
            details={
                "old_tier": previous.tier.value,
                "expired_at": previous.expires_at.isoformat() if previous.expires_at else None,
            },
        )
    return True


def _record_run(report: ReconcileReport) -> None:
    try:
        with get_db_session() as session:
            session.execute(
                insert(job_runs).values(
                    job_name=JOB_NAME,
                    started_at=report.started_at,
                    finished_at=report.finished_at,
                    status=report.status,
                    stats=report.stats(),
                )
            )
    except SQLAlchemyError as exc:
        logger.warning("Job run write failed: %s", exc)


def expire_due_plans(now: Optional[datetime] = None) -> ReconcileReport:
    """Run one reconciliation pass.

    Idempotent: a second run at the same `now` matches nothing. A failing
    initial query raises StoreUnavailableError; the next run retries.
    """
    now = as_utc(now) or utc_now()
    report = ReconcileReport(started_at=now)

    try:
        due = _find_due(now)
    except SQLAlchemyError as exc:
        logger.error("Reconciler query failed: %s", exc)
        report.failed = 1
        report.finished_at = utc_now()
        _record_run(report)
        raise StoreUnavailableError("Plan store unavailable; reconciliation aborted") from exc

    report.matched = len(due)
    for user_id in due:
        try:
            if _expire_one(user_id, now):
                report.expired += 1
                metrics.plan_expirations_total.inc({"result": "expired"})
            else:
                report.skipped += 1
                metrics.plan_expirations_total.inc({"result": "skipped"})
        except Exception as exc:
            report.failed += 1
            report.failed_user_ids.append(user_id)
            metrics.plan_expirations_total.inc({"result": "failed"})
            logger.error(
                "Plan expiration failed",
                extra={"target_id": user_id, "error_code": type(exc).__name__},
                exc_info=True,
            )

    report.finished_at = utc_now()
    _record_run(report)
    metrics.reconcile_last_run_timestamp.set(report.finished_at.timestamp())
    logger.info(
        "Reconcile run complete",
        extra={"event_type": JOB_NAME, "status": report.status},
    )
    return report
