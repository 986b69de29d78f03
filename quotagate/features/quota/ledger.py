"""
quotagate/features/quota/ledger.py

Per-user, per-day AI usage counter.

A ledger entry is keyed by (user_id, date_key). Its `limit` is the effective
quota snapshotted when the day's first request creates the entry; later quota
or override changes only affect the next day's entry.

Consumption is a guarded increment:

    UPDATE ai_usage_daily SET count = count + 1
     WHERE user_id = :u AND date_key = :d AND count < limit

which is atomic on one row, so concurrent requests for the same user/day can
never overshoot the limit. When nothing matched, the entry either does not
exist yet (insert it; a concurrent insert of the same key raises
IntegrityError and the attempt is retried) or is exhausted (deny, no write).
Contention is confined to one user's one day.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from sqlalchemy import select, insert, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from quotagate.core.config import settings
from quotagate.core.database import get_db_session, ai_usage_daily
from quotagate.core.errors import StoreUnavailableError
from quotagate.core import metrics

logger = logging.getLogger(__name__)

_count = ai_usage_daily.c["count"]
_limit = ai_usage_daily.c["limit"]


@dataclass(frozen=True)
class ConsumeResult:
    allowed: bool
    count: int
    limit: int

    @property
    def remaining(self) -> int:
        return max(self.limit - self.count, 0)


class _Conflict(Exception):
    """The entry changed under us; re-run the attempt."""


def _attempt(user_id: str, date_key: str, quota: int, tier: str, now: datetime) -> ConsumeResult:
    key = (ai_usage_daily.c.user_id == user_id) & (ai_usage_daily.c.date_key == date_key)

    with get_db_session() as session:
        result = session.execute(
            update(ai_usage_daily)
            .where(key)
            .where(_count < _limit)
            .values(count=_count + 1, updated_at=now)
        )
        row = session.execute(select(_count.label("used"), _limit.label("cap")).where(key)).first()

        if result.rowcount == 1:
            return ConsumeResult(True, row.used, row.cap)

        if row is None:
            session.execute(
                insert(ai_usage_daily).values(
                    user_id=user_id,
                    date_key=date_key,
                    count=1,
                    limit=quota,
                    tier_at_time=tier,
                    updated_at=now,
                )
            )
            return ConsumeResult(True, 1, quota)

        if row.used < row.cap:
            # Entry appeared between the guarded update and the read
            raise _Conflict()

        return ConsumeResult(False, row.used, row.cap)


def consume(user_id: str, date_key: str, quota: int, tier: str, now: datetime) -> ConsumeResult:
    """Reserve one unit for (user_id, date_key).

    `quota` and `tier` are only used when the day's entry is created.
    Raises StoreUnavailableError on store failure or an exhausted retry budget.
    """
    attempts = max(int(settings.QUOTA_CAS_MAX_ATTEMPTS), 1)
    for _ in range(attempts):
        try:
            return _attempt(user_id, date_key, quota, tier, now)
        except (IntegrityError, _Conflict):
            metrics.quota_cas_conflicts_total.inc()
            logger.debug("Quota ledger conflict", extra={"user_id": user_id, "date_key": date_key})
            continue
        except SQLAlchemyError as exc:
            raise StoreUnavailableError("Quota ledger unavailable") from exc

    logger.warning(
        "Quota ledger retry budget exhausted",
        extra={"user_id": user_id, "date_key": date_key, "error_code": "STORE_UNAVAILABLE"},
    )
    raise StoreUnavailableError("Quota ledger contended; retry")


def get_entry(user_id: str, date_key: str) -> Optional[ConsumeResult]:
    """Today's entry without consuming (display only)."""
    try:
        with get_db_session() as session:
            row = session.execute(
                select(_count.label("used"), _limit.label("cap")).where(
                    (ai_usage_daily.c.user_id == user_id) & (ai_usage_daily.c.date_key == date_key)
                )
            ).first()
    except SQLAlchemyError as exc:
        raise StoreUnavailableError("Quota ledger unavailable") from exc
    if row is None:
        return None
    return ConsumeResult(row.used < row.cap, row.used, row.cap)
