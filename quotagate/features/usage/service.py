"""
quotagate/features/usage/service.py

Per-decision usage log.

Entries are written off the request path: in "thread" mode by a small
ThreadPoolExecutor, in "rq" mode by enqueueing `write_usage_entry` on a Redis
queue consumed by `quotagate/workers/worker.py`. A failed write is logged and
dropped; it never changes the decision it describes.
"""

import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor, wait
from typing import Any, Dict, List, Optional, Set

from redis import Redis
from rq import Queue
from sqlalchemy import insert, select
from sqlalchemy.exc import SQLAlchemyError

from quotagate.core.clock import as_utc
from quotagate.core.config import settings
from quotagate.core.database import ai_usage_events, get_db_session
from quotagate.core.errors import StoreUnavailableError
from quotagate.core import metrics
from quotagate.models.usage_event import UsageLogEntry

logger = logging.getLogger(__name__)


def write_usage_entry(entry: Dict[str, Any]) -> None:
    """Persist one entry. Also the rq job target, so it takes a plain dict."""
    with get_db_session() as session:
        session.execute(insert(ai_usage_events).values(**entry))


def _write_or_log(entry: Dict[str, Any], mode: str) -> None:
    try:
        write_usage_entry(entry)
    except Exception as exc:
        metrics.usage_log_failures_total.inc({"mode": mode})
        logger.warning(
            "Usage log write dropped: %s",
            exc,
            extra={"user_id": entry.get("user_id"), "error_code": type(exc).__name__},
        )


class UsageLogDispatcher:
    def __init__(self, mode: str = "thread", max_workers: int = 2):
        self.mode = mode
        self.max_workers = max_workers
        self._executor: Optional[ThreadPoolExecutor] = None
        self._pending: Set[Future] = set()
        self._lock = threading.Lock()
        self._queue = None

    def _get_executor(self) -> ThreadPoolExecutor:
        with self._lock:
            if self._executor is None:
                self._executor = ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix="usage-log")
            return self._executor

    def _get_queue(self):
        if self._queue is None:
            self._queue = Queue(settings.USAGE_LOG_QUEUE, connection=Redis.from_url(settings.REDIS_URL))
        return self._queue

    def dispatch(self, entry: UsageLogEntry) -> None:
        """Hand the entry off and return immediately. Never raises."""
        payload = entry.model_dump()
        try:
            if self.mode == "rq":
                self._get_queue().enqueue(write_usage_entry, payload, result_ttl=0, job_timeout="30s")
                return
            future = self._get_executor().submit(_write_or_log, payload, self.mode)
            with self._lock:
                self._pending.add(future)
            future.add_done_callback(self._discard)
        except Exception as exc:
            metrics.usage_log_failures_total.inc({"mode": self.mode})
            logger.warning("Usage log dispatch failed: %s", exc, extra={"user_id": entry.user_id})

    def _discard(self, future: Future) -> None:
        with self._lock:
            self._pending.discard(future)

    def flush(self, timeout: Optional[float] = 10.0) -> None:
        """Wait for pending thread-mode writes (tests, shutdown)."""
        with self._lock:
            pending = list(self._pending)
        if pending:
            wait(pending, timeout=timeout)

    def shutdown(self) -> None:
        self.flush()
        with self._lock:
            if self._executor is not None:
                self._executor.shutdown(wait=True)
                self._executor = None


_dispatcher: Optional[UsageLogDispatcher] = None


def get_dispatcher() -> UsageLogDispatcher:
    global _dispatcher
    if _dispatcher is None:
        _dispatcher = UsageLogDispatcher(settings.USAGE_LOG_MODE, settings.USAGE_LOG_WORKERS)
    return _dispatcher


def reset_dispatcher() -> None:
    global _dispatcher
    if _dispatcher is not None:
        _dispatcher.shutdown()
    _dispatcher = None


def log_usage(entry: UsageLogEntry) -> None:
    get_dispatcher().dispatch(entry)


def list_usage_events(user_id: str, limit: int = 100) -> List[UsageLogEntry]:
    stmt = (
        select(ai_usage_events)
        .where(ai_usage_events.c.user_id == user_id)
        .order_by(ai_usage_events.c.id.desc())
        .limit(limit)
    )
    try:
        with get_db_session() as session:
            rows = session.execute(stmt).fetchall()
    except SQLAlchemyError as exc:
        raise StoreUnavailableError("Usage log unavailable") from exc
    events = []
    for row in rows:
        data = dict(row._mapping)
        data.pop("id", None)
        data["created_at"] = as_utc(data["created_at"])
        events.append(UsageLogEntry(**data))
    return events
