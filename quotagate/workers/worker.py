# Consumes the usage-log queue when USAGE_LOG_MODE=rq.
# Run with: python -m quotagate.workers.worker
# or: rq worker -u $REDIS_URL usage-log
import logging

from redis import Redis
from rq import Queue, Worker

from quotagate.core.config import settings
from quotagate.core.logging import configure_logging

logger = logging.getLogger("quotagate")


def main() -> int:
    configure_logging(settings.ENV)
    conn = Redis.from_url(settings.REDIS_URL)
    worker = Worker([Queue(settings.USAGE_LOG_QUEUE, connection=conn)], connection=conn)
    logger.info("Starting RQ worker on queue %s", settings.USAGE_LOG_QUEUE)
    worker.work()
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
