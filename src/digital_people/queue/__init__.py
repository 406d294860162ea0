from __future__ import annotations

from digital_people.config import Settings, get_settings
from digital_people.utils.log import logger

from .interfaces import Delivery, QueueStatus, WorkQueue
from .local_queue import LocalWorkQueue
from .redis_queue import RedisStreamQueue


def build_work_queue(settings: Settings | None = None) -> WorkQueue:
    s = settings or get_settings()
    url = str(s.redis_url or "").strip()
    if not url:
        logger.warning("queue_fallback_local", reason="REDIS_URL not set; tasks are not durable")
        return LocalWorkQueue()
    return RedisStreamQueue(
        redis_url=url,
        prefix=s.queue_prefix,
        password=s.redis_password_value(),
        block_ms=int(s.queue_block_ms),
        claim_idle_s=float(s.queue_claim_idle_s),
    )


__all__ = [
    "Delivery",
    "LocalWorkQueue",
    "QueueStatus",
    "RedisStreamQueue",
    "WorkQueue",
    "build_work_queue",
]
