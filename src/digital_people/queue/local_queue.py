from __future__ import annotations

import itertools
import threading
from collections import deque
from collections.abc import Callable, Iterator

from digital_people.jobs.models import QueuedTask
from digital_people.utils.log import logger

from .interfaces import Delivery, QueueStatus, WorkQueue


class LocalWorkQueue(WorkQueue):
    """
    In-process fallback queue.

    Notes:
    - Not durable across restarts (it's the fallback when Redis is not configured).
    - Same ack/nack contract as the Redis backend so the consumer loop is identical.
    """

    def __init__(self, *, poll_interval_s: float = 0.2) -> None:
        self._cond = threading.Condition()
        self._items: deque[tuple[str, str]] = deque()
        self._inflight: dict[str, str] = {}
        self._ids = itertools.count(1)
        self._poll_interval_s = float(poll_interval_s)
        self._closed = False

    def status(self) -> QueueStatus:
        return QueueStatus(mode="local", ok=not self._closed, detail="in-process queue (not durable)")

    def connect(self) -> None:
        self._closed = False

    def close(self) -> None:
        with self._cond:
            self._closed = True
            self._cond.notify_all()

    def publish(self, task: QueuedTask) -> None:
        self.publish_raw(task.encode())

    def publish_raw(self, raw: str) -> None:
        with self._cond:
            self._items.append((str(next(self._ids)), raw))
            self._cond.notify()

    def pending(self) -> int:
        with self._cond:
            return len(self._items)

    def inflight(self) -> list[str]:
        with self._cond:
            return list(self._inflight)

    def _ack(self, mid: str) -> None:
        with self._cond:
            self._inflight.pop(mid, None)

    def _nack(self, mid: str, requeue: bool) -> None:
        with self._cond:
            raw = self._inflight.pop(mid, None)
            if requeue and raw is not None:
                self._items.appendleft((mid, raw))
                self._cond.notify()

    def recover_inflight(self) -> int:
        """Put unsettled deliveries back at the head (simulates a consumer restart)."""
        with self._cond:
            items = list(self._inflight.items())
            self._inflight.clear()
            for mid, raw in reversed(items):
                self._items.appendleft((mid, raw))
            self._cond.notify_all()
            return len(items)

    def consume(self, *, stop: Callable[[], bool]) -> Iterator[Delivery]:
        while not stop():
            with self._cond:
                if not self._items and not self._closed:
                    self._cond.wait(timeout=self._poll_interval_s)
                if self._closed:
                    return
                if not self._items:
                    continue
                mid, raw = self._items.popleft()
                self._inflight[mid] = raw
            task: QueuedTask | None
            try:
                task = QueuedTask.decode(raw)
            except ValueError as ex:
                logger.warning("queue_message_invalid", message_id=mid, error=str(ex))
                task = None
            yield Delivery(
                message_id=mid,
                raw=raw,
                task=task,
                _ack=lambda mid=mid: self._ack(mid),
                _nack=lambda requeue, mid=mid: self._nack(mid, requeue),
            )
