from __future__ import annotations

import threading
import time
from collections.abc import Callable

from digital_people.errors import QueueError
from digital_people.jobs.models import STEP_DEQUEUED, QueuedTask, TaskState
from digital_people.jobs.store import StatusCache
from digital_people.ops import metrics
from digital_people.pipeline.executor import StageExecutor
from digital_people.queue.interfaces import Delivery, WorkQueue
from digital_people.utils.log import logger, task_context


class ConsumerLoop:
    """
    Single consumer thread: take one delivery, run it to completion, ack,
    then ask for the next.

    - initial connect failure raises from `start()` (fatal at startup)
    - later queue errors are logged and retried after a fixed delay
    - nothing raised while processing a task escapes the loop
    """

    def __init__(
        self,
        *,
        queue: WorkQueue,
        cache: StatusCache,
        executor: StageExecutor,
        reconnect_delay_s: float = 5.0,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._queue = queue
        self._cache = cache
        self._executor = executor
        self._reconnect_delay_s = float(reconnect_delay_s)
        self._sleep = sleep
        self._clock = clock
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None
        self.processed = 0

    def stopping(self) -> bool:
        return self._stop.is_set()

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._queue.connect()
        self._stop.clear()
        self._thread = threading.Thread(target=self.run_forever, name="digital-people-consumer", daemon=True)
        self._thread.start()
        logger.info("consumer_started", queue=self._queue.status().detail)

    def stop(self, *, timeout_s: float | None = None) -> None:
        self._stop.set()
        t = self._thread
        if t is not None:
            t.join(timeout=timeout_s)
        self._queue.close()
        logger.info("consumer_stopped", processed=self.processed)

    def join(self, timeout_s: float | None = None) -> None:
        if self._thread is not None:
            self._thread.join(timeout=timeout_s)

    def _begin_attempt(self, task: QueuedTask) -> bool:
        """Mark the task processing. False when an earlier delivery already finished it."""
        status = self._cache.get_or_create(task.task_id)
        if status.status.terminal:
            logger.warning("task_redelivered_after_finish", status=status.status.value)
            return False
        status.status = TaskState.PROCESSING
        status.advance(STEP_DEQUEUED, 5)
        if not status.start_time:
            status.start_time = int(self._clock())
        status.audio_path = status.audio_path or task.audio_path
        status.video_path = status.video_path or task.video_path
        if status.request is None:
            status.request = task.request
        self._cache.persist(status)
        return True

    def handle(self, delivery: Delivery) -> None:
        task = delivery.task
        if task is None:
            logger.warning("queue_message_dropped", message_id=delivery.message_id, raw=delivery.raw[:200])
            delivery.nack(requeue=False)
            return
        with task_context(task.task_id):
            try:
                if self._begin_attempt(task):
                    logger.info("task_dequeued", audio=task.audio_path, video=task.video_path, use_tts=task.request.use_tts)
                    status = self._executor.execute(task)
                    logger.info("task_processed", status=status.status.value, error=status.error or None)
            except Exception as ex:
                logger.exception("task_handler_error", error=str(ex))
            finally:
                self._cache.forget(task.task_id)
            delivery.ack()
            self.processed += 1

    def run_once(self) -> bool:
        """Process at most one delivery (tests / `worker --once`). True if one was handled."""
        for delivery in self._queue.consume(stop=self.stopping):
            self.handle(delivery)
            return True
        return False

    def run_forever(self) -> None:
        while not self._stop.is_set():
            try:
                for delivery in self._queue.consume(stop=self.stopping):
                    self.handle(delivery)
                    if self._stop.is_set():
                        break
            except QueueError as ex:
                if self._stop.is_set():
                    break
                metrics.queue_reconnects.inc()
                logger.warning("queue_connection_lost", error=str(ex), retry_in_s=self._reconnect_delay_s)
                self._sleep(self._reconnect_delay_s)
                self._reconnect()

    def _reconnect(self) -> None:
        while not self._stop.is_set():
            try:
                self._queue.close()
                self._queue.connect()
                logger.info("queue_reconnected")
                return
            except QueueError as ex:
                metrics.queue_reconnects.inc()
                logger.warning("queue_reconnect_failed", error=str(ex), retry_in_s=self._reconnect_delay_s)
                self._sleep(self._reconnect_delay_s)
