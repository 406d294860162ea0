from __future__ import annotations

import time
from collections.abc import Callable
from pathlib import Path

from digital_people.errors import QueueError, RetryRejected, TaskNotFound, TemplateNotFound
from digital_people.jobs.models import (
    STEP_QUEUED,
    STEP_UPLOAD,
    QueuedTask,
    TaskRequest,
    TaskState,
    TaskStatus,
    new_task_id,
)
from digital_people.jobs.store import StatusCache
from digital_people.ops import metrics
from digital_people.queue.interfaces import WorkQueue
from digital_people.templates import TemplateCatalog, TemplateKind
from digital_people.utils.log import logger

RETRY_ONLY_FAILED = "仅支持重试失败的任务"


class TaskService:
    """Producer-side operations: submit, query and retry."""

    def __init__(
        self,
        *,
        cache: StatusCache,
        queue: WorkQueue,
        templates: TemplateCatalog,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._cache = cache
        self._queue = queue
        self._templates = templates
        self._clock = clock

    def _resolve(self, kind: TemplateKind, path: str | None, template_name: str) -> str:
        if path:
            return str(Path(path))
        if not template_name:
            raise TemplateNotFound(f"missing {kind.value} file or template")
        return str(self._templates.resolve(kind, template_name))

    def submit(
        self,
        request: TaskRequest,
        *,
        audio_path: str | None = None,
        video_path: str | None = None,
    ) -> TaskStatus:
        audio = self._resolve(TemplateKind.AUDIO, audio_path, request.audio_template_name)
        video = self._resolve(TemplateKind.VIDEO, video_path, request.video_template_name)

        task_id = new_task_id()
        status = TaskStatus(
            task_id=task_id,
            status=TaskState.PROCESSING,
            current_step=STEP_UPLOAD,
            progress=0,
            start_time=int(self._clock()),
            task_name=request.task_name,
            request=request,
            audio_path=audio,
            video_path=video,
        )
        self._cache.index(task_id, status.start_time)
        self._cache.persist(status)

        status.status = TaskState.QUEUED
        status.current_step = STEP_QUEUED
        self._cache.persist(status)
        try:
            self._queue.publish(QueuedTask(task_id=task_id, audio_path=audio, video_path=video, request=request))
        except QueueError as ex:
            status.mark_failed(f"任务入队失败: {ex}", now=int(self._clock()))
            self._cache.persist(status)
            logger.error("task_enqueue_failed", task_id=task_id, error=str(ex))
            raise
        metrics.tasks_queued.inc()
        logger.info("task_enqueued", task_id=task_id, audio=audio, video=video, use_tts=request.use_tts)
        return status

    def get(self, task_id: str) -> TaskStatus:
        st = self._cache.get(task_id)
        if st is None:
            raise TaskNotFound(f"task not found: {task_id}")
        return st

    def list(self) -> list[TaskStatus]:
        return self._cache.list()

    def retry(self, task_id: str) -> TaskStatus:
        """
        Re-queue a failed task under the same id.

        Only `failed` tasks with a request snapshot and both source files still
        on disk qualify.
        """
        status = self.get(task_id)
        if status.status is not TaskState.FAILED:
            raise RetryRejected(RETRY_ONLY_FAILED)
        if not status.audio_path or not status.video_path or status.request is None:
            raise RetryRejected("任务缺少原始请求或素材路径，无法重试")
        for label, p in (("音频", status.audio_path), ("视频", status.video_path)):
            if not Path(p).is_file():
                raise RetryRejected(f"{label}文件不存在: {p}")

        status.retry_count += 1
        status.status = TaskState.QUEUED
        status.current_step = STEP_QUEUED
        status.progress = 0
        status.start_time = int(self._clock())
        status.end_time = 0
        status.total_duration = 0
        status.error = ""
        status.result_video = ""
        status.result_path = ""

        self._cache.index(task_id, status.start_time)
        self._cache.persist(status)
        try:
            self._queue.publish(
                QueuedTask(
                    task_id=task_id,
                    audio_path=status.audio_path,
                    video_path=status.video_path,
                    request=status.request,
                )
            )
        except QueueError as ex:
            status.mark_failed(f"任务重新入队失败: {ex}", now=int(self._clock()))
            self._cache.persist(status)
            logger.error("task_requeue_failed", task_id=task_id, error=str(ex))
            raise
        metrics.tasks_retried.inc()
        logger.info("task_requeued", task_id=task_id, retry_count=status.retry_count)
        return status
