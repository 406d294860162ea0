from __future__ import annotations

import posixpath
import time
from collections.abc import Callable
from pathlib import Path

from digital_people.clients.container import ContainerError, ContainerOps
from digital_people.clients.video import result_artifact_name
from digital_people.config import Settings
from digital_people.jobs.models import ERROR_TIMEOUT, TaskStatus
from digital_people.jobs.store import StatusCache
from digital_people.ops import metrics
from digital_people.utils.files import copy_file, file_size, remove_if_exists
from digital_people.utils.log import logger
from digital_people.utils.retry import call_with_retries

STEP_WAITING = "等待视频合成完成"
STEP_DOWNLOAD = "下载最终视频"
ERROR_COPY = "视频拷贝到结果目录失败，已重试3次"


class _SizeMismatch(RuntimeError):
    pass


def sample_stable_size(
    read_size: Callable[[], int | None],
    *,
    samples: int = 3,
    max_samples: int = 5,
    interval_s: float = 3.0,
    sleep: Callable[[float], None] = time.sleep,
) -> int | None:
    """
    Sample a growing file's size until the last `samples` readings agree.

    Returns the stable size, or None when the artifact vanished, shrank to
    nothing, or was still changing after `max_samples` readings.
    """
    need = max(2, int(samples))
    history: list[int] = []
    for i in range(max(need, int(max_samples))):
        if i:
            sleep(float(interval_s))
        size = read_size()
        if size is None:
            return None
        history.append(int(size))
        tail = history[-need:]
        if len(tail) == need and len(set(tail)) == 1 and tail[0] > 0:
            return tail[0]
    logger.info("artifact_size_unstable", samples=history)
    return None


class CompletionPoller:
    """
    Waits for the synthesis service's `<code>-r.mp4` and copies it into the
    result area as `<task_id>.mp4`.

    Each tick prefers the shared mount; whenever the mount does not yield a
    stable artifact, the container is asked on the same tick.
    `await_result` always leaves the status terminal.
    """

    def __init__(
        self,
        *,
        settings: Settings,
        cache: StatusCache,
        container: ContainerOps,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._s = settings
        self._cache = cache
        self._container = container
        self._sleep = sleep
        self._clock = clock

    def host_temp_path(self, code: str) -> Path:
        return self._s.video_dir / "temp" / result_artifact_name(code)

    def container_temp_path(self, code: str) -> str:
        return posixpath.join(self._s.container_data_root, "temp", result_artifact_name(code))

    def _now(self) -> int:
        return int(self._clock())

    def _stable(self, read_size: Callable[[], int | None]) -> int | None:
        return sample_stable_size(
            read_size,
            samples=int(self._s.stability_samples),
            max_samples=int(self._s.stability_max_samples),
            interval_s=float(self._s.stability_interval_s),
            sleep=self._sleep,
        )

    def _materialize(self, copy: Callable[[Path], None], *, expected: int, dst: Path) -> None:
        def _attempt() -> None:
            copy(dst)
            got = file_size(dst)
            if got != expected:
                raise _SizeMismatch(f"copied size {got} != expected {expected}")

        def _log_retry(attempt: int, delay: float, ex: BaseException) -> None:
            logger.warning("result_copy_retry", attempt=attempt, delay_s=delay, error=str(ex), dst=str(dst))

        call_with_retries(
            _attempt,
            attempts=int(self._s.result_copy_attempts),
            delay_s=float(self._s.result_copy_backoff_s),
            retry_on=(OSError, ContainerError, _SizeMismatch),
            on_retry=_log_retry,
            sleep=self._sleep,
        )

    def _complete(self, status: TaskStatus, result: Path, *, copy_to_company: bool) -> None:
        if copy_to_company:
            mirror = self._s.company_dir / result.name
            try:
                copy_file(result, mirror)
                logger.info("result_mirrored", dst=str(mirror))
            except OSError as ex:
                logger.warning("result_mirror_failed", dst=str(mirror), error=str(ex))
        status.mark_completed(result.name, str(result), now=self._now())
        self._cache.persist(status)
        logger.info(
            "task_completed",
            task_id=status.task_id,
            result=str(result),
            total_duration_s=status.total_duration,
        )

    def _check_mount(self, status: TaskStatus, host_temp: Path, result: Path, *, copy_to_company: bool) -> bool | None:
        """True: completed. False: visible but not stable yet. None: not visible."""
        if file_size(host_temp) is None:
            return None
        size = self._stable(lambda: file_size(host_temp))
        if size is None:
            logger.info("artifact_not_stable", path=str(host_temp))
            return False
        self._materialize(lambda dst: copy_file(host_temp, dst), expected=size, dst=result)
        try:
            remove_if_exists(host_temp)
        except OSError as ex:
            logger.warning("artifact_scratch_remove_failed", path=str(host_temp), error=str(ex))
        self._complete(status, result, copy_to_company=copy_to_company)
        return True

    def _check_container(self, status: TaskStatus, inside: str, result: Path, *, copy_to_company: bool) -> bool:
        try:
            if not self._container.exists(inside):
                return False
            size = self._stable(lambda: self._container.size(inside))
        except ContainerError as ex:
            logger.warning("container_check_failed", path=inside, error=str(ex))
            return False
        if size is None:
            return False
        status.advance(STEP_DOWNLOAD, 95)
        self._cache.persist(status)
        self._materialize(lambda dst: self._container.copy_out(inside, dst), expected=size, dst=result)
        self._complete(status, result, copy_to_company=copy_to_company)
        return True

    def await_result(self, status: TaskStatus, *, code: str, copy_to_company: bool = False) -> TaskStatus:
        max_wait = float(self._s.video_timeout_s)
        interval = max(0.01, float(self._s.poll_interval_s))
        host_temp = self.host_temp_path(code)
        inside = self.container_temp_path(code)
        result = self._s.result_dir / f"{status.task_id}.mp4"

        started = self._clock()
        checks = 0
        while True:
            elapsed = self._clock() - started
            if elapsed >= max_wait:
                break
            self._sleep(min(interval, max_wait - elapsed))
            checks += 1
            minutes = int(checks * interval // 60)
            status.advance(
                f"{STEP_WAITING} (已检查 {checks} 次，约 {minutes} 分钟，最多等待约 {max_wait / 60:.1f} 分钟)"
            )
            self._cache.persist(status)

            try:
                done = self._check_mount(status, host_temp, result, copy_to_company=copy_to_company)
                if not done:
                    done = self._check_container(status, inside, result, copy_to_company=copy_to_company)
            except (OSError, ContainerError, _SizeMismatch) as ex:
                logger.error("result_copy_failed", dst=str(result), error=str(ex))
                metrics.poll_checks.labels(outcome="copy_failed").inc()
                status.mark_failed(ERROR_COPY, now=self._now())
                self._cache.persist(status)
                return status

            if done:
                metrics.poll_checks.labels(outcome="completed").inc()
                return status
            metrics.poll_checks.labels(outcome="pending").inc()
            if status.progress < 90:
                status.advance(status.current_step, status.progress + 2)
                self._cache.persist(status)

        metrics.poll_checks.labels(outcome="timeout").inc()
        status.advance(ERROR_TIMEOUT, 100)
        status.mark_failed(ERROR_TIMEOUT, now=self._now())
        self._cache.persist(status)
        logger.warning(
            "task_synthesis_timeout",
            task_id=status.task_id,
            checks=checks,
            max_wait_min=round(max_wait / 60, 1),
            total_duration_s=status.total_duration,
        )
        return status
