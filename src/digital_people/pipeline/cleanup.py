from __future__ import annotations

from collections.abc import Callable
from pathlib import Path

from digital_people.utils.files import remove_if_exists
from digital_people.utils.log import logger


class CleanupManager:
    """
    Scratch paths and cleanup callbacks collected while one task runs.

    `run()` executes callbacks first (each guarded), then removes every
    registered path; missing files are fine. It runs at most once.
    """

    def __init__(self, task_id: str = "") -> None:
        self.task_id = task_id
        self._paths: list[Path] = []
        self._callbacks: list[tuple[str, Callable[[], None]]] = []
        self._done = False

    @property
    def paths(self) -> list[Path]:
        return list(self._paths)

    @property
    def done(self) -> bool:
        return self._done

    def register_path(self, path: Path | str) -> Path:
        p = Path(path)
        if p not in self._paths:
            self._paths.append(p)
        return p

    def register_callback(self, fn: Callable[[], None], *, name: str = "") -> None:
        self._callbacks.append((name or getattr(fn, "__name__", "callback"), fn))

    def run(self) -> None:
        if self._done:
            return
        self._done = True
        for name, fn in self._callbacks:
            try:
                fn()
            except Exception as ex:
                logger.warning("cleanup_callback_failed", task_id=self.task_id, callback=name, error=str(ex))
        removed = 0
        for p in self._paths:
            try:
                if remove_if_exists(p):
                    removed += 1
            except OSError as ex:
                logger.warning("cleanup_remove_failed", task_id=self.task_id, path=str(p), error=str(ex))
        logger.info(
            "cleanup_done",
            task_id=self.task_id,
            callbacks=len(self._callbacks),
            paths=len(self._paths),
            removed=removed,
        )

    def __enter__(self) -> "CleanupManager":
        return self

    def __exit__(self, *exc: object) -> None:
        self.run()
