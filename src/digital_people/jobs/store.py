from __future__ import annotations

import threading
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Protocol

from digital_people.jobs.models import TaskStatus
from digital_people.utils.log import logger


class StatusStore(Protocol):
    """
    Authoritative TaskStatus storage.

    - `set` overwrites the whole record (no merge).
    - the index orders task ids by start time.
    """

    def get(self, task_id: str) -> TaskStatus | None: ...
    def set(self, status: TaskStatus) -> None: ...
    def add_to_index(self, task_id: str, start_time: int) -> None: ...
    def list_index_desc(self) -> list[str]: ...


class RedisStatusStore:
    def __init__(self, client, *, prefix: str) -> None:
        self._r = client
        self._prefix = str(prefix or "digital_people").strip().strip(":")

    def _key(self, task_id: str) -> str:
        return f"{self._prefix}:task:{task_id}"

    @property
    def index_key(self) -> str:
        return f"{self._prefix}:task_ids"

    def get(self, task_id: str) -> TaskStatus | None:
        raw = self._r.get(self._key(task_id))
        if not raw:
            return None
        return TaskStatus.from_json(raw)

    def set(self, status: TaskStatus) -> None:
        self._r.set(self._key(status.task_id), status.to_json())

    def add_to_index(self, task_id: str, start_time: int) -> None:
        self._r.zadd(self.index_key, {task_id: float(start_time)})

    def list_index_desc(self) -> list[str]:
        return [str(x) for x in self._r.zrevrange(self.index_key, 0, -1)]


class MemoryStatusStore:
    """In-process store used when no Redis URL is configured (and in tests)."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._records: dict[str, str] = {}
        self._index: dict[str, int] = {}

    def get(self, task_id: str) -> TaskStatus | None:
        with self._lock:
            raw = self._records.get(task_id)
        return TaskStatus.from_json(raw) if raw else None

    def set(self, status: TaskStatus) -> None:
        with self._lock:
            self._records[status.task_id] = status.to_json()

    def add_to_index(self, task_id: str, start_time: int) -> None:
        with self._lock:
            self._index[task_id] = int(start_time)

    def list_index_desc(self) -> list[str]:
        with self._lock:
            items = list(self._index.items())
        items.sort(key=lambda kv: (kv[1], kv[0]), reverse=True)
        return [k for k, _ in items]


class _RWLock:
    """Many readers or one writer."""

    def __init__(self) -> None:
        self._cond = threading.Condition(threading.Lock())
        self._readers = 0
        self._writer = False

    @contextmanager
    def read(self) -> Iterator[None]:
        with self._cond:
            while self._writer:
                self._cond.wait()
            self._readers += 1
        try:
            yield
        finally:
            with self._cond:
                self._readers -= 1
                if self._readers == 0:
                    self._cond.notify_all()

    @contextmanager
    def write(self) -> Iterator[None]:
        with self._cond:
            while self._writer or self._readers:
                self._cond.wait()
            self._writer = True
        try:
            yield
        finally:
            with self._cond:
                self._writer = False
                self._cond.notify_all()


class StatusCache:
    """
    Per-worker cache of live TaskStatus objects in front of a StatusStore.

    The store stays the source of truth: `persist` writes through, and
    `get_or_create` consults the store before fabricating a record so a
    restarted worker keeps reporting against the same one.
    """

    def __init__(self, store: StatusStore) -> None:
        self.store = store
        self._lock = _RWLock()
        self._items: dict[str, TaskStatus] = {}

    def _load(self, task_id: str) -> TaskStatus | None:
        try:
            return self.store.get(task_id)
        except Exception as ex:
            logger.warning("status_store_get_failed", task_id=task_id, error=str(ex))
            return None

    def get(self, task_id: str) -> TaskStatus | None:
        with self._lock.read():
            st = self._items.get(task_id)
        if st is not None:
            return st
        return self._load(task_id)

    def get_or_create(self, task_id: str) -> TaskStatus:
        with self._lock.read():
            st = self._items.get(task_id)
        if st is not None:
            return st
        loaded = self._load(task_id)
        with self._lock.write():
            st = self._items.get(task_id)
            if st is None:
                st = loaded if loaded is not None else TaskStatus(task_id=task_id)
                self._items[task_id] = st
        return st

    def forget(self, task_id: str) -> None:
        with self._lock.write():
            self._items.pop(task_id, None)

    def persist(self, status: TaskStatus) -> bool:
        """Write through to the store. Failures are logged, never raised."""
        try:
            self.store.set(status)
            return True
        except Exception as ex:
            logger.warning(
                "status_persist_failed",
                task_id=status.task_id,
                status=status.status.value,
                error=str(ex),
            )
            return False

    def index(self, task_id: str, start_time: int) -> bool:
        try:
            self.store.add_to_index(task_id, start_time)
            return True
        except Exception as ex:
            logger.warning("status_index_failed", task_id=task_id, error=str(ex))
            return False

    def list(self) -> list[TaskStatus]:
        out: list[TaskStatus] = []
        for tid in self.store.list_index_desc():
            st = self.get(tid)
            if st is not None:
                out.append(st)
        return out
