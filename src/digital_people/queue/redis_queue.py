from __future__ import annotations

import socket
from collections.abc import Callable, Iterator
from dataclasses import dataclass
from typing import Any

import redis
from redis.exceptions import RedisError, ResponseError

from digital_people.errors import QueueError
from digital_people.jobs.models import QueuedTask
from digital_people.utils.log import logger

from .interfaces import Delivery, QueueStatus, WorkQueue


def _consumer_id() -> str:
    return f"worker-{socket.gethostname()}"


@dataclass(frozen=True, slots=True)
class RedisQueueConfig:
    stream: str
    group: str
    consumer: str
    block_ms: int
    claim_idle_ms: int


class RedisStreamQueue(WorkQueue):
    """
    Durable work queue on a Redis stream with one consumer group.

    - publish: XADD <prefix>_tasks payload=<json>
    - consume: XREADGROUP COUNT 1; nothing new is read until the current
      delivery has been settled.
    - ack: XACK + XDEL. Unacked entries stay in the group's pending list and
      are redelivered: first our own (after a restart), then any entry idle
      longer than claim_idle_ms (XAUTOCLAIM).
    """

    def __init__(
        self,
        *,
        redis_url: str,
        prefix: str,
        password: str | None = None,
        block_ms: int = 5000,
        claim_idle_s: float = 1800.0,
        consumer: str | None = None,
        client: Any = None,
    ) -> None:
        p = str(prefix or "digital_people").strip().strip(":")
        self._redis_url = str(redis_url or "").strip()
        self._password = password
        self._cfg = RedisQueueConfig(
            stream=f"{p}_tasks",
            group=f"{p}_workers",
            consumer=consumer or _consumer_id(),
            block_ms=max(100, int(block_ms)),
            claim_idle_ms=max(1000, int(float(claim_idle_s) * 1000)),
        )
        self._client = client
        self._healthy = False

    @property
    def config(self) -> RedisQueueConfig:
        return self._cfg

    def _redis(self):
        if self._client is None:
            self._client = redis.Redis.from_url(
                self._redis_url,
                password=self._password,
                decode_responses=True,
                socket_timeout=max(5.0, self._cfg.block_ms / 1000.0 + 5.0),
                socket_connect_timeout=5.0,
            )
        return self._client

    def status(self) -> QueueStatus:
        return QueueStatus(
            mode="redis",
            ok=self._healthy,
            detail=f"stream={self._cfg.stream} group={self._cfg.group} consumer={self._cfg.consumer}",
        )

    def connect(self) -> None:
        r = self._redis()
        try:
            r.ping()
            r.xgroup_create(name=self._cfg.stream, groupname=self._cfg.group, id="0", mkstream=True)
            logger.info("queue_group_created", stream=self._cfg.stream, group=self._cfg.group)
        except ResponseError as ex:
            # group already exists
            if "BUSYGROUP" not in str(ex):
                self._healthy = False
                raise QueueError(f"queue setup failed: {ex}") from ex
        except RedisError as ex:
            self._healthy = False
            raise QueueError(f"queue unavailable: {ex}") from ex
        self._healthy = True

    def close(self) -> None:
        client, self._client = self._client, None
        self._healthy = False
        if client is not None:
            client.close()

    def publish(self, task: QueuedTask) -> None:
        try:
            self._redis().xadd(self._cfg.stream, {"payload": task.encode()})
        except RedisError as ex:
            raise QueueError(f"publish failed: {ex}") from ex

    def _settle(self, message_id: str, *, republish: str | None = None) -> None:
        try:
            pipe = self._redis().pipeline(transaction=True)
            if republish is not None:
                pipe.xadd(self._cfg.stream, {"payload": republish})
            pipe.xack(self._cfg.stream, self._cfg.group, message_id)
            pipe.xdel(self._cfg.stream, message_id)
            pipe.execute()
        except RedisError as ex:
            raise QueueError(f"ack failed for {message_id}: {ex}") from ex

    def _delivery(self, message_id: str, fields: dict[str, Any] | None) -> Delivery:
        raw = str((fields or {}).get("payload") or "")
        task: QueuedTask | None
        try:
            task = QueuedTask.decode(raw)
        except ValueError as ex:
            logger.warning("queue_message_invalid", message_id=message_id, error=str(ex))
            task = None

        def _nack(requeue: bool) -> None:
            self._settle(message_id, republish=raw if requeue else None)

        return Delivery(
            message_id=message_id,
            raw=raw,
            task=task,
            _ack=lambda: self._settle(message_id),
            _nack=_nack,
        )

    def _read(self, start_id: str) -> list[tuple[str, dict[str, Any]]]:
        res = self._redis().xreadgroup(
            groupname=self._cfg.group,
            consumername=self._cfg.consumer,
            streams={self._cfg.stream: start_id},
            count=1,
            block=None if start_id != ">" else self._cfg.block_ms,
        )
        out: list[tuple[str, dict[str, Any]]] = []
        for _stream, entries in res or []:
            for mid, fields in entries or []:
                out.append((str(mid), fields))
        return out

    def _claim_stale(self) -> list[tuple[str, dict[str, Any]]]:
        res = self._redis().xautoclaim(
            self._cfg.stream,
            self._cfg.group,
            self._cfg.consumer,
            min_idle_time=self._cfg.claim_idle_ms,
            start_id="0-0",
            count=1,
        )
        entries = res[1] if isinstance(res, (list, tuple)) and len(res) > 1 else []
        # XAUTOCLAIM reports trimmed entries with no fields
        return [(str(mid), fields) for mid, fields in entries if fields]

    def _next(self) -> tuple[str, dict[str, Any]] | None:
        # 1) our own pending entries (delivered before a crash, never acked)
        own = self._read("0")
        if own:
            mid, fields = own[0]
            logger.info("queue_redeliver_pending", message_id=mid)
            return mid, fields
        # 2) stale entries abandoned by another consumer name
        claimed = self._claim_stale()
        if claimed:
            logger.info("queue_claimed_stale", message_id=claimed[0][0])
            return claimed[0]
        # 3) new work
        fresh = self._read(">")
        return fresh[0] if fresh else None

    def consume(self, *, stop: Callable[[], bool]) -> Iterator[Delivery]:
        while not stop():
            try:
                item = self._next()
            except RedisError as ex:
                self._healthy = False
                raise QueueError(f"consume failed: {ex}") from ex
            if item is None:
                continue
            mid, fields = item
            yield self._delivery(mid, fields)
