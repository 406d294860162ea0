from __future__ import annotations

from collections.abc import Callable, Iterator
from dataclasses import dataclass
from typing import Protocol

from digital_people.jobs.models import QueuedTask


@dataclass(frozen=True, slots=True)
class QueueStatus:
    mode: str  # "redis" | "local"
    ok: bool
    detail: str


@dataclass(slots=True)
class Delivery:
    """
    One message handed to the consumer.

    `task` is None when the payload could not be decoded; such deliveries
    must be nacked without requeue.
    """

    message_id: str
    raw: str
    task: QueuedTask | None
    _ack: Callable[[], None]
    _nack: Callable[[bool], None]
    settled: bool = False

    def ack(self) -> None:
        if self.settled:
            return
        self._ack()
        self.settled = True

    def nack(self, *, requeue: bool = False) -> None:
        if self.settled:
            return
        self._nack(bool(requeue))
        self.settled = True


class WorkQueue(Protocol):
    """
    Durable at-least-once FIFO between submission and the single consumer.

    - `publish` raises QueueError when the message could not be stored.
    - `consume` yields one Delivery at a time; the next one is fetched only
      after the caller resumes the iterator, so prefetch is 1.
    - a Delivery left unsettled is redelivered (after a crash or restart).
    """

    def status(self) -> QueueStatus: ...
    def connect(self) -> None: ...
    def close(self) -> None: ...
    def publish(self, task: QueuedTask) -> None: ...
    def consume(self, *, stop: Callable[[], bool]) -> Iterator[Delivery]: ...
