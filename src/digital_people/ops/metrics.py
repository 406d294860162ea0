from __future__ import annotations

import time
from collections.abc import Callable, Iterator
from contextlib import contextmanager, suppress

from prometheus_client import CollectorRegistry, Counter, Histogram, generate_latest

REGISTRY = CollectorRegistry()

# Latency buckets (seconds); synthesis waits run to many minutes.
PIPELINE_BUCKETS = (
    0.25,
    0.5,
    1.0,
    2.5,
    5.0,
    10.0,
    30.0,
    60.0,
    120.0,
    300.0,
    600.0,
    900.0,
    1200.0,
    1800.0,
)

tasks_queued = Counter("digital_people_tasks_queued_total", "Tasks published to the work queue", registry=REGISTRY)
tasks_retried = Counter("digital_people_tasks_retried_total", "Failed tasks re-queued", registry=REGISTRY)
tasks_finished = Counter(
    "digital_people_tasks_finished_total",
    "Tasks finished by final state",
    labelnames=("state",),
    registry=REGISTRY,
)
stage_errors = Counter(
    "digital_people_stage_errors_total", "Task stage errors", labelnames=("stage",), registry=REGISTRY
)
stage_seconds = Histogram(
    "digital_people_stage_seconds",
    "Task stage latency (seconds)",
    labelnames=("stage",),
    registry=REGISTRY,
    buckets=PIPELINE_BUCKETS,
)
poll_checks = Counter(
    "digital_people_poll_checks_total", "Completion poller checks", labelnames=("outcome",), registry=REGISTRY
)
queue_reconnects = Counter(
    "digital_people_queue_reconnects_total", "Consumer loop reconnect attempts", registry=REGISTRY
)


@contextmanager
def time_hist(h: Histogram) -> Iterator[Callable[[], float]]:
    """
    Context manager to time a block and observe into a histogram.
    Usage:
        with time_hist(stage_seconds.labels(stage="tts")) as elapsed:
            ...
        dt = elapsed()
    """
    t0 = time.perf_counter()
    dt: float | None = None

    def elapsed() -> float:
        return float(dt or 0.0)

    try:
        yield elapsed
    finally:
        dt = max(0.0, time.perf_counter() - t0)
        with suppress(Exception):
            h.observe(dt)


def render_metrics() -> str:
    return generate_latest(REGISTRY).decode("utf-8")
