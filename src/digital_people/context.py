from __future__ import annotations

import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

import redis
from redis.exceptions import RedisError

from digital_people.clients.container import ContainerOps
from digital_people.clients.tts import TTSClient
from digital_people.clients.video import VideoClient
from digital_people.config import Settings, get_settings
from digital_people.errors import StoreUnavailable
from digital_people.jobs.service import TaskService
from digital_people.jobs.store import MemoryStatusStore, RedisStatusStore, StatusCache, StatusStore
from digital_people.pipeline.executor import StageExecutor, Transcoder
from digital_people.pipeline.poller import CompletionPoller
from digital_people.pipeline.worker import ConsumerLoop
from digital_people.queue import build_work_queue
from digital_people.queue.interfaces import WorkQueue
from digital_people.templates import TemplateCatalog
from digital_people.utils.files import ensure_dir
from digital_people.utils.log import logger


def redis_client(settings: Settings) -> Any:
    url = str(settings.redis_url or "").strip()
    if not url:
        return None
    return redis.Redis.from_url(
        url,
        password=settings.redis_password_value(),
        decode_responses=True,
        socket_timeout=5.0,
        socket_connect_timeout=5.0,
    )


@dataclass(slots=True)
class AppContext:
    """
    Everything a worker or producer process shares, built once at startup.

    Handles are read-only after construction; components receive them
    explicitly instead of reaching for module globals.
    """

    settings: Settings
    cache: StatusCache
    queue: WorkQueue
    templates: TemplateCatalog
    tts: TTSClient
    video: VideoClient
    container: ContainerOps
    poller: CompletionPoller
    executor: StageExecutor
    service: TaskService
    redis: Any = None

    def consumer(
        self,
        *,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.time,
    ) -> ConsumerLoop:
        return ConsumerLoop(
            queue=self.queue,
            cache=self.cache,
            executor=self.executor,
            reconnect_delay_s=float(self.settings.queue_reconnect_s),
            sleep=sleep,
            clock=clock,
        )

    def check_store(self) -> None:
        """Ping the status store's Redis; a store that is down at startup is fatal."""
        if self.redis is None:
            return
        try:
            self.redis.ping()
        except RedisError as ex:
            raise StoreUnavailable(f"status store unavailable: {ex}") from ex

    def ensure_dirs(self) -> None:
        s = self.settings
        for d in (s.workdir, s.voice_dir, s.video_dir, s.result_dir, s.audio_templates, s.video_templates):
            try:
                ensure_dir(d)
            except OSError as ex:
                logger.warning("dir_unavailable", path=str(d), error=str(ex))

    def close(self) -> None:
        self.queue.close()
        if self.redis is not None:
            self.redis.close()


def build_context(
    settings: Settings | None = None,
    *,
    queue: WorkQueue | None = None,
    redis_conn: Any = None,
    store: StatusStore | None = None,
    container: ContainerOps | None = None,
    transcoder: Transcoder | None = None,
    sleep: Callable[[float], None] = time.sleep,
    clock: Callable[[], float] = time.time,
) -> AppContext:
    s = settings or get_settings()
    r = redis_conn if redis_conn is not None else redis_client(s)
    if store is None:
        store = RedisStatusStore(r, prefix=s.queue_prefix) if r is not None else MemoryStatusStore()
    cache = StatusCache(store)
    q = queue or build_work_queue(s)
    templates = TemplateCatalog(s, redis_client=r)
    tts = TTSClient(s.tts_base_url, timeout_s=s.http_timeout_s, synth_timeout_s=s.tts_timeout_s)
    video = VideoClient(s.video_base_url, container_data_root=s.container_data_root, timeout_s=s.http_timeout_s)
    container = container or ContainerOps(
        s.gen_video_container, docker_bin=s.docker_bin, timeout_s=s.container_timeout_s
    )
    poller = CompletionPoller(settings=s, cache=cache, container=container, sleep=sleep, clock=clock)
    executor = StageExecutor(
        settings=s,
        cache=cache,
        templates=templates,
        tts=tts,
        video=video,
        container=container,
        poller=poller,
        transcoder=transcoder,
        sleep=sleep,
        clock=clock,
    )
    service = TaskService(cache=cache, queue=q, templates=templates, clock=clock)
    return AppContext(
        settings=s,
        cache=cache,
        queue=q,
        templates=templates,
        tts=tts,
        video=video,
        container=container,
        poller=poller,
        executor=executor,
        service=service,
        redis=r,
    )
