from __future__ import annotations

import time
from collections.abc import Callable
from pathlib import Path
from typing import Protocol

from digital_people.clients.container import ContainerOps
from digital_people.clients.tts import PreprocessRequest, SynthesizeRequest, TTSClient, describe_body
from digital_people.clients.video import VideoClient
from digital_people.config import Settings
from digital_people.errors import StageError, TemplateNotFound, UpstreamError
from digital_people.jobs.models import QueuedTask, TaskState, TaskStatus
from digital_people.jobs.store import StatusCache
from digital_people.ops import metrics
from digital_people.pipeline.cleanup import CleanupManager
from digital_people.pipeline.poller import STEP_WAITING, CompletionPoller
from digital_people.templates import TemplateCatalog, TemplateKind
from digital_people.utils import ffmpeg_safe
from digital_people.utils.ffmpeg_safe import FFmpegError
from digital_people.utils.files import copy_file, copy_file_with_retries, ensure_dir, sanitize_filename, wait_file_readable
from digital_people.utils.log import logger


class Transcoder(Protocol):
    def normalize_audio(self, src: Path, dst: Path) -> Path: ...
    def strip_audio(self, src: Path, dst: Path) -> Path: ...


class FFmpegTranscoder:
    def normalize_audio(self, src: Path, dst: Path) -> Path:
        return ffmpeg_safe.normalize_audio(src, dst)

    def strip_audio(self, src: Path, dst: Path) -> Path:
        return ffmpeg_safe.strip_audio(src, dst)


def task_slug(task_id: str) -> str:
    return f"{sanitize_filename(task_id)}_temp"


class StageExecutor:
    """
    Runs one task through the fixed stage chain:

        audio (10) -> video (20) -> [tts preprocess (30) -> tts synth (50)]
        -> submit (70) -> await completion (80..100)

    Stages raise StageError; `execute` is the single boundary that turns any
    error into a failed status. Cleanup always runs before the final persist.
    """

    def __init__(
        self,
        *,
        settings: Settings,
        cache: StatusCache,
        templates: TemplateCatalog,
        tts: TTSClient,
        video: VideoClient,
        container: ContainerOps,
        poller: CompletionPoller,
        transcoder: Transcoder | None = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._s = settings
        self._cache = cache
        self._templates = templates
        self._tts = tts
        self._video = video
        self._container = container
        self._poller = poller
        self._transcoder = transcoder or FFmpegTranscoder()
        self._sleep = sleep
        self._clock = clock

    # --- helpers ---
    def _enter(self, status: TaskStatus, step: str, progress: int) -> None:
        status.advance(step, progress)
        self._cache.persist(status)
        logger.info("task_stage", step=step, progress=status.progress)

    def _resolve_source(
        self,
        status: TaskStatus,
        *,
        stage: str,
        label: str,
        kind: TemplateKind,
        path: str,
        template_name: str,
    ) -> Path:
        p = Path(path) if path else None
        if p is not None and p.is_file():
            return p
        if template_name:
            # shared storage can lag; the template index is authoritative
            logger.warning("task_source_missing_reload_template", kind=kind.value, path=path, name=template_name)
            try:
                fresh = self._templates.resolve(kind, template_name)
            except TemplateNotFound as ex:
                raise StageError(stage, f"{label}模板缺失且恢复失败: {ex}") from ex
            if kind is TemplateKind.AUDIO:
                status.audio_path = str(fresh)
            else:
                status.video_path = str(fresh)
            self._cache.persist(status)
            return fresh
        raise StageError(stage, f"{label}文件不可用: {path or 'empty path'}")

    # --- stages ---
    def _prepare_audio(self, task: QueuedTask, status: TaskStatus, cleanup: CleanupManager, slug: str) -> str:
        self._enter(status, "处理音频文件", 10)
        src = self._resolve_source(
            status,
            stage="audio",
            label="音频",
            kind=TemplateKind.AUDIO,
            path=status.audio_path or task.audio_path,
            template_name=task.request.audio_template_name,
        )
        try:
            wait_file_readable(src, retries=5, delay_s=0.2, sleep=self._sleep)
        except OSError as ex:
            raise StageError("audio", f"音频文件不可读: {ex}") from ex

        work = ensure_dir(self._s.workdir / "audio")
        work_src = cleanup.register_path(work / f"{slug}_src{src.suffix.lower() or '.wav'}")
        try:
            copy_file_with_retries(src, work_src, retries=5, delay_s=0.2, sleep=self._sleep)
        except OSError as ex:
            raise StageError("audio", f"音频拷贝到工作目录失败: {ex}") from ex

        name = f"{slug}_norm.wav"
        norm = cleanup.register_path(work / name)
        try:
            self._transcoder.normalize_audio(work_src, norm)
        except FFmpegError as ex:
            raise StageError("audio", f"音频格式转换失败: {ex}") from ex

        voice_dst = cleanup.register_path(self._s.voice_dir / name)
        try:
            copy_file(norm, voice_dst)
        except OSError as ex:
            raise StageError("audio", f"音频拷贝失败: {ex}") from ex
        video_dst = cleanup.register_path(self._s.video_dir / name)
        try:
            copy_file(norm, video_dst)
        except OSError as ex:
            raise StageError("audio", f"音频拷贝到视频目录失败: {ex}") from ex
        return name

    def _prepare_video(self, task: QueuedTask, status: TaskStatus, cleanup: CleanupManager, slug: str) -> str:
        self._enter(status, "处理视频文件", 20)
        src = self._resolve_source(
            status,
            stage="video",
            label="视频",
            kind=TemplateKind.VIDEO,
            path=status.video_path or task.video_path,
            template_name=task.request.video_template_name,
        )
        name = f"{slug}_silent.mp4"
        silent = cleanup.register_path(ensure_dir(self._s.workdir / "video") / name)
        try:
            self._transcoder.strip_audio(src, silent)
        except FFmpegError as ex:
            raise StageError("video", f"视频静音失败: {ex}") from ex
        dst = cleanup.register_path(self._s.video_dir / name)
        try:
            copy_file(silent, dst)
        except OSError as ex:
            raise StageError("video", f"视频拷贝失败: {ex}") from ex
        return name

    def _synthesize_voice(self, task: QueuedTask, status: TaskStatus, cleanup: CleanupManager, ref_name: str) -> str:
        self._enter(status, "TTS预处理", 30)
        with metrics.time_hist(metrics.stage_seconds.labels(stage="tts_preprocess")):
            try:
                resp, pre = self._tts.preprocess(PreprocessRequest(reference_audio=ref_name, lang=self._s.tts_lang))
            except UpstreamError as ex:
                raise StageError("tts_preprocess", f"TTS预处理失败: {ex}") from ex
        if not resp.ok:
            raise StageError("tts_preprocess", f"TTS预处理失败: {describe_body(resp)}")
        if pre is None:
            raise StageError("tts_preprocess", f"TTS预处理解析失败: {resp.text()}")
        if not pre.ok:
            raise StageError("tts_preprocess", f"TTS预处理失败: code={pre.code}, msg={pre.msg}")

        self._enter(status, "TTS语音合成", 50)
        speaker = (task.request.speaker or "").strip() or self._s.default_speaker
        req = SynthesizeRequest(
            speaker=speaker,
            text=task.request.text,
            reference_audio=pre.asr_format_audio_url,
            reference_text=pre.reference_audio_text,
        )
        with metrics.time_hist(metrics.stage_seconds.labels(stage="tts_synthesize")):
            try:
                resp = self._tts.synthesize(req)
            except UpstreamError as ex:
                raise StageError("tts_synthesize", f"TTS合成失败: {ex}") from ex
        if not resp.ok:
            raise StageError("tts_synthesize", f"TTS合成失败: {describe_body(resp)}")
        if not resp.body:
            raise StageError("tts_synthesize", "TTS合成失败: empty audio body")

        name = sanitize_filename(f"{speaker}-{status.task_id}.wav")
        voice_out = cleanup.register_path(self._s.voice_dir / name)
        try:
            ensure_dir(voice_out.parent)
            voice_out.write_bytes(resp.body)
        except OSError as ex:
            raise StageError("tts_synthesize", f"TTS音频保存失败: {ex}") from ex
        video_out = cleanup.register_path(self._s.video_dir / name)
        try:
            copy_file(voice_out, video_out)
        except OSError as ex:
            raise StageError("tts_synthesize", f"TTS音频拷贝失败: {ex}") from ex
        logger.info("tts_audio_saved", path=str(voice_out), bytes=len(resp.body))
        return name

    def _submit(self, status: TaskStatus, cleanup: CleanupManager, *, audio_name: str, video_name: str) -> str:
        self._enter(status, "提交视频合成任务", 70)
        code = status.task_id
        req = self._video.build_submit(audio_filename=audio_name, video_filename=video_name, code=code)

        cleanup.register_path(self._poller.host_temp_path(code))
        inside = self._poller.container_temp_path(code)
        cleanup.register_callback(lambda: self._container.remove(inside), name="container_rm_result")

        try:
            resp = self._video.submit(req)
        except UpstreamError as ex:
            raise StageError("submit", f"视频合成提交失败: {ex}") from ex
        if not resp.ok:
            raise StageError("submit", f"视频合成提交失败: {resp.text()}")
        logger.info("synthesis_submitted", code=code, audio_url=req.audio_url, video_url=req.video_url)
        return code

    def _run_stages(self, task: QueuedTask, status: TaskStatus, cleanup: CleanupManager) -> None:
        slug = task_slug(task.task_id)
        with metrics.time_hist(metrics.stage_seconds.labels(stage="audio")):
            norm_name = self._prepare_audio(task, status, cleanup, slug)
        with metrics.time_hist(metrics.stage_seconds.labels(stage="video")):
            video_name = self._prepare_video(task, status, cleanup, slug)

        audio_for_video = norm_name
        if task.request.use_tts:
            audio_for_video = self._synthesize_voice(task, status, cleanup, norm_name)

        code = self._submit(status, cleanup, audio_name=audio_for_video, video_name=video_name)

        self._enter(status, STEP_WAITING, 80)
        with metrics.time_hist(metrics.stage_seconds.labels(stage="await")):
            self._poller.await_result(status, code=code, copy_to_company=task.request.copy_to_company)

    def execute(self, task: QueuedTask) -> TaskStatus:
        status = self._cache.get_or_create(task.task_id)
        if not status.start_time:
            status.start_time = int(self._clock())
        if status.request is None:
            status.request = task.request
        status.audio_path = status.audio_path or task.audio_path
        status.video_path = status.video_path or task.video_path

        cleanup = CleanupManager(task.task_id)
        try:
            self._run_stages(task, status, cleanup)
        except StageError as ex:
            metrics.stage_errors.labels(stage=ex.stage).inc()
            logger.warning("task_stage_failed", stage=ex.stage, error=ex.message)
            status.mark_failed(ex.message, now=int(self._clock()))
        except Exception as ex:
            # last-resort boundary: one task must never take down the consumer
            metrics.stage_errors.labels(stage="unexpected").inc()
            logger.exception("task_crashed", error=str(ex))
            status.mark_failed(f"处理异常: {ex}", now=int(self._clock()))
        finally:
            cleanup.run()
            if status.status is TaskState.FAILED and not status.end_time:
                status.finish(now=int(self._clock()))
            self._cache.persist(status)
            metrics.tasks_finished.labels(state=status.status.value).inc()
        return status
