from __future__ import annotations

from pathlib import Path

import pytest

from digital_people.errors import QueueError, RetryRejected, TaskNotFound, TemplateNotFound
from digital_people.jobs.models import STEP_QUEUED, TaskRequest, TaskState
from digital_people.jobs.service import RETRY_ONLY_FAILED
from tests._helpers.fakes import FakeClock, FakeHttp, RecordingStore, install_http, make_app, write_media


class _DeadQueue:
    def publish(self, task) -> None:
        raise QueueError("broker unreachable")


def _failed_task(app, clock: FakeClock, tmp_path: Path) -> str:
    audio, video = write_media(tmp_path)
    st = app.service.submit(TaskRequest(use_tts=False), audio_path=str(audio), video_path=str(video))
    # nothing answers /easy/submit -> 404 -> failed
    app.consumer(sleep=clock.sleep, clock=clock.now).run_once()
    assert app.cache.get(st.task_id).status is TaskState.FAILED
    return st.task_id


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture(autouse=True)
def _http(monkeypatch: pytest.MonkeyPatch) -> FakeHttp:
    h = FakeHttp()
    install_http(monkeypatch, h)
    return h


def test_submit_records_upload_then_queued(tmp_path: Path, clock: FakeClock) -> None:
    store = RecordingStore()
    app = make_app(clock=clock, store=store)
    audio, video = write_media(tmp_path)

    st = app.service.submit(TaskRequest(text="hi", speaker="s1"), audio_path=str(audio), video_path=str(video))

    assert [(h.status, h.current_step) for h in store.history] == [
        (TaskState.PROCESSING, "上传文件"),
        (TaskState.QUEUED, STEP_QUEUED),
    ]
    assert st.start_time == int(clock.now())
    assert store.list_index_desc() == [st.task_id]
    assert app.queue.pending() == 1


def test_submit_resolves_templates(tmp_path: Path, clock: FakeClock) -> None:
    app = make_app(clock=clock)
    s = app.settings
    s.audio_templates.mkdir(parents=True, exist_ok=True)
    s.video_templates.mkdir(parents=True, exist_ok=True)
    (s.audio_templates / "warm.wav").write_bytes(b"a")
    (s.video_templates / "studio.mp4").write_bytes(b"v")

    st = app.service.submit(TaskRequest(use_tts=False, audio_template_name="warm", video_template_name="studio"))
    assert st.audio_path == str(s.audio_templates / "warm.wav")
    assert st.video_path == str(s.video_templates / "studio.mp4")

    with pytest.raises(TemplateNotFound):
        app.service.submit(TaskRequest(use_tts=False, audio_template_name="nope", video_template_name="studio"))


def test_submit_publish_failure_marks_failed(tmp_path: Path, clock: FakeClock) -> None:
    app = make_app(clock=clock)
    app.service._queue = _DeadQueue()
    audio, video = write_media(tmp_path)
    with pytest.raises(QueueError):
        app.service.submit(TaskRequest(use_tts=False), audio_path=str(audio), video_path=str(video))
    [st] = app.service.list()
    assert st.status is TaskState.FAILED
    assert st.error.startswith("任务入队失败")


def test_get_unknown_task(clock: FakeClock) -> None:
    app = make_app(clock=clock)
    with pytest.raises(TaskNotFound):
        app.service.get("auto-0-0")


def test_retry_only_failed(tmp_path: Path, clock: FakeClock) -> None:
    app = make_app(clock=clock)
    audio, video = write_media(tmp_path)
    st = app.service.submit(TaskRequest(use_tts=False), audio_path=str(audio), video_path=str(video))
    with pytest.raises(RetryRejected) as ei:
        app.service.retry(st.task_id)
    assert str(ei.value) == RETRY_ONLY_FAILED


def test_retry_requeues_failed_task_under_same_id(tmp_path: Path, clock: FakeClock) -> None:
    app = make_app(clock=clock)
    tid = _failed_task(app, clock, tmp_path)
    clock.sleep(60)

    st = app.service.retry(tid)

    assert st.task_id == tid
    assert st.status is TaskState.QUEUED
    assert st.current_step == STEP_QUEUED
    assert st.retry_count == 1
    assert (st.progress, st.error, st.end_time, st.total_duration) == (0, "", 0, 0)
    assert st.start_time == int(clock.now())
    assert app.queue.pending() == 1
    assert app.cache.store.get(tid).status is TaskState.QUEUED


def test_retry_rejected_when_source_file_gone(tmp_path: Path, clock: FakeClock) -> None:
    app = make_app(clock=clock)
    tid = _failed_task(app, clock, tmp_path)
    (tmp_path / "face.mp4").unlink()
    with pytest.raises(RetryRejected) as ei:
        app.service.retry(tid)
    assert str(ei.value).startswith("视频文件不存在")
    assert app.cache.get(tid).status is TaskState.FAILED


def test_retry_publish_failure_marks_failed_again(tmp_path: Path, clock: FakeClock) -> None:
    app = make_app(clock=clock)
    tid = _failed_task(app, clock, tmp_path)
    app.service._queue = _DeadQueue()
    with pytest.raises(QueueError):
        app.service.retry(tid)
    st = app.cache.get(tid)
    assert st.status is TaskState.FAILED
    assert st.error.startswith("任务重新入队失败")
    assert st.retry_count == 1
