from __future__ import annotations

import json

import pytest

from digital_people.jobs.models import (
    STEP_DONE,
    QueuedTask,
    TaskRequest,
    TaskState,
    TaskStatus,
    new_task_id,
)


def test_status_json_keeps_request_snapshot() -> None:
    st = TaskStatus(
        task_id="auto-1-1",
        status=TaskState.QUEUED,
        current_step="等待排队执行",
        start_time=100,
        request=TaskRequest(speaker="anchor01", text="你好", use_tts=True, audio_template_name="warm"),
        audio_path="/a.wav",
        video_path="/v.mp4",
    )
    raw = st.to_json()
    assert "你好" in raw  # not ascii-escaped
    back = TaskStatus.from_json(raw)
    assert back == st
    assert back.status is TaskState.QUEUED


def test_status_from_dict_tolerates_partial_records() -> None:
    st = TaskStatus.from_dict({"task_id": "t1", "status": "failed", "progress": None, "extra": 1})
    assert st.status is TaskState.FAILED
    assert st.progress == 0
    assert st.request is None
    assert st.error == ""


def test_advance_never_lowers_progress_and_caps_at_100() -> None:
    st = TaskStatus(task_id="t")
    st.advance("a", 30)
    st.advance("b", 20)
    assert (st.current_step, st.progress) == ("b", 30)
    st.advance("c")
    assert st.progress == 30
    st.advance("d", 250)
    assert st.progress == 100


def test_finish_sets_end_once_and_never_before_start() -> None:
    st = TaskStatus(task_id="t", start_time=1000)
    st.finish(now=990)
    assert st.end_time == 1000
    assert st.total_duration == 0
    st.finish(now=2000)
    assert st.end_time == 1000


def test_mark_failed_clears_result_and_keeps_progress() -> None:
    st = TaskStatus(task_id="t", start_time=10, progress=70, result_video="x.mp4", result_path="/r/x.mp4")
    st.mark_failed("视频合成提交失败: boom", now=25)
    assert st.status is TaskState.FAILED
    assert st.progress == 70
    assert st.result_video == "" and st.result_path == ""
    assert st.total_duration == 15


def test_mark_completed() -> None:
    st = TaskStatus(task_id="t", start_time=10, progress=82, error="stale")
    st.mark_completed("t.mp4", "/r/t.mp4", now=40)
    assert st.status is TaskState.COMPLETED
    assert st.current_step == STEP_DONE
    assert st.progress == 100
    assert st.error == ""
    assert st.end_time == 40 and st.total_duration == 30


def test_terminal_states() -> None:
    assert TaskState.COMPLETED.terminal and TaskState.FAILED.terminal
    assert not TaskState.QUEUED.terminal and not TaskState.PROCESSING.terminal


def test_task_ids_are_unique_and_prefixed() -> None:
    ids = {new_task_id() for _ in range(200)}
    assert len(ids) == 200
    assert all(i.startswith("auto-") for i in ids)


def test_queued_task_wire_format() -> None:
    t = QueuedTask(task_id="auto-9-1", audio_path="/a.wav", video_path="/v.mp4", request=TaskRequest(text="hi"))
    d = json.loads(t.encode())
    assert set(d) == {"task_id", "audio_path", "video_path", "req"}
    assert d["req"]["use_tts"] is True
    assert QueuedTask.decode(t.encode()) == t


@pytest.mark.parametrize("raw", ["", "not json", "[1,2]", '{"audio_path": "/a.wav"}', '{"task_id": "  "}'])
def test_queued_task_rejects_bad_payloads(raw: str) -> None:
    with pytest.raises(ValueError):
        QueuedTask.decode(raw)
