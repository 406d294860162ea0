from __future__ import annotations

import zipfile
from pathlib import Path

from digital_people.jobs.archive import archive_results
from digital_people.jobs.models import TaskState, TaskStatus


def test_archive_includes_completed_results_only(tmp_path: Path) -> None:
    ok = tmp_path / "auto-1-1.mp4"
    ok.write_bytes(b"video")
    statuses = [
        TaskStatus(task_id="auto-1-1", status=TaskState.COMPLETED, result_video=ok.name, result_path=str(ok)),
        TaskStatus(task_id="auto-2-1", status=TaskState.FAILED, error="视频合成超时"),
        TaskStatus(
            task_id="auto-3-1",
            status=TaskState.COMPLETED,
            result_video="auto-3-1.mp4",
            result_path=str(tmp_path / "gone.mp4"),
        ),
    ]

    report = archive_results(statuses, tmp_path / "out" / "results.zip")

    assert report.added == ["auto-1-1.mp4"]
    assert report.skipped == {"auto-2-1": "status=failed", "auto-3-1": "result file missing"}
    with zipfile.ZipFile(report.path) as zf:
        assert zf.namelist() == ["auto-1-1.mp4"]
        assert zf.read("auto-1-1.mp4") == b"video"
