from __future__ import annotations

import json
from pathlib import Path

import pytest
from click.testing import CliRunner
from redis import exceptions as redis_exc

from digital_people import cli as cli_mod
from digital_people.errors import StoreUnavailable
from digital_people.jobs.models import TaskState
from tests._helpers.fakes import FakeClock, FakeHttp, artifact_writer, install_http, make_app, write_media


@pytest.fixture()
def app(monkeypatch: pytest.MonkeyPatch):
    http = FakeHttp()
    http.routes["/easy/submit"] = artifact_writer(b"final-video")
    install_http(monkeypatch, http)
    a = make_app(clock=FakeClock())
    monkeypatch.setattr(cli_mod, "_ctx", lambda: a)
    return a


def test_submit_worker_status_archive(app, tmp_path: Path) -> None:
    runner = CliRunner()
    audio, video = write_media(tmp_path)

    r = runner.invoke(cli_mod.cli, ["submit", "--audio", str(audio), "--video", str(video), "--no-tts"])
    assert r.exit_code == 0, r.output
    task_id = json.loads(r.output)["task_id"]

    r = runner.invoke(cli_mod.cli, ["worker", "--once", "--skip-ffmpeg-check"])
    assert r.exit_code == 0, r.output

    r = runner.invoke(cli_mod.cli, ["status", task_id])
    assert r.exit_code == 0, r.output
    body = json.loads(r.output)
    assert body["status"] == TaskState.COMPLETED.value
    assert body["result_video"] == f"{task_id}.mp4"

    r = runner.invoke(cli_mod.cli, ["list"])
    assert r.exit_code == 0
    assert r.output.startswith(f"{task_id}\tcompleted\t100%")

    out = tmp_path / "results.zip"
    r = runner.invoke(cli_mod.cli, ["archive", task_id, "auto-missing", "--out", str(out)])
    assert r.exit_code == 0, r.output
    report = json.loads(r.output)
    assert report["added"] == [f"{task_id}.mp4"]
    assert report["skipped"] == {"auto-missing": "unknown task"}
    assert out.is_file()


def test_submit_requires_text_for_tts(app, tmp_path: Path) -> None:
    audio, video = write_media(tmp_path)
    r = CliRunner().invoke(cli_mod.cli, ["submit", "--audio", str(audio), "--video", str(video)])
    assert r.exit_code != 0
    assert "--text is required" in r.output


def test_status_and_retry_errors(app) -> None:
    runner = CliRunner()
    r = runner.invoke(cli_mod.cli, ["status", "auto-0-0"])
    assert r.exit_code == 1
    assert "task not found" in r.output

    r = runner.invoke(cli_mod.cli, ["retry", "auto-0-0"])
    assert r.exit_code == 1


def test_metrics_command_prints_exposition(app) -> None:
    r = CliRunner().invoke(cli_mod.cli, ["metrics"])
    assert r.exit_code == 0
    assert "digital_people_tasks_queued_total" in r.output
    assert "digital_people_stage_seconds_bucket" in r.output or "digital_people_stage_seconds" in r.output


class _DownRedis:
    def __init__(self) -> None:
        self.pings = 0

    def ping(self) -> bool:
        self.pings += 1
        raise redis_exc.ConnectionError("Connection refused")

    def close(self) -> None:
        return None


def test_check_store_is_noop_without_redis(app) -> None:
    assert app.redis is None
    app.check_store()


def test_check_store_raises_when_redis_is_down(app) -> None:
    app.redis = _DownRedis()
    with pytest.raises(StoreUnavailable, match="Connection refused"):
        app.check_store()


def test_worker_exits_when_status_store_is_down(app) -> None:
    app.redis = down = _DownRedis()
    r = CliRunner().invoke(cli_mod.cli, ["worker", "--once", "--skip-ffmpeg-check"])
    assert r.exit_code == 1
    assert "status store unavailable" in r.output
    assert down.pings == 1
