from __future__ import annotations

from pathlib import Path

import pytest

from digital_people.jobs.models import TaskRequest
from digital_people.ops import metrics
from tests._helpers.fakes import FakeClock, FakeHttp, artifact_writer, install_http, make_app, write_media


def _value(name: str, **labels: str) -> float:
    v = metrics.REGISTRY.get_sample_value(name, labels or None)
    return float(v or 0.0)


def test_pipeline_counters_and_histograms(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    http = FakeHttp()
    http.routes["/easy/submit"] = artifact_writer(b"v" * 64)
    install_http(monkeypatch, http)
    clock = FakeClock()
    app = make_app(clock=clock)
    audio, video = write_media(tmp_path)

    queued0 = _value("digital_people_tasks_queued_total")
    done0 = _value("digital_people_tasks_finished_total", state="completed")
    audio0 = _value("digital_people_stage_seconds_count", stage="audio")

    app.service.submit(TaskRequest(use_tts=False), audio_path=str(audio), video_path=str(video))
    app.consumer(sleep=clock.sleep, clock=clock.now).run_once()

    assert _value("digital_people_tasks_queued_total") == queued0 + 1
    assert _value("digital_people_tasks_finished_total", state="completed") == done0 + 1
    assert _value("digital_people_stage_seconds_count", stage="audio") == audio0 + 1

    body = metrics.render_metrics()
    assert "digital_people_stage_seconds_bucket" in body
    assert "digital_people_poll_checks_total" in body
