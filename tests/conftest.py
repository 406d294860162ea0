from __future__ import annotations

import pytest

from digital_people.config import get_settings


@pytest.fixture(autouse=True)
def _test_env(tmp_path_factory: pytest.TempPathFactory, monkeypatch: pytest.MonkeyPatch) -> None:
    root = tmp_path_factory.mktemp("dp_test")
    for sub in ("workdir", "voice", "face2face", "result", "company", "logs"):
        (root / sub).mkdir(parents=True, exist_ok=True)

    monkeypatch.setenv("DIGITAL_PEOPLE_DIR", str(root))
    monkeypatch.setenv("APP_WORKDIR", str(root / "workdir"))
    monkeypatch.setenv("HOST_VOICE_DIR", str(root / "voice"))
    monkeypatch.setenv("HOST_VIDEO_DIR", str(root / "face2face"))
    monkeypatch.setenv("HOST_RESULT_DIR", str(root / "result"))
    monkeypatch.setenv("WIN_COMPANY_DIR", str(root / "company"))
    monkeypatch.setenv("LOG_DIR", str(root / "logs"))
    monkeypatch.setenv("TTS_BASE_URL", "http://tts.test")
    monkeypatch.setenv("VIDEO_BASE_URL", "http://video.test")
    monkeypatch.setenv("GEN_VIDEO_CONTAINER_DATA_ROOT", "/code/data")
    monkeypatch.delenv("REDIS_URL", raising=False)
    monkeypatch.delenv("AUTO_VIDEO_TIMEOUT_MINUTES", raising=False)
    get_settings.cache_clear()
