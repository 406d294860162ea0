from __future__ import annotations

from functools import lru_cache
from pathlib import Path

from pydantic import Field, SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Single source of truth for worker configuration.

    - Loads from env (and `.env` if present).
    - Host directories default beneath DIGITAL_PEOPLE_DIR (the shared mount).
    """

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    # filesystem layout
    work_dir: Path | None = Field(default=None, alias="APP_WORKDIR")
    digital_people_dir: Path = Field(default=Path("/mnt/windows-digitalpeople"), alias="DIGITAL_PEOPLE_DIR")
    host_voice_dir: Path | None = Field(default=None, alias="HOST_VOICE_DIR")
    host_video_dir: Path | None = Field(default=None, alias="HOST_VIDEO_DIR")
    host_result_dir: Path | None = Field(default=None, alias="HOST_RESULT_DIR")
    win_company_dir: Path | None = Field(default=None, alias="WIN_COMPANY_DIR")
    audio_template_dir: Path | None = Field(default=None, alias="AUDIO_TEMPLATE_DIR")
    video_template_dir: Path | None = Field(default=None, alias="VIDEO_TEMPLATE_DIR")

    # external services
    tts_base_url: str = Field(default="http://heygem-tts:8080", alias="TTS_BASE_URL")
    video_base_url: str = Field(default="http://heygem-gen-video:8383", alias="VIDEO_BASE_URL")
    gen_video_container: str = Field(default="heygem-gen-video", alias="GEN_VIDEO_CONTAINER")
    container_data_root: str = Field(default="/code/data", alias="GEN_VIDEO_CONTAINER_DATA_ROOT")
    tts_lang: str = Field(default="zh", alias="TTS_LANG")
    default_speaker: str = Field(default="demo001", alias="DEFAULT_SPEAKER")
    http_timeout_s: float = Field(default=60.0, alias="HTTP_TIMEOUT_SECONDS")
    tts_timeout_s: float = Field(default=600.0, alias="TTS_TIMEOUT_SECONDS")

    # queue / status store
    redis_url: str | None = Field(default=None, alias="REDIS_URL")
    redis_password: SecretStr | None = Field(default=None, alias="REDIS_PASSWORD")
    queue_prefix: str = Field(default="digital_people", alias="QUEUE_PREFIX")
    queue_reconnect_s: float = Field(default=5.0, alias="QUEUE_RECONNECT_SECONDS")
    queue_claim_idle_s: float = Field(default=1800.0, alias="QUEUE_CLAIM_IDLE_SECONDS")
    queue_block_ms: int = Field(default=5000, alias="QUEUE_BLOCK_MS")

    # completion polling
    video_timeout_minutes: float = Field(default=15.0, alias="AUTO_VIDEO_TIMEOUT_MINUTES")
    poll_interval_s: float = Field(default=30.0, alias="POLL_INTERVAL_SECONDS")
    stability_interval_s: float = Field(default=3.0, alias="STABILITY_INTERVAL_SECONDS")
    stability_samples: int = Field(default=3, alias="STABILITY_SAMPLES")
    stability_max_samples: int = Field(default=5, alias="STABILITY_MAX_SAMPLES")
    result_copy_attempts: int = Field(default=3, alias="RESULT_COPY_ATTEMPTS")
    result_copy_backoff_s: float = Field(default=5.0, alias="RESULT_COPY_BACKOFF_SECONDS")

    # tools
    ffmpeg_bin: str = Field(default="ffmpeg", alias="FFMPEG_BIN")
    docker_bin: str = Field(default="docker", alias="DOCKER_BIN")
    ffmpeg_timeout_s: int = Field(default=600, alias="FFMPEG_TIMEOUT_SECONDS")
    container_timeout_s: int = Field(default=30, alias="CONTAINER_TIMEOUT_SECONDS")

    # logging
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")
    log_dir: Path = Field(default=Path.cwd() / "logs", alias="LOG_DIR")
    log_max_bytes: int = Field(default=10 * 1024 * 1024, alias="LOG_MAX_BYTES")
    log_backup_count: int = Field(default=5, alias="LOG_BACKUP_COUNT")

    @property
    def workdir(self) -> Path:
        return self.work_dir or self.digital_people_dir / "workdir"

    @property
    def voice_dir(self) -> Path:
        return self.host_voice_dir or self.digital_people_dir / "voice" / "data"

    @property
    def video_dir(self) -> Path:
        return self.host_video_dir or self.digital_people_dir / "face2face"

    @property
    def result_dir(self) -> Path:
        return self.host_result_dir or self.video_dir / "result"

    @property
    def company_dir(self) -> Path:
        return self.win_company_dir or self.digital_people_dir

    @property
    def audio_templates(self) -> Path:
        return self.audio_template_dir or self.voice_dir / "_templates"

    @property
    def video_templates(self) -> Path:
        return self.video_template_dir or self.video_dir / "_templates"

    @property
    def video_timeout_s(self) -> float:
        return float(self.video_timeout_minutes) * 60.0

    def redis_password_value(self) -> str | None:
        if self.redis_password is None:
            return None
        return self.redis_password.get_secret_value() or None


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
