from __future__ import annotations

import subprocess
from contextlib import suppress
from pathlib import Path

from digital_people.config import get_settings
from digital_people.utils.files import ensure_dir

_FORBIDDEN_FLAGS = {
    "-filter_script",
    "-filter_script:v",
    "-filter_script:a",
    "-stats_file",
}


class FFmpegError(RuntimeError):
    pass


def _validate_args(argv: list[str]) -> None:
    for a in argv:
        if a in _FORBIDDEN_FLAGS:
            raise FFmpegError(f"Forbidden ffmpeg flag: {a}")


def _tail(s: str, n: int = 4000) -> str:
    s = str(s or "")
    if len(s) <= n:
        return s
    return s[-n:]


def run_ffmpeg(
    argv: list[str],
    *,
    timeout_s: int | None = None,
    retries: int = 0,
) -> subprocess.CompletedProcess[str]:
    _validate_args(argv)
    last_ex: Exception | None = None
    for attempt in range(int(retries) + 1):
        try:
            return subprocess.run(
                argv,
                check=True,
                capture_output=True,
                text=True,
                timeout=timeout_s,
            )
        except subprocess.TimeoutExpired as ex:
            last_ex = ex
            if attempt >= int(retries):
                raise FFmpegError(f"ffmpeg timed out after {timeout_s}s") from ex
        except subprocess.CalledProcessError as ex:
            last_ex = ex
            if attempt >= int(retries):
                stderr = ""
                with suppress(Exception):
                    if ex.stderr:
                        if isinstance(ex.stderr, bytes):
                            stderr = ex.stderr.decode("utf-8", errors="replace")
                        else:
                            stderr = str(ex.stderr)
                raise FFmpegError(
                    f"ffmpeg failed (exit={ex.returncode}) | {_tail(stderr, 1500)}"
                ) from ex
        except OSError as ex:
            last_ex = ex
            if attempt >= int(retries):
                raise FFmpegError(f"ffmpeg failed: {ex} (argv={argv})") from ex
    raise FFmpegError(f"ffmpeg failed: {last_ex} (argv={argv})")


def ensure_ffmpeg(*, timeout_s: int = 10) -> str:
    """Return the first line of `ffmpeg -version`; raise FFmpegError if unusable."""
    s = get_settings()
    p = run_ffmpeg([str(s.ffmpeg_bin), "-version"], timeout_s=timeout_s)
    out = (p.stdout or "").strip().splitlines()
    return out[0] if out else ""


def normalize_audio(src: Path, dst: Path, *, sample_rate: int = 16000, timeout_s: int | None = None) -> Path:
    """Transcode to mono PCM s16le WAV at sample_rate."""
    s = get_settings()
    ensure_dir(Path(dst).parent)
    run_ffmpeg(
        [
            str(s.ffmpeg_bin),
            "-y",
            "-i",
            str(src),
            "-ar",
            str(int(sample_rate)),
            "-ac",
            "1",
            "-c:a",
            "pcm_s16le",
            str(dst),
        ],
        timeout_s=timeout_s or int(s.ffmpeg_timeout_s),
    )
    return Path(dst)


def strip_audio(src: Path, dst: Path, *, timeout_s: int | None = None) -> Path:
    """Drop audio streams; the video stream is copied, not re-encoded."""
    s = get_settings()
    ensure_dir(Path(dst).parent)
    run_ffmpeg(
        [str(s.ffmpeg_bin), "-y", "-i", str(src), "-an", "-c:v", "copy", str(dst)],
        timeout_s=timeout_s or int(s.ffmpeg_timeout_s),
    )
    return Path(dst)
