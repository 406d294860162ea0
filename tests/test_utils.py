from __future__ import annotations

from pathlib import Path

import pytest

from digital_people.utils.files import (
    copy_file,
    copy_file_with_retries,
    file_size,
    remove_if_exists,
    sanitize_filename,
    wait_file_readable,
)
from digital_people.utils.retry import call_with_retries


def test_sanitize_filename() -> None:
    assert sanitize_filename("../../etc/passwd") == "passwd"
    assert sanitize_filename("a..b.wav") == "a_b.wav"
    assert sanitize_filename("主播 01:v2?.wav") == "主播 01-v2-.wav"
    assert sanitize_filename("dir\\evil.mp4") == "evil.mp4"
    assert sanitize_filename("") == "file"


def test_copy_file_replaces_atomically(tmp_path: Path) -> None:
    src = tmp_path / "src.bin"
    src.write_bytes(b"new")
    dst = tmp_path / "out" / "dst.bin"
    dst.parent.mkdir()
    dst.write_bytes(b"old-content")
    copy_file(src, dst)
    assert dst.read_bytes() == b"new"
    assert [p.name for p in dst.parent.iterdir()] == ["dst.bin"]


def test_copy_file_missing_source_leaves_no_partial(tmp_path: Path) -> None:
    with pytest.raises(FileNotFoundError):
        copy_file(tmp_path / "missing", tmp_path / "dst")
    assert list(tmp_path.iterdir()) == []


def test_remove_if_exists_and_file_size(tmp_path: Path) -> None:
    p = tmp_path / "f"
    assert file_size(p) is None
    p.write_bytes(b"abc")
    assert file_size(p) == 3
    assert file_size(tmp_path) is None
    assert remove_if_exists(p) is True
    assert remove_if_exists(p) is False


def test_wait_file_readable_retries_then_raises(tmp_path: Path) -> None:
    sleeps: list[float] = []
    with pytest.raises(FileNotFoundError):
        wait_file_readable(tmp_path / "late.wav", retries=4, delay_s=0.2, sleep=sleeps.append)
    assert sleeps == [0.2, 0.2, 0.2]


def test_wait_file_readable_sees_late_file(tmp_path: Path) -> None:
    p = tmp_path / "late.wav"

    def _sleep(_dt: float) -> None:
        p.write_bytes(b"x")

    wait_file_readable(p, retries=3, delay_s=0.1, sleep=_sleep)


def test_copy_file_with_retries(tmp_path: Path) -> None:
    src = tmp_path / "a.wav"
    src.write_bytes(b"data")
    dst = tmp_path / "w" / "a.wav"
    copy_file_with_retries(src, dst, retries=2, delay_s=0.0, sleep=lambda _dt: None)
    assert dst.read_bytes() == b"data"


def test_call_with_retries_waits_a_fixed_delay() -> None:
    calls = {"n": 0}
    delays: list[float] = []

    def fn():
        calls["n"] += 1
        if calls["n"] < 3:
            raise OSError("busy")
        return "ok"

    assert call_with_retries(fn, attempts=5, delay_s=5.0, retry_on=(OSError,), sleep=delays.append) == "ok"
    assert calls["n"] == 3
    assert delays == [5.0, 5.0]


def test_call_with_retries_only_retries_listed_errors() -> None:
    calls = {"n": 0}

    def fn():
        calls["n"] += 1
        raise KeyError("nope")

    with pytest.raises(KeyError):
        call_with_retries(fn, attempts=3, delay_s=0.0, retry_on=(OSError,), sleep=lambda _dt: None)
    assert calls["n"] == 1


def test_call_with_retries_gives_up_after_attempts() -> None:
    seen: list[tuple[int, float]] = []
    calls = {"n": 0}

    def fn():
        calls["n"] += 1
        raise OSError("still busy")

    with pytest.raises(OSError, match="still busy"):
        call_with_retries(
            fn,
            attempts=3,
            delay_s=5.0,
            retry_on=(OSError,),
            on_retry=lambda attempt, delay, _ex: seen.append((attempt, delay)),
            sleep=lambda _dt: None,
        )
    assert calls["n"] == 3
    assert seen == [(1, 5.0), (2, 5.0)]


def test_call_with_retries_single_attempt_does_not_sleep() -> None:
    delays: list[float] = []

    def fn():
        raise OSError("gone")

    with pytest.raises(OSError):
        call_with_retries(fn, attempts=1, delay_s=1.0, retry_on=(OSError,), sleep=delays.append)
    assert delays == []
