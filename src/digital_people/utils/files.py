from __future__ import annotations

import os
import shutil
import unicodedata
from collections.abc import Callable
from pathlib import Path

from digital_people.utils.retry import call_with_retries


def ensure_dir(path: Path) -> Path:
    path.mkdir(parents=True, exist_ok=True)
    return path


def _allowed(ch: str) -> bool:
    if ch.isascii():
        return ch.isalnum() or ch in "._- "
    # CJK ideographs (task names and templates are often Chinese)
    return unicodedata.name(ch, "").startswith("CJK UNIFIED IDEOGRAPH")


def sanitize_filename(name: str) -> str:
    """Basename only; '..' collapsed; anything outside [A-Za-z0-9._- CJK] becomes '-'."""
    base = os.path.basename(str(name or "").replace("\\", "/"))
    base = base.replace("..", "_")
    out = "".join(ch if _allowed(ch) else "-" for ch in base)
    return out or "file"


def copy_file(src: Path, dst: Path) -> None:
    """Copy via a sibling temp file, then rename into place."""
    src = Path(src)
    dst = Path(dst)
    ensure_dir(dst.parent)
    tmp = dst.with_name(f".{dst.name}.part")
    try:
        shutil.copyfile(src, tmp)
        os.replace(tmp, dst)
    except BaseException:
        remove_if_exists(tmp)
        raise


def remove_if_exists(path: Path | str) -> bool:
    try:
        Path(path).unlink()
        return True
    except FileNotFoundError:
        return False


def wait_file_readable(
    path: Path,
    *,
    retries: int = 5,
    delay_s: float = 0.2,
    sleep: Callable[[float], None] | None = None,
) -> None:
    """
    Wait for a file on shared storage to become openable.

    Raises the last OSError when it never does.
    """
    p = Path(path)
    if not str(path):
        raise FileNotFoundError("empty path")

    def _check() -> None:
        with p.open("rb"):
            pass

    call_with_retries(_check, attempts=retries, delay_s=delay_s, retry_on=(OSError,), sleep=sleep)


def copy_file_with_retries(
    src: Path,
    dst: Path,
    *,
    retries: int = 5,
    delay_s: float = 0.2,
    sleep: Callable[[float], None] | None = None,
) -> None:
    """copy_file, then confirm the destination is readable; retried as a unit."""

    def _once() -> None:
        copy_file(src, dst)
        wait_file_readable(dst, retries=3, delay_s=0.1, sleep=sleep)

    call_with_retries(_once, attempts=retries, delay_s=delay_s, retry_on=(OSError,), sleep=sleep)


def file_size(path: Path) -> int | None:
    try:
        st = Path(path).stat()
    except OSError:
        return None
    if not Path(path).is_file():
        return None
    return int(st.st_size)
