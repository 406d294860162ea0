from __future__ import annotations

import posixpath
from dataclasses import asdict, dataclass

from digital_people.clients.http import HttpResponse, post_json


@dataclass(frozen=True, slots=True)
class SubmitRequest:
    audio_url: str
    video_url: str
    code: str
    chaofen: int = 0
    watermark_switch: int = 0
    pn: int = 1


def result_artifact_name(code: str) -> str:
    return f"{code}-r.mp4"


class VideoClient:
    """Face-to-face synthesis service; file references live in its own filesystem."""

    def __init__(self, base_url: str, *, container_data_root: str, timeout_s: float = 60.0) -> None:
        self.base_url = str(base_url).rstrip("/")
        self.container_data_root = str(container_data_root)
        self.timeout_s = float(timeout_s)

    def container_path(self, filename: str) -> str:
        """Host-side filename -> path inside the synthesis container (prefix rewrite)."""
        return posixpath.join(self.container_data_root, filename)

    def build_submit(self, *, audio_filename: str, video_filename: str, code: str) -> SubmitRequest:
        return SubmitRequest(
            audio_url=self.container_path(audio_filename),
            video_url=self.container_path(video_filename),
            code=code,
        )

    def submit(self, req: SubmitRequest) -> HttpResponse:
        return post_json(f"{self.base_url}/easy/submit", asdict(req), timeout_s=self.timeout_s)
