from __future__ import annotations

import json
import threading
import time
from dataclasses import asdict, dataclass, field, fields
from enum import Enum
from typing import Any


class TaskState(str, Enum):
    QUEUED = "queued"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def terminal(self) -> bool:
        return self in (TaskState.COMPLETED, TaskState.FAILED)


STEP_UPLOAD = "上传文件"
STEP_QUEUED = "等待排队执行"
STEP_DEQUEUED = "排队完成，开始处理"
STEP_DONE = "处理完成"
ERROR_TIMEOUT = "视频合成超时"


def now_s() -> int:
    return int(time.time())


_id_lock = threading.Lock()
_id_seq = 0


def new_task_id() -> str:
    """auto-<unix ns>-<seq>: unique within the process, roughly time-ordered."""
    global _id_seq
    with _id_lock:
        _id_seq += 1
        seq = _id_seq
    return f"auto-{time.time_ns()}-{seq}"


@dataclass(slots=True)
class TaskRequest:
    speaker: str = ""
    text: str = ""
    use_tts: bool = True
    copy_to_company: bool = False
    audio_template_name: str = ""
    video_template_name: str = ""
    task_name: str = ""

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, d: dict[str, Any] | None) -> "TaskRequest":
        d = dict(d or {})
        known = {f.name for f in fields(cls)}
        dd = {k: v for k, v in d.items() if k in known}
        for k in ("use_tts", "copy_to_company"):
            if k in dd:
                dd[k] = bool(dd[k])
        return cls(**dd)


@dataclass(slots=True)
class TaskStatus:
    task_id: str
    status: TaskState = TaskState.PROCESSING
    current_step: str = ""
    progress: int = 0
    error: str = ""
    result_video: str = ""
    result_path: str = ""
    audio_path: str = ""
    video_path: str = ""
    start_time: int = 0
    end_time: int = 0
    total_duration: int = 0
    retry_count: int = 0
    task_name: str = ""
    request: TaskRequest | None = None

    def to_dict(self) -> dict[str, Any]:
        d = asdict(self)
        d["status"] = self.status.value
        d["request"] = self.request.to_dict() if self.request is not None else None
        return d

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> "TaskStatus":
        dd = dict(d)
        known = {f.name for f in fields(cls)}
        dd = {k: v for k, v in dd.items() if k in known}
        dd["status"] = TaskState(str(dd.get("status") or TaskState.PROCESSING.value))
        req = dd.get("request")
        dd["request"] = TaskRequest.from_dict(req) if isinstance(req, dict) else None
        for k in ("progress", "start_time", "end_time", "total_duration", "retry_count"):
            dd[k] = int(dd.get(k) or 0)
        for k in ("current_step", "error", "result_video", "result_path", "audio_path", "video_path", "task_name"):
            dd[k] = str(dd.get(k) or "")
        return cls(**dd)

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), ensure_ascii=False)

    @classmethod
    def from_json(cls, raw: str | bytes) -> "TaskStatus":
        return cls.from_dict(json.loads(raw))

    def advance(self, step: str, progress: int | None = None) -> None:
        """Move to a new step; progress only ever goes up within an attempt."""
        self.current_step = step
        if progress is not None:
            self.progress = max(int(self.progress), min(100, int(progress)))

    def finish(self, *, now: int | None = None) -> None:
        if self.end_time:
            return
        end = int(now if now is not None else now_s())
        if self.start_time and end < self.start_time:
            end = self.start_time
        self.end_time = end
        self.total_duration = max(0, end - self.start_time) if self.start_time else 0

    def mark_failed(self, error: str, *, step: str | None = None, now: int | None = None) -> None:
        self.status = TaskState.FAILED
        self.error = str(error)
        if step is not None:
            self.current_step = step
        self.result_video = ""
        self.result_path = ""
        self.finish(now=now)

    def mark_completed(self, result_name: str, result_path: str, *, now: int | None = None) -> None:
        self.status = TaskState.COMPLETED
        self.error = ""
        self.result_video = result_name
        self.result_path = result_path
        self.advance(STEP_DONE, 100)
        self.finish(now=now)


@dataclass(frozen=True, slots=True)
class QueuedTask:
    """Wire descriptor carried on the work queue."""

    task_id: str
    audio_path: str
    video_path: str
    request: TaskRequest = field(default_factory=TaskRequest)

    def to_dict(self) -> dict[str, Any]:
        return {
            "task_id": self.task_id,
            "audio_path": self.audio_path,
            "video_path": self.video_path,
            "req": self.request.to_dict(),
        }

    def encode(self) -> str:
        return json.dumps(self.to_dict(), ensure_ascii=False)

    @classmethod
    def decode(cls, raw: str | bytes) -> "QueuedTask":
        try:
            d = json.loads(raw)
        except (TypeError, json.JSONDecodeError) as ex:
            raise ValueError(f"invalid task payload: {ex}") from ex
        if not isinstance(d, dict):
            raise ValueError("invalid task payload: not an object")
        task_id = str(d.get("task_id") or "").strip()
        if not task_id:
            raise ValueError("invalid task payload: missing task_id")
        req = d.get("req")
        return cls(
            task_id=task_id,
            audio_path=str(d.get("audio_path") or ""),
            video_path=str(d.get("video_path") or ""),
            request=TaskRequest.from_dict(req if isinstance(req, dict) else None),
        )
