from __future__ import annotations

import json
from dataclasses import asdict, dataclass
from typing import Any

from digital_people.clients.http import HttpResponse, post_json


@dataclass(frozen=True, slots=True)
class PreprocessRequest:
    reference_audio: str
    format: str = "wav"
    lang: str = "zh"


@dataclass(frozen=True, slots=True)
class PreprocessResponse:
    code: int
    msg: str
    reference_audio_text: str
    asr_format_audio_url: str

    @property
    def ok(self) -> bool:
        return self.code == 0 and bool(self.reference_audio_text) and bool(self.asr_format_audio_url)

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> "PreprocessResponse":
        return cls(
            code=int(d.get("code") or 0),
            msg=str(d.get("msg") or ""),
            reference_audio_text=str(d.get("reference_audio_text") or ""),
            asr_format_audio_url=str(d.get("asr_format_audio_url") or ""),
        )


@dataclass(frozen=True, slots=True)
class SynthesizeRequest:
    speaker: str
    text: str
    reference_audio: str
    reference_text: str
    format: str = "wav"
    topP: float = 0.7
    max_new_tokens: int = 1024
    chunk_length: int = 100
    repetition_penalty: float = 1.2
    temperature: float = 0.7
    need_asr: bool = False
    streaming: bool = False
    is_fixed_seed: int = 0
    is_norm: int = 0


class TTSClient:
    """Voice clone service: reference preprocessing, then synthesis."""

    def __init__(self, base_url: str, *, timeout_s: float = 60.0, synth_timeout_s: float = 600.0) -> None:
        self.base_url = str(base_url).rstrip("/")
        self.timeout_s = float(timeout_s)
        self.synth_timeout_s = float(synth_timeout_s)

    def preprocess(self, req: PreprocessRequest) -> tuple[HttpResponse, PreprocessResponse | None]:
        """
        Returns the raw response and, when the body is a well-formed payload, the parsed
        payload. The embedded `code` is not checked here.
        """
        resp = post_json(f"{self.base_url}/v1/preprocess_and_tran", asdict(req), timeout_s=self.timeout_s)
        if not resp.ok:
            return resp, None
        try:
            d = resp.json()
        except (ValueError, UnicodeDecodeError):
            return resp, None
        if not isinstance(d, dict):
            return resp, None
        try:
            return resp, PreprocessResponse.from_dict(d)
        except (TypeError, ValueError):
            # e.g. a non-numeric `code`
            return resp, None

    def synthesize(self, req: SynthesizeRequest) -> HttpResponse:
        """Returns the raw response; on 200 the body is the audio stream."""
        return post_json(f"{self.base_url}/v1/invoke", asdict(req), timeout_s=self.synth_timeout_s)


def describe_body(resp: HttpResponse) -> str:
    try:
        return json.dumps(resp.json(), ensure_ascii=False)
    except (ValueError, UnicodeDecodeError):
        return resp.text()
