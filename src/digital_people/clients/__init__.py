from __future__ import annotations

from .container import ContainerError, ContainerOps
from .http import HttpResponse, post_json
from .tts import PreprocessRequest, PreprocessResponse, SynthesizeRequest, TTSClient
from .video import SubmitRequest, VideoClient, result_artifact_name

__all__ = [
    "ContainerError",
    "ContainerOps",
    "HttpResponse",
    "PreprocessRequest",
    "PreprocessResponse",
    "SubmitRequest",
    "SynthesizeRequest",
    "TTSClient",
    "VideoClient",
    "post_json",
    "result_artifact_name",
]
