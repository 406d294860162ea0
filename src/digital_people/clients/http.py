from __future__ import annotations

import json
import urllib.error
import urllib.request
from dataclasses import dataclass
from typing import Any

from digital_people.errors import UpstreamError


@dataclass(frozen=True, slots=True)
class HttpResponse:
    status: int
    body: bytes

    @property
    def ok(self) -> bool:
        return self.status == 200

    def text(self, limit: int = 2000) -> str:
        s = self.body.decode("utf-8", errors="replace")
        return s if len(s) <= limit else s[:limit] + "..."

    def json(self) -> Any:
        return json.loads(self.body.decode("utf-8"))


def post_json(url: str, payload: dict[str, Any], *, timeout_s: float) -> HttpResponse:
    """
    POST a JSON body and return status + raw body.

    Non-2xx answers are returned, not raised; callers decide what counts as
    failure. Connection/timeout errors raise UpstreamError.
    """
    data = json.dumps(payload, ensure_ascii=False).encode("utf-8")
    req = urllib.request.Request(url, data=data, method="POST")
    req.add_header("Content-Type", "application/json")
    try:
        with urllib.request.urlopen(req, timeout=float(timeout_s)) as resp:
            return HttpResponse(status=int(resp.status), body=resp.read())
    except urllib.error.HTTPError as ex:
        try:
            body = ex.read() or b""
        except OSError:
            body = b""
        return HttpResponse(status=int(ex.code), body=body)
    except (urllib.error.URLError, TimeoutError, OSError) as ex:
        raise UpstreamError(f"POST {url} failed: {ex}") from ex
