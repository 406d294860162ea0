from __future__ import annotations

import os
import uuid


def _url() -> str:
    return os.environ.get("DP_TEST_REDIS_URL", "")


def redis_available() -> bool:
    url = _url()
    if not url:
        return False
    try:
        import redis  # type: ignore

        client = redis.Redis.from_url(url, decode_responses=True)
        return bool(client.ping())
    except Exception:
        return False


def redis_client():
    import redis  # type: ignore

    return redis.Redis.from_url(_url(), decode_responses=True)


def redis_url() -> str:
    return _url()


def unique_prefix() -> str:
    return f"dp_test_{uuid.uuid4().hex[:8]}"
