from __future__ import annotations

import os
import uuid

# Read once at import: the autouse fixture scrubs REDIS_URL from each test's env.
REDIS_TEST_URL = os.environ.get("REDIS_URL", "")


def redis_available() -> bool:
    if not REDIS_TEST_URL:
        return False
    try:
        import redis

        client = redis.Redis.from_url(REDIS_TEST_URL, decode_responses=True, socket_connect_timeout=1.0)
        try:
            return bool(client.ping())
        finally:
            client.close()
    except Exception:
        return False


def unique_prefix() -> str:
    return f"cqtest-{uuid.uuid4().hex[:12]}"


def delete_prefix(prefix: str) -> None:
    import redis

    client = redis.Redis.from_url(REDIS_TEST_URL, decode_responses=True)
    try:
        keys = list(client.scan_iter(match=f"{prefix}:*", count=500))
        if keys:
            client.delete(*keys)
    finally:
        client.close()


def fake_redis_client():
    """In-process broker with Lua support (fakeredis + lupa); one server per call."""
    import fakeredis

    return fakeredis.FakeAsyncRedis(server=fakeredis.FakeServer(), decode_responses=True)
