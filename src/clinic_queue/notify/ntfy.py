from __future__ import annotations

import asyncio
import base64
import random
import ssl
import time
import urllib.error
import urllib.request
from typing import Any

from clinic_queue.config import get_settings
from clinic_queue.utils.log import logger

from .base import Notification

# Statuses worth another try (rate limiting, server side trouble).
_RETRY_STATUSES = {408, 425, 429}


def _parse_auth(raw: str) -> dict[str, str]:
    """
    Supported formats:
      - "Bearer <token>"
      - "token:<token>"
      - "userpass:<user>:<pass>"
      - "<user>:<pass>"
    Returns headers to apply. Never returns secrets for logging.
    """
    v = (raw or "").strip()
    if not v:
        return {}
    if v.lower().startswith("bearer "):
        return {"Authorization": v}
    if v.lower().startswith("token:"):
        tok = v.split(":", 1)[1].strip()
        return {"Authorization": f"Bearer {tok}"}
    if v.lower().startswith("userpass:"):
        parts = v.split(":", 1)[1].split(":", 1)
        if len(parts) != 2:
            return {}
        b64 = base64.b64encode(f"{parts[0]}:{parts[1]}".encode()).decode("ascii")
        return {"Authorization": f"Basic {b64}"}
    if ":" in v and not v.startswith("http"):
        user, pw = v.split(":", 1)
        b64 = base64.b64encode(f"{user}:{pw}".encode()).decode("ascii")
        return {"Authorization": f"Basic {b64}"}
    return {"Authorization": f"Bearer {v}"}


def _sleep_backoff(attempt: int) -> None:
    delay = min(6.0, 0.5 * (2 ** max(0, attempt))) + random.random() * 0.25
    time.sleep(delay)


def _post_ntfy(
    *,
    base_url: str,
    topic: str,
    payload: Notification,
    auth_headers: dict[str, str],
    timeout_sec: float,
    tls_insecure: bool,
) -> int:
    url = f"{base_url.rstrip('/')}/{topic.strip()}"
    req = urllib.request.Request(url, data=(payload.message or "").encode("utf-8"), method="POST")

    for k, v in {**payload.ntfy_headers(), **(auth_headers or {})}.items():
        if k and v:
            req.add_header(k, v)

    ctx = ssl._create_unverified_context() if tls_insecure else None
    with urllib.request.urlopen(req, timeout=float(timeout_sec), context=ctx) as resp:
        return int(getattr(resp, "status", 200) or 200)


class NtfyNotifier:
    """
    Best-effort ntfy publisher. `send()` never raises for delivery failures;
    it returns whether the server accepted the message.
    """

    def __init__(
        self,
        *,
        base_url: str,
        topic: str,
        auth: str = "",
        timeout_sec: float = 5.0,
        tls_insecure: bool = False,
        retries: int = 2,
        enabled: bool = True,
    ) -> None:
        self._base_url = str(base_url or "").strip()
        self._topic = str(topic or "").strip()
        self._auth_headers = _parse_auth(auth) if auth else {}
        self._timeout_sec = float(timeout_sec)
        self._tls_insecure = bool(tls_insecure)
        self._retries = max(0, int(retries))
        self._enabled = bool(enabled)

    @classmethod
    def from_settings(cls, settings: Any = None) -> NtfyNotifier:
        s = settings or get_settings()
        auth = ""
        if s.ntfy_auth is not None:
            auth = s.ntfy_auth.get_secret_value()
        return cls(
            base_url=s.ntfy_base_url,
            topic=s.ntfy_topic,
            auth=auth,
            timeout_sec=s.ntfy_timeout_sec,
            tls_insecure=s.ntfy_tls_insecure,
            enabled=s.ntfy_enabled,
        )

    @property
    def available(self) -> bool:
        return self._enabled and bool(self._base_url) and bool(self._topic)

    def send(self, n: Notification) -> bool:
        if not self.available:
            return False
        ok = False
        last_status: int | None = None
        last_error: str | None = None
        for attempt in range(self._retries + 1):
            try:
                last_status = _post_ntfy(
                    base_url=self._base_url,
                    topic=self._topic,
                    payload=n,
                    auth_headers=self._auth_headers,
                    timeout_sec=self._timeout_sec,
                    tls_insecure=self._tls_insecure,
                )
                ok = 200 <= last_status < 300
                break
            except urllib.error.HTTPError as ex:
                last_status = int(ex.code)
                last_error = "http_error"
                if (last_status in _RETRY_STATUSES or last_status >= 500) and attempt < self._retries:
                    _sleep_backoff(attempt)
                    continue
                break
            except (urllib.error.URLError, OSError) as ex:
                last_error = str(ex)[:200]
                if attempt < self._retries:
                    _sleep_backoff(attempt)
                    continue
                break

        # Never include auth/topic.
        logger.info("ntfy_notify", ok=ok, notification_event=n.event, status=last_status, error=last_error)
        return ok

    async def asend(self, n: Notification) -> bool:
        return await asyncio.to_thread(self.send, n)
