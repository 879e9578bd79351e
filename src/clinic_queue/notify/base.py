from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass


@dataclass(frozen=True, slots=True)
class Notification:
    """One push message; `event` is a dotted name such as `orcamento.pdf_ready`."""

    event: str
    title: str
    message: str
    url: str | None = None
    tags: Sequence[str] | None = None
    priority: int | None = None  # 1..5

    def ntfy_headers(self) -> dict[str, str]:
        # https://docs.ntfy.sh/publish/
        headers = {
            "Content-Type": "text/plain; charset=utf-8",
            "Title": self.title or self.event or "Notification",
        }
        tags = [str(t).strip() for t in (self.tags or ()) if str(t).strip()]
        if tags:
            headers["Tags"] = ",".join(tags)
        if self.priority is not None:
            headers["Priority"] = str(max(1, min(5, int(self.priority))))
        if self.url:
            headers["Click"] = str(self.url)
        return headers
