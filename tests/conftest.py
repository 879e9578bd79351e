from __future__ import annotations

import os
import tempfile

import pytest

# Logging is configured when clinic_queue.utils.log is first imported; keep those
# files out of the working tree.
os.environ.setdefault("CLINIC_LOG_DIR", tempfile.mkdtemp(prefix="clinic_queue_logs_"))

from clinic_queue.config import get_settings  # noqa: E402


@pytest.fixture(autouse=True)
def _test_env(
    tmp_path_factory: pytest.TempPathFactory, monkeypatch: pytest.MonkeyPatch
):
    root = tmp_path_factory.mktemp("cq_test")
    (root / "logs").mkdir(parents=True, exist_ok=True)
    (root / "uploads").mkdir(parents=True, exist_ok=True)

    monkeypatch.setenv("CLINIC_LOG_DIR", str(root / "logs"))
    monkeypatch.setenv("UPLOADS_DIR", str(root / "uploads"))
    monkeypatch.setenv("QUEUE_MODE", "auto")
    # No broker unless a test opts in; unreachable brokers must fail fast.
    monkeypatch.setenv("REDIS_HOST", "")
    monkeypatch.setenv("REDIS_CONNECT_ATTEMPTS", "1")
    for name in ("REDIS_URL", "REDIS_PASSWORD", "DATABASE_URL", "ENV", "APP_ENV", "NTFY_AUTH"):
        monkeypatch.delenv(name, raising=False)
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()
