from __future__ import annotations

import json

import pytest
from click.testing import CliRunner

from clinic_queue.cli import cli
from clinic_queue.config import get_settings
from tests._helpers.queues import sqlite_url


@pytest.fixture()
def table_env(tmp_path, monkeypatch) -> str:
    url = sqlite_url(tmp_path)
    monkeypatch.setenv("DATABASE_URL", url)
    monkeypatch.setenv("QUEUE_MODE", "table")
    get_settings.cache_clear()
    return url


def _ok(result) -> dict:
    assert result.exit_code == 0, result.output
    return json.loads(result.output)


def test_migrate_enqueue_and_inspect(table_env: str) -> None:
    runner = CliRunner()
    assert _ok(runner.invoke(cli, ["migrate"])) == {"ok": True, "table": "jobs"}
    # Idempotent.
    assert runner.invoke(cli, ["migrate"]).exit_code == 0

    added = _ok(runner.invoke(cli, ["enqueue-pdf", "42"]))
    assert added["job_id"] == "orcamento-pdf-42"
    assert added["duplicate"] is False
    assert _ok(runner.invoke(cli, ["enqueue-pdf", "42"]))["duplicate"] is True

    job = _ok(runner.invoke(cli, ["job", "orcamento", "orcamento-pdf-42"]))
    assert job["state"] == "pending"
    assert job["data"] == {"orcamento_id": 42}

    metrics = _ok(runner.invoke(cli, ["metrics", "orcamento"]))
    assert metrics["waiting"] == 1

    status = _ok(runner.invoke(cli, ["status"]))
    assert status["queue_type"] == "table"


def test_missing_job_exits_1(table_env: str) -> None:
    runner = CliRunner()
    runner.invoke(cli, ["migrate"])
    r = runner.invoke(cli, ["job", "orcamento", "nope"])
    assert r.exit_code == 1
    assert json.loads(r.output) == {"exists": False}


def test_cleanup_and_recover_stalled(table_env: str) -> None:
    runner = CliRunner()
    runner.invoke(cli, ["migrate"])
    assert _ok(runner.invoke(cli, ["cleanup", "--older-than-days", "3"])) == {"removed": 0, "older_than_days": 3}
    assert _ok(runner.invoke(cli, ["recover-stalled", "--stalled-after", "60"]))["recovered"] == 0

    # Disabled by default (TABLE_STALLED_AFTER_S=0).
    r = runner.invoke(cli, ["recover-stalled"])
    assert r.exit_code == 1
    assert "disabled" in r.output


def test_status_without_backends_is_an_error() -> None:
    r = CliRunner().invoke(cli, ["status"])
    assert r.exit_code == 1
    assert "No queue backend available" in r.output


def test_migrate_requires_database_url() -> None:
    r = CliRunner().invoke(cli, ["migrate"])
    assert r.exit_code == 1
    assert "DATABASE_URL" in r.output


def test_config_report_hides_secrets(table_env: str, monkeypatch) -> None:
    monkeypatch.setenv("REDIS_PASSWORD", "super-secret-pw")
    get_settings.cache_clear()
    r = CliRunner().invoke(cli, ["config"])
    report = _ok(r)
    assert report["secrets"]["database_url"] == "SET"
    assert report["secrets"]["redis_password"] == "SET"
    assert report["secrets"]["ntfy_auth"] == "UNSET"
    assert report["public"]["queue_mode"] == "table"
    assert "super-secret-pw" not in r.output
    assert table_env not in r.output
