# tests/test_main.py
from datetime import datetime, timedelta, timezone
from unittest.mock import patch

import pytest

from dbwarden.config_loader import parse_config
from dbwarden.main import build_runtime, main, run_recovery
from dbwarden.reports.store import ReportStatus, ReportStore
from dbwarden.storage.database import Database
from dbwarden.storage.errors import DatabaseConnectionError


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in ("DBWARDEN_DB_PATH", "LOG_FORMAT", "LOG_LEVEL"):
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def config(tmp_path):
    return parse_config({"database": {"path": str(tmp_path / "app.db")}, "queue": {"capacity": 4}})


async def test_build_runtime(config):
    runtime = await build_runtime(config)
    try:
        assert runtime.db.is_open
        assert runtime.queue.capacity == 4
        assert not runtime.startup.degraded
    finally:
        await runtime.shutdown()
    assert not runtime.db.is_open
    assert runtime.stop_event.is_set()
    await runtime.shutdown()


async def test_build_runtime_closes_db_on_failure(config):
    closed = []
    real_close = Database.close

    async def tracking_close(self):
        closed.append(self)
        await real_close(self)

    with patch.object(Database, "pre_structural_config", side_effect=DatabaseConnectionError("nope")), \
            patch.object(Database, "close", tracking_close):
        with pytest.raises(DatabaseConnectionError):
            await build_runtime(config)
    assert len(closed) == 1
    assert not closed[0].is_open


async def test_run_recovery(config):
    runtime = await build_runtime(config)
    try:
        store = ReportStore(runtime.db)
        await store.create("r", "main", "wiki", report_id="ok")
        await store.create("r", "main", "wiki", report_id="stale", status=ReportStatus.ANALYZING,
                           started_at=datetime.now(timezone.utc) - timedelta(days=3))
        summary = await run_recovery(runtime)
        assert summary.recovered == 1
        assert summary.failed == 1
        assert "ok" in runtime.queue
    finally:
        await runtime.shutdown()


def test_cli_migrate(tmp_path, capsys):
    cfg = tmp_path / "dbwarden.yaml"
    cfg.write_text(f"database:\n  path: {tmp_path / 'cli.db'}\n")
    assert main(["--config", str(cfg), "migrate"]) == 0
    assert "Fixups applied: none" in capsys.readouterr().out
    assert (tmp_path / "cli.db").exists()


def test_cli_recover(tmp_path, capsys):
    cfg = tmp_path / "dbwarden.yaml"
    cfg.write_text(f"database:\n  path: {tmp_path / 'cli.db'}\n")
    assert main(["--config", str(cfg), "--log-format", "json", "recover"]) == 0
    assert "Recovery: 0 unfinished" in capsys.readouterr().out


def test_cli_missing_config(tmp_path, capsys):
    assert main(["--config", str(tmp_path / "missing.yaml"), "migrate"]) == 2
    assert "Configuration error" in capsys.readouterr().err


def test_cli_startup_failure(tmp_path, capsys):
    blocker = tmp_path / "blocker"
    blocker.write_text("file")
    cfg = tmp_path / "dbwarden.yaml"
    cfg.write_text(f"database:\n  path: {blocker / 'app.db'}\n")
    assert main(["--config", str(cfg), "migrate"]) == 1
    assert "Startup failed" in capsys.readouterr().err


def test_cli_without_command(capsys):
    assert main([]) == 2
