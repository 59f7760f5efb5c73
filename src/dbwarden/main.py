"""dbwarden entry point: storage startup and report recovery."""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from pathlib import Path

from dbwarden.config_loader import AppConfig, load_config, parse_config
from dbwarden.reports.queue import ReportQueue
from dbwarden.reports.recovery import RecoveryService, RecoverySummary
from dbwarden.reports.store import ReportStore
from dbwarden.storage.database import Database, StartupReport
from dbwarden.storage.errors import StartupError

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = Path("config/dbwarden.yaml")


class Runtime:
    """Container for the components built at startup."""

    def __init__(self, config: AppConfig, db: Database, store: ReportStore,
                 queue: ReportQueue, startup: StartupReport):
        self.config = config
        self.db = db
        self.store = store
        self.queue = queue
        self.startup = startup
        self.stop_event = asyncio.Event()
        self._closed = False

    async def shutdown(self) -> None:
        """Signal background work to stop and close the database.  Idempotent."""
        if self._closed:
            return
        self._closed = True
        self.stop_event.set()
        await self.db.close()
        logger.info("Shutdown complete")


async def build_runtime(config: AppConfig) -> Runtime:
    """Bring storage up and construct the report queue.

    The database is closed again if startup fails.

    Raises
    ------
    StartupError
        If the database cannot be opened or migrated.
    """
    db = Database(config.database.path, busy_timeout_ms=config.database.busy_timeout_ms)
    try:
        startup = await db.initialize()
    except BaseException:
        await db.close()
        raise
    for soft in startup.soft_errors:
        logger.warning("Startup degraded: %s", soft)

    return Runtime(
        config=config,
        db=db,
        store=ReportStore(db),
        queue=ReportQueue(capacity=config.queue.capacity),
        startup=startup,
    )


async def run_recovery(runtime: Runtime) -> RecoverySummary:
    service = RecoveryService(
        runtime.store,
        runtime.queue,
        max_retry_count=runtime.config.recovery.max_retry_count,
        task_timeout_hours=runtime.config.recovery.task_timeout_hours,
    )
    return await service.recover_to_queue(stop_event=runtime.stop_event)


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------


def _print_startup(report: StartupReport) -> None:
    print(f"Fixups applied: {', '.join(report.applied) or 'none'}")
    if report.dropped:
        print(f"Tables dropped for rebuild: {', '.join(report.dropped)}")
    if report.degraded:
        print(f"Started degraded ({len(report.soft_errors)} warning(s)):")
        for soft in report.soft_errors:
            print(f"  - {soft}")


async def _cmd_migrate(config: AppConfig) -> int:
    runtime = await build_runtime(config)
    try:
        _print_startup(runtime.startup)
    finally:
        await runtime.shutdown()
    return 0


async def _cmd_recover(config: AppConfig) -> int:
    runtime = await build_runtime(config)
    try:
        _print_startup(runtime.startup)
        summary = await run_recovery(runtime)
        print(
            f"Recovery: {summary.total} unfinished, {summary.recovered} re-queued, "
            f"{summary.failed} failed, {summary.skipped} skipped"
        )
    finally:
        await runtime.shutdown()
    return 0


def _resolve_config(path: str | None) -> AppConfig:
    if path is not None:
        return load_config(Path(path))
    if DEFAULT_CONFIG_PATH.exists():
        return load_config(DEFAULT_CONFIG_PATH)
    return parse_config(None)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="dbwarden", description="Embedded database lifecycle manager"
    )
    parser.add_argument("--config", default=None, help="Path to the YAML config file")
    parser.add_argument("--log-format", choices=["dev", "json"], default=None,
                        help="Console log format (overrides config)")
    parser.add_argument("--log-file", default=None, help="Write logs to a rotating file instead")
    sub = parser.add_subparsers(dest="command", help="Available commands")
    sub.add_parser("migrate", help="Open the database and bring the schema up to date")
    sub.add_parser("recover", help="Migrate, then resolve unfinished reports")
    return parser


def main(argv: list[str] | None = None) -> int:
    from dbwarden.logging_config import setup_file_logging, setup_logging

    parser = build_parser()
    args = parser.parse_args(argv)
    if args.command is None:
        parser.print_help()
        return 2

    try:
        config = _resolve_config(args.config)
    except (FileNotFoundError, ValueError) as exc:
        print(f"Configuration error: {exc}", file=sys.stderr)
        return 2

    if args.log_file:
        setup_file_logging(Path(args.log_file), level=config.logging.level)
    else:
        setup_logging(args.log_format or config.logging.format, level=config.logging.level)

    command = _cmd_migrate if args.command == "migrate" else _cmd_recover
    try:
        return asyncio.run(command(config))
    except StartupError as exc:
        logger.error("Startup failed: %s", exc)
        print(f"Startup failed: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
