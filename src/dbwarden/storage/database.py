"""SQLite connection layer with async access via aiosqlite."""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path

import aiosqlite

from dbwarden.storage.errors import DatabaseConnectionError, SoftError

logger = logging.getLogger(__name__)

DEFAULT_DB_PATH = "data/dbwarden.db"


def utcnow() -> str:
    """Return the current UTC time as an ISO-8601 string."""
    return datetime.now(timezone.utc).isoformat()


@dataclass
class StartupReport:
    """What happened while bringing storage up."""

    applied: list[str] = field(default_factory=list)
    dropped: list[str] = field(default_factory=list)
    soft_errors: list[SoftError] = field(default_factory=list)

    @property
    def degraded(self) -> bool:
        return bool(self.soft_errors)


class Database:
    """Async SQLite database wrapper using a single writer connection.

    SQLite serialises writers, so the pool is pinned to one connection and
    every caller shares it; multi-statement work goes through
    :meth:`transaction`.

    Parameters
    ----------
    db_path:
        Path to the SQLite database file.  Use ``":memory:"`` for tests.
    busy_timeout_ms:
        How long SQLite waits on a locked database before failing.
    """

    def __init__(self, db_path: str = DEFAULT_DB_PATH, busy_timeout_ms: int = 5000) -> None:
        self.db_path = db_path
        self.busy_timeout_ms = busy_timeout_ms
        self.pool_size = 1
        self._conn: aiosqlite.Connection | None = None
        self._tx_lock = asyncio.Lock()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def is_open(self) -> bool:
        return self._conn is not None

    async def open(self) -> None:
        """Open the connection without applying any tuning."""
        if self._conn is not None:
            return
        try:
            if self.db_path != ":memory:":
                Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
            # isolation_level=None enables autocommit mode; multi-statement
            # work goes through transaction() with an explicit BEGIN.
            conn = await aiosqlite.connect(self.db_path, isolation_level=None)
        except (OSError, aiosqlite.Error) as exc:
            logger.error("Failed to open database at %s: %s", self.db_path, exc)
            raise DatabaseConnectionError(f"failed to open database {self.db_path}: {exc}") from exc
        conn.row_factory = aiosqlite.Row
        self._conn = conn
        logger.info("Opened database %s", self.db_path)

    async def _apply_pragma(self, sql: str, stage: str, target: str) -> SoftError | None:
        try:
            await self._require_conn().execute(sql)
        except aiosqlite.Error as exc:
            logger.warning("Failed to apply %s: %s", sql, exc)
            return SoftError(stage, target, str(exc))
        return None

    async def pre_structural_config(self) -> list[SoftError]:
        """Apply engine tuning that must precede any structural change.

        Foreign keys are forced OFF here: the copy-and-swap migrations drop
        and rename tables that other tables still reference.
        """
        self.pool_size = 1
        pragmas = [
            ("PRAGMA journal_mode=WAL", "journal_mode"),
            ("PRAGMA synchronous=NORMAL", "synchronous"),
            (f"PRAGMA busy_timeout={int(self.busy_timeout_ms)}", "busy_timeout"),
            ("PRAGMA foreign_keys=OFF", "foreign_keys"),
        ]
        soft: list[SoftError] = []
        for sql, target in pragmas:
            err = await self._apply_pragma(sql, "pre_structural_config", target)
            if err is not None:
                soft.append(err)
        logger.info(
            "Pre-structural config applied (journal_mode=WAL, synchronous=NORMAL, "
            "pool_size=%d, %d warning(s))",
            self.pool_size, len(soft),
        )
        return soft

    async def post_structural_config(self) -> list[SoftError]:
        """Enable foreign-key enforcement once the schema is final."""
        soft: list[SoftError] = []
        err = await self._apply_pragma("PRAGMA foreign_keys=ON", "post_structural_config", "foreign_keys")
        if err is not None:
            soft.append(err)
        logger.info("Post-structural config applied (foreign_keys=%s)", err is None)
        return soft

    async def initialize(self, repair: bool = True) -> StartupReport:
        """Run the full storage startup sequence.

        open -> pre-structural config -> legacy fixups and shape
        reconciliation -> foreign keys on -> data repair.

        Raises
        ------
        DatabaseConnectionError
            If the database cannot be opened.
        MigrationError
            If any structural step fails.
        """
        from dbwarden.storage.migration import MigrationManager
        from dbwarden.storage.repair import repair_git_providers

        report = StartupReport()
        await self.open()
        report.soft_errors.extend(await self.pre_structural_config())

        migrator = MigrationManager(self)
        outcome = await migrator.apply_pending()
        report.applied.extend(outcome.applied)
        report.dropped.extend(outcome.dropped)
        report.soft_errors.extend(outcome.soft_errors)

        report.soft_errors.extend(await self.post_structural_config())

        if repair:
            soft = await repair_git_providers(self)
            if soft is not None:
                report.soft_errors.append(soft)

        logger.info(
            "Database initialized: %d fixup(s) applied, %d table(s) dropped for rebuild, "
            "%d soft error(s)",
            len(report.applied), len(report.dropped), len(report.soft_errors),
        )
        return report

    async def close(self) -> None:
        """Close the connection.  Safe to call more than once."""
        if self._conn is not None:
            logger.info("Closing database connection")
            await self._conn.close()
            self._conn = None

    async def health_check(self) -> bool:
        """Return True if the connection answers a trivial query."""
        try:
            row = await self.execute_fetchone("SELECT 1 AS ok")
        except (RuntimeError, aiosqlite.Error) as exc:
            logger.warning("Database health check failed: %s", exc)
            return False
        return bool(row and row["ok"] == 1)

    # ------------------------------------------------------------------
    # Connection access
    # ------------------------------------------------------------------

    def _require_conn(self) -> aiosqlite.Connection:
        if self._conn is None:
            raise RuntimeError("Database not initialized. Call open() first.")
        return self._conn

    @asynccontextmanager
    async def transaction(self):
        """Async context manager for multi-statement transactions.

        Uses an asyncio lock to prevent concurrent coroutines from
        attempting nested BEGIN on the shared connection.  Any exception
        rolls the whole transaction back and is re-raised.
        """
        conn = self._require_conn()
        async with self._tx_lock:
            await conn.execute("BEGIN")
            try:
                yield conn
                await conn.commit()
            except BaseException:
                await conn.rollback()
                raise

    async def executescript(self, sql: str) -> None:
        """Execute a multi-statement SQL script and commit."""
        conn = self._require_conn()
        await conn.executescript(sql)
        await conn.commit()

    # ------------------------------------------------------------------
    # Generic query helpers
    # ------------------------------------------------------------------

    async def execute_fetchall(
        self, sql: str, params: tuple = ()
    ) -> list[dict]:
        """Execute a query and return all rows as dicts."""
        conn = self._require_conn()
        cursor = await conn.execute(sql, params)
        rows = await cursor.fetchall()
        if not rows:
            return []
        keys = [desc[0] for desc in cursor.description]
        return [dict(zip(keys, row)) for row in rows]

    async def execute_fetchone(
        self, sql: str, params: tuple = ()
    ) -> dict | None:
        """Execute a query and return the first row as a dict, or None."""
        conn = self._require_conn()
        cursor = await conn.execute(sql, params)
        row = await cursor.fetchone()
        if row is None:
            return None
        keys = [desc[0] for desc in cursor.description]
        return dict(zip(keys, row))

    async def execute(self, sql: str, params: tuple = ()) -> int:
        """Execute a statement, commit, and return the affected row count."""
        conn = self._require_conn()
        cursor = await conn.execute(sql, params)
        await conn.commit()
        return cursor.rowcount
