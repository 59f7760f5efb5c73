"""Copy-and-swap column removal for SQLite tables.

SQLite cannot drop a column in place on the engine versions we support, so a
column is removed by rebuilding the table:

1. create ``<table>__rebuild`` with the retained columns,
2. copy every row across,
3. drop the original,
4. rename the rebuild table to the original name,
5. recreate the table's secondary indexes.

Steps 1-5 run inside one transaction.  The whole procedure is idempotent:
once the columns are gone, every later run only re-checks that the table
still has a primary key.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Iterable, Mapping, Sequence

import aiosqlite

from dbwarden.storage.database import Database
from dbwarden.storage.errors import MigrationError, SoftError
from dbwarden.storage.probe import ColumnInfo, SchemaProbe, quote_ident
from dbwarden.storage.reconciler import IndexDef, TableModel

logger = logging.getLogger(__name__)

REBUILD_SUFFIX = "__rebuild"


class RemovalStatus(StrEnum):
    ABSENT = "absent"
    ALREADY_MIGRATED = "already_migrated"
    MIGRATED = "migrated"
    DROPPED_FOR_REBUILD = "dropped_for_rebuild"


@dataclass
class RemovalOutcome:
    """Result of one :meth:`ColumnRemoval.remove_columns` call."""

    table: str
    status: RemovalStatus
    removed: list[str] = field(default_factory=list)
    rows_copied: int = 0
    soft_errors: list[SoftError] = field(default_factory=list)


def _rebuild_table_sql(table: str, columns: Sequence[ColumnInfo], autoincrement: bool) -> str:
    """CREATE TABLE statement for the rebuild table.

    Types, order, NOT NULL, defaults and the primary key come from live
    metadata.  Table-level UNIQUE, CHECK and FOREIGN KEY clauses are not
    carried over; the shape reconciler and index map restore what matters.
    """
    pk = sorted((c for c in columns if c.is_primary_key), key=lambda c: c.pk)
    clauses = []
    for col in columns:
        parts = [quote_ident(col.name)]
        if col.type:
            parts.append(col.type)
        if len(pk) == 1 and col.is_primary_key:
            parts.append("PRIMARY KEY")
            if autoincrement and col.type.upper() == "INTEGER":
                parts.append("AUTOINCREMENT")
        if col.notnull:
            parts.append("NOT NULL")
        if col.default is not None:
            parts.append(f"DEFAULT ({col.default})")
        clauses.append(" ".join(parts))
    if len(pk) > 1:
        clauses.append("PRIMARY KEY (" + ", ".join(quote_ident(c.name) for c in pk) + ")")
    return f"CREATE TABLE {quote_ident(table)} (" + ", ".join(clauses) + ")"


class ColumnRemoval:
    """Remove columns from tables while preserving rows, primary key and indexes.

    Parameters
    ----------
    db:
        An open database with foreign keys still disabled.
    index_map:
        Secondary indexes to recreate after a rebuild, keyed by table name.
        Index recreation is best-effort.
    models:
        Target shapes keyed by table name.  A table that has lost its
        primary key is only dropped for rebuild when its model declares every
        live column, so the reconciler can recreate it.
    """

    def __init__(
        self,
        db: Database,
        index_map: Mapping[str, Iterable[IndexDef]] | None = None,
        models: Mapping[str, TableModel] | None = None,
    ) -> None:
        self._db = db
        self._probe = SchemaProbe(db)
        self._index_map = {k: list(v) for k, v in (index_map or {}).items()}
        self._models = dict(models or {})

    async def remove_column(self, table: str, column: str) -> RemovalOutcome:
        return await self.remove_columns(table, [column])

    async def remove_columns(self, table: str, columns: Sequence[str]) -> RemovalOutcome:
        """Drop *columns* from *table*.

        Raises
        ------
        MigrationError
            If reading metadata or the rebuild transaction fails.  The table
            is left exactly as it was.
        """
        targets = list(columns)
        try:
            if not await self._probe.table_exists(table):
                logger.info("Table %s does not exist yet, skipping column removal", table)
                return RemovalOutcome(table, RemovalStatus.ABSENT)
            live = await self._probe.columns(table)
        except aiosqlite.Error as exc:
            logger.error("Failed to read schema of %s: %s", table, exc)
            raise MigrationError(f"failed to read schema of {table}: {exc}", table=table) from exc

        present = [c.name for c in live if c.name in targets]
        if not present:
            logger.info("Table %s has no %s column(s), checking structure", table, ", ".join(targets))
            outcome = RemovalOutcome(table, RemovalStatus.ALREADY_MIGRATED)
            if await self._needs_rebuild(table, outcome):
                await self._drop_for_rebuild(table)
                outcome.status = RemovalStatus.DROPPED_FOR_REBUILD
            return outcome

        retained = [c for c in live if c.name not in targets]
        if not retained:
            raise MigrationError(f"refusing to remove every column of {table}", table=table)

        outcome = RemovalOutcome(table, RemovalStatus.MIGRATED, removed=present)
        try:
            record_count = await self._probe.row_count(table)
            table_sql = await self._probe.table_sql(table) or ""
        except aiosqlite.Error as exc:
            raise MigrationError(f"failed to count records in {table}: {exc}", table=table) from exc
        logger.info(
            "Removing column(s) %s from %s; migration will affect %d record(s)",
            ", ".join(present), table, record_count,
        )

        rebuild = table + REBUILD_SUFFIX
        col_list = ", ".join(quote_ident(c.name) for c in retained)
        autoincrement = "AUTOINCREMENT" in table_sql.upper()
        try:
            async with self._db.transaction() as conn:
                await conn.execute(f"DROP TABLE IF EXISTS {quote_ident(rebuild)}")
                await conn.execute(_rebuild_table_sql(rebuild, retained, autoincrement))
                cursor = await conn.execute(
                    f"INSERT INTO {quote_ident(rebuild)} ({col_list}) "
                    f"SELECT {col_list} FROM {quote_ident(table)}"
                )
                outcome.rows_copied = cursor.rowcount
                await conn.execute(f"DROP TABLE {quote_ident(table)}")
                await conn.execute(
                    f"ALTER TABLE {quote_ident(rebuild)} RENAME TO {quote_ident(table)}"
                )
                outcome.soft_errors.extend(
                    await self._recreate_indexes(conn, table, {c.name for c in retained})
                )
        except aiosqlite.Error as exc:
            logger.error("Column removal failed for %s, transaction rolled back: %s", table, exc)
            raise MigrationError(f"migration failed for {table}: {exc}", table=table) from exc

        logger.info(
            "Removed column(s) %s from %s (%d record(s) migrated)",
            ", ".join(present), table, outcome.rows_copied,
        )

        if await self._needs_rebuild(table, outcome):
            await self._drop_for_rebuild(table)
            outcome.status = RemovalStatus.DROPPED_FOR_REBUILD
        return outcome

    async def _recreate_indexes(
        self, conn: aiosqlite.Connection, table: str, columns: set[str]
    ) -> list[SoftError]:
        """Recreate mapped indexes whose columns all exist in the rebuilt table.

        Indexes over columns the table does not have yet are left to the
        reconciler, which adds the columns first.
        """
        soft: list[SoftError] = []
        for index in self._index_map.get(table, []):
            if not set(index.columns) <= columns:
                logger.debug("Deferring index %s on %s: column(s) not present", index.name, table)
                continue
            try:
                await conn.execute(index.create_sql(table))
            except aiosqlite.Error as exc:
                logger.warning("Failed to create index %s on %s: %s", index.name, table, exc)
                soft.append(SoftError("index_recreation", index.name, str(exc)))
        return soft

    async def _needs_rebuild(self, table: str, outcome: RemovalOutcome) -> bool:
        """Check StructuralHealth; an inspection failure is only a warning."""
        try:
            healthy = await self._probe.has_primary_key(table)
        except aiosqlite.Error as exc:
            logger.warning("Failed to check table structure of %s: %s", table, exc)
            outcome.soft_errors.append(SoftError("structure_check", table, str(exc)))
            return False
        return not healthy

    async def _drop_for_rebuild(self, table: str) -> None:
        """Drop a table without a primary key so the reconciler recreates it.

        Rows in the dropped table are lost, so the drop is refused unless a
        model for the table declares every live column.
        """
        model = self._models.get(table)
        try:
            live = await self._probe.column_names(table)
            rows = await self._probe.row_count(table)
        except aiosqlite.Error as exc:
            raise MigrationError(f"failed to read schema of {table}: {exc}", table=table) from exc
        if model is None or not model.covers(live):
            missing = sorted(set(live) - set(model.column_names if model else []))
            logger.error(
                "Table %s has no primary key but cannot be rebuilt safely; "
                "columns not covered by its model: %s",
                table, missing,
            )
            raise MigrationError(
                f"table {table} has no primary key and its model does not cover "
                f"columns {missing}",
                table=table,
            )
        logger.warning(
            "Table %s has no primary key; dropping it (%d row(s)) so the "
            "reconciler recreates it with the correct structure",
            table, rows,
        )
        try:
            await self._db.execute(f"DROP TABLE IF EXISTS {quote_ident(table)}")
        except aiosqlite.Error as exc:
            logger.error("Failed to drop incomplete table %s: %s", table, exc)
            raise MigrationError(f"failed to drop incomplete table {table}: {exc}", table=table) from exc
