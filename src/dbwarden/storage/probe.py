"""Read-only inspection of live SQLite schema metadata."""

from __future__ import annotations

from dataclasses import dataclass

from dbwarden.storage.database import Database


def quote_ident(name: str) -> str:
    """Quote an SQL identifier for SQLite."""
    return '"' + name.replace('"', '""') + '"'


@dataclass(frozen=True)
class ColumnInfo:
    """One row of ``PRAGMA table_info``."""

    name: str
    type: str
    notnull: bool
    default: str | None
    pk: int

    @property
    def is_primary_key(self) -> bool:
        return self.pk > 0


@dataclass(frozen=True)
class IndexInfo:
    """One row of ``PRAGMA index_list`` with its column list resolved."""

    name: str
    unique: bool
    origin: str
    columns: tuple[str, ...]


class SchemaProbe:
    """Inspect tables, columns and indexes without assuming a schema version.

    Every method is a pure read against ``sqlite_master`` or a ``PRAGMA``;
    the probe is also how interrupted or partially migrated tables are
    detected, so nothing here may rely on an expected column set.
    """

    def __init__(self, db: Database) -> None:
        self._db = db

    async def table_exists(self, name: str) -> bool:
        row = await self._db.execute_fetchone(
            "SELECT COUNT(*) AS n FROM sqlite_master WHERE type = 'table' AND name = ?",
            (name,),
        )
        return bool(row and row["n"] > 0)

    async def columns(self, table: str) -> list[ColumnInfo]:
        """Return the live columns of *table* in declaration order.

        Returns an empty list if the table does not exist.
        """
        rows = await self._db.execute_fetchall(f"PRAGMA table_info({quote_ident(table)})")
        return [
            ColumnInfo(
                name=r["name"],
                type=r["type"] or "",
                notnull=bool(r["notnull"]),
                default=r["dflt_value"],
                pk=int(r["pk"]),
            )
            for r in rows
        ]

    async def column_names(self, table: str) -> list[str]:
        return [c.name for c in await self.columns(table)]

    async def has_primary_key(self, table: str) -> bool:
        """StructuralHealth: True if at least one column is part of the primary key."""
        return any(c.is_primary_key for c in await self.columns(table))

    async def indexes(self, table: str) -> list[IndexInfo]:
        rows = await self._db.execute_fetchall(f"PRAGMA index_list({quote_ident(table)})")
        result: list[IndexInfo] = []
        for r in rows:
            cols = await self._db.execute_fetchall(f"PRAGMA index_info({quote_ident(r['name'])})")
            result.append(
                IndexInfo(
                    name=r["name"],
                    unique=bool(r["unique"]),
                    origin=r.get("origin", "c"),
                    columns=tuple(c["name"] for c in sorted(cols, key=lambda c: c["seqno"])),
                )
            )
        return result

    async def row_count(self, table: str) -> int:
        row = await self._db.execute_fetchone(f"SELECT COUNT(*) AS n FROM {quote_ident(table)}")
        return int(row["n"]) if row else 0

    async def table_sql(self, table: str) -> str | None:
        """Return the ``CREATE TABLE`` statement stored in ``sqlite_master``."""
        row = await self._db.execute_fetchone(
            "SELECT sql FROM sqlite_master WHERE type = 'table' AND name = ?",
            (table,),
        )
        return row["sql"] if row else None
