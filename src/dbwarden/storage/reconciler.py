"""Declarative shape reconciliation: bring tables up to their model definitions.

The reconciler is additive only.  It creates missing tables, appends missing
columns with ``ALTER TABLE ... ADD COLUMN`` and creates missing indexes.  It
never removes or retypes a column, which is why the column-removal engine
must run before it.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

import aiosqlite

from dbwarden.storage.database import Database
from dbwarden.storage.errors import MigrationError
from dbwarden.storage.probe import SchemaProbe, quote_ident

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ColumnDef:
    """A column in a model descriptor.

    ``default`` is raw SQL (``"'pending'"``, ``"0"``, ``"CURRENT_TIMESTAMP"``).
    """

    name: str
    type: str = "TEXT"
    primary_key: bool = False
    autoincrement: bool = False
    not_null: bool = False
    default: str | None = None
    references: str | None = None

    def create_sql(self, inline_pk: bool) -> str:
        parts = [quote_ident(self.name), self.type]
        if inline_pk and self.primary_key:
            parts.append("PRIMARY KEY")
            if self.autoincrement:
                parts.append("AUTOINCREMENT")
        if self.not_null:
            parts.append("NOT NULL")
        if self.default is not None:
            parts.append(f"DEFAULT {self.default}")
        if self.references:
            parts.append(f"REFERENCES {self.references}")
        return " ".join(parts)

    def add_sql(self) -> str:
        """Column clause usable in ``ALTER TABLE ... ADD COLUMN``.

        SQLite refuses PRIMARY KEY on added columns and NOT NULL without a
        default, so those constraints are dropped here.
        """
        parts = [quote_ident(self.name), self.type]
        if self.not_null and self.default is not None:
            parts.append("NOT NULL")
        if self.default is not None:
            parts.append(f"DEFAULT {self.default}")
        if self.references:
            parts.append(f"REFERENCES {self.references}")
        return " ".join(parts)


@dataclass(frozen=True)
class IndexDef:
    """A secondary index on a table."""

    name: str
    columns: tuple[str, ...]
    unique: bool = False

    def create_sql(self, table: str) -> str:
        unique = "UNIQUE " if self.unique else ""
        cols = ", ".join(quote_ident(c) for c in self.columns)
        return (
            f"CREATE {unique}INDEX IF NOT EXISTS {quote_ident(self.name)} "
            f"ON {quote_ident(table)} ({cols})"
        )


@dataclass(frozen=True)
class TableModel:
    """Target shape of one table."""

    name: str
    columns: tuple[ColumnDef, ...]
    indexes: tuple[IndexDef, ...] = field(default_factory=tuple)

    @property
    def column_names(self) -> list[str]:
        return [c.name for c in self.columns]

    @property
    def primary_key(self) -> list[str]:
        return [c.name for c in self.columns if c.primary_key]

    def covers(self, columns) -> bool:
        """True if every name in *columns* is declared by this model."""
        return set(columns) <= set(self.column_names)

    def create_sql(self) -> str:
        pk = self.primary_key
        inline_pk = len(pk) == 1
        clauses = [c.create_sql(inline_pk) for c in self.columns]
        if len(pk) > 1:
            clauses.append("PRIMARY KEY (" + ", ".join(quote_ident(c) for c in pk) + ")")
        body = ",\n    ".join(clauses)
        return f"CREATE TABLE IF NOT EXISTS {quote_ident(self.name)} (\n    {body}\n)"


class SchemaReconciler:
    """Ensure every table in *models* exists with at least the declared shape.

    Parameters
    ----------
    db:
        An open :class:`~dbwarden.storage.database.Database`.
    models:
        Table descriptors, applied in order.
    """

    def __init__(self, db: Database, models: list[TableModel] | tuple[TableModel, ...]) -> None:
        self._db = db
        self._probe = SchemaProbe(db)
        self.models = list(models)

    async def ensure(self) -> list[str]:
        """Reconcile every model.

        Returns
        -------
        list[str]
            Human-readable descriptions of the changes made.

        Raises
        ------
        MigrationError
            If any DDL statement fails.
        """
        changes: list[str] = []
        for model in self.models:
            changes.extend(await self.ensure_table(model))
        logger.info(
            "Shape reconciliation completed: %d model(s), %d change(s)",
            len(self.models), len(changes),
        )
        return changes

    async def ensure_table(self, model: TableModel) -> list[str]:
        changes: list[str] = []
        try:
            if not await self._probe.table_exists(model.name):
                await self._db.execute(model.create_sql())
                logger.info("Created table %s", model.name)
                changes.append(f"create table {model.name}")
            else:
                live = set(await self._probe.column_names(model.name))
                for col in model.columns:
                    if col.name in live:
                        continue
                    await self._db.execute(
                        f"ALTER TABLE {quote_ident(model.name)} ADD COLUMN {col.add_sql()}"
                    )
                    logger.info("Added column %s.%s", model.name, col.name)
                    changes.append(f"add column {model.name}.{col.name}")

            existing = {i.name for i in await self._probe.indexes(model.name)}
            for index in model.indexes:
                if index.name in existing:
                    continue
                await self._db.execute(index.create_sql(model.name))
                changes.append(f"create index {index.name}")
        except aiosqlite.Error as exc:
            logger.error("Failed to reconcile table %s: %s", model.name, exc)
            raise MigrationError(
                f"failed to reconcile table {model.name}: {exc}", table=model.name
            ) from exc
        return changes
