"""Startup schema migration: legacy column fixups, then shape reconciliation."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

from dbwarden.storage.column_removal import ColumnRemoval, RemovalStatus
from dbwarden.storage.database import Database
from dbwarden.storage.errors import SoftError
from dbwarden.storage.models import ALL_MODELS, index_map, models_by_table
from dbwarden.storage.reconciler import SchemaReconciler, TableModel

logger = logging.getLogger(__name__)


# Legacy fixups as (name, table, columns-to-remove) tuples, applied in order.
# There is no version table: each fixup probes the live schema and is a no-op
# once its columns are gone.  New fixups should be appended here.
MIGRATIONS: list[tuple[str, str, tuple[str, ...]]] = [
    (
        "drop_repository_review_config_repo_fields",
        "repository_review_configs",
        ("provider", "owner", "repo"),
    ),
    ("drop_review_dsl_config", "reviews", ("dsl_config",)),
    ("drop_review_rule_summary", "review_rules", ("summary",)),
    ("drop_review_rule_run_summary", "review_rule_runs", ("summary",)),
]


@dataclass
class MigrationOutcome:
    applied: list[str] = field(default_factory=list)
    dropped: list[str] = field(default_factory=list)
    changes: list[str] = field(default_factory=list)
    soft_errors: list[SoftError] = field(default_factory=list)


class MigrationManager:
    """Bring the database to the current schema.

    Column removals always complete (or abort startup) before the reconciler
    runs, because the reconciler only ever adds structure.

    Parameters
    ----------
    db:
        An open :class:`~dbwarden.storage.database.Database` with foreign
        keys disabled.
    models:
        Target table shapes.  Defaults to the application schema.
    """

    def __init__(self, db: Database, models: tuple[TableModel, ...] | list[TableModel] = ALL_MODELS) -> None:
        self._db = db
        self._models = tuple(models)
        self._remover = ColumnRemoval(
            db,
            index_map=index_map(self._models),
            models=models_by_table(self._models),
        )

    async def apply_pending(self) -> MigrationOutcome:
        """Run every legacy fixup, then reconcile all models.

        Returns
        -------
        MigrationOutcome
            Names of fixups that rebuilt a table, tables dropped for rebuild,
            reconciler changes and soft errors.

        Raises
        ------
        MigrationError
            From any fixup or from the reconciler.
        """
        logger.info("Running database migrations")
        outcome = MigrationOutcome()

        for name, table, columns in MIGRATIONS:
            result = await self._remover.remove_columns(table, columns)
            outcome.soft_errors.extend(result.soft_errors)
            if result.removed:
                logger.info("Applied fixup %s", name)
                outcome.applied.append(name)
            if result.status is RemovalStatus.DROPPED_FOR_REBUILD:
                outcome.dropped.append(table)

        reconciler = SchemaReconciler(self._db, self._models)
        outcome.changes = await reconciler.ensure()

        logger.info(
            "Database migrations completed: %d model(s), %d fixup(s) applied",
            len(self._models), len(outcome.applied),
        )
        return outcome
