"""Error types for the storage lifecycle.

Two channels are kept apart:

- **Fatal** failures raise a :class:`StartupError` subclass.  The process
  must not continue with an ambiguous schema.
- **Soft** failures (tuning pragmas, best-effort index recreation, health
  inspection) are logged as warnings and returned as :class:`SoftError`
  records so callers can see that storage is running degraded.
"""

from __future__ import annotations

from dataclasses import dataclass


class StartupError(Exception):
    """Base class for errors that abort storage startup."""


class DatabaseConnectionError(StartupError):
    """The database file could not be opened or configured."""


class MigrationError(StartupError):
    """A structural migration or the shape reconciler failed.

    Parameters
    ----------
    message:
        Human-readable description.
    table:
        Table being migrated when the failure happened, if any.
    """

    def __init__(self, message: str, table: str | None = None) -> None:
        super().__init__(message)
        self.table = table


@dataclass(frozen=True)
class SoftError:
    """A non-fatal degradation recorded during startup."""

    stage: str
    target: str
    message: str

    def __str__(self) -> str:
        return f"{self.stage}[{self.target}]: {self.message}"
