"""Targeted data fixups that run after the schema is final."""

from __future__ import annotations

import json
import logging

import aiosqlite

from dbwarden.storage.database import Database, utcnow
from dbwarden.storage.errors import SoftError

logger = logging.getLogger(__name__)


async def repair_git_providers(db: Database) -> SoftError | None:
    """Reset the ``git.providers`` setting to ``[]`` if it is not a JSON array.

    A missing setting or a JSON ``null`` is fine.  Failures are returned as
    a soft error; the application can still start with a broken setting.
    """
    try:
        row = await db.execute_fetchone(
            "SELECT id, value FROM system_settings "
            "WHERE category = ? AND key = ? AND deleted_at IS NULL",
            ("git", "providers"),
        )
        if row is None:
            return None

        try:
            parsed = json.loads(row["value"])
            valid = parsed is None or isinstance(parsed, list)
        except (TypeError, ValueError):
            valid = False
        if valid:
            return None

        logger.info("Fixing corrupted git.providers data (old value: %r)", row["value"])
        await db.execute(
            "UPDATE system_settings SET value = ?, value_type = ?, updated_at = ? WHERE id = ?",
            ("[]", "array", utcnow(), row["id"]),
        )
        logger.info("Git providers data fixed successfully")
    except aiosqlite.Error as exc:
        logger.warning("Failed to fix git providers data: %s", exc)
        return SoftError("data_repair", "system_settings.git.providers", str(exc))
    return None
