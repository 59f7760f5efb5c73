"""Tests for the git.providers data repair."""

from __future__ import annotations

from unittest.mock import AsyncMock, patch

import aiosqlite
import pytest

from dbwarden.storage.database import Database
from dbwarden.storage.repair import repair_git_providers


async def _insert_providers(db: Database, value: str, value_type: str = "string") -> None:
    await db.execute(
        "INSERT INTO system_settings (category, key, value, value_type) VALUES (?, ?, ?, ?)",
        ("git", "providers", value, value_type),
    )


async def _providers(db: Database) -> dict | None:
    return await db.execute_fetchone(
        "SELECT value, value_type, updated_at FROM system_settings "
        "WHERE category = 'git' AND key = 'providers'"
    )


async def test_missing_setting_is_fine(db: Database):
    assert await repair_git_providers(db) is None
    assert await _providers(db) is None


@pytest.mark.parametrize("value", ["", "not json", '{"github": true}', '"[]"'])
async def test_invalid_value_is_reset(db: Database, value: str):
    await _insert_providers(db, value)
    assert await repair_git_providers(db) is None

    row = await _providers(db)
    assert row["value"] == "[]"
    assert row["value_type"] == "array"
    assert row["updated_at"] is not None


async def test_valid_list_is_untouched(db: Database):
    value = '[{"id": "github", "type": "github"}]'
    await _insert_providers(db, value, "array")
    assert await repair_git_providers(db) is None

    row = await _providers(db)
    assert row["value"] == value
    assert row["updated_at"] is None


async def test_null_value_is_untouched(db: Database):
    """``null`` decodes to an empty provider list, so it is not corruption."""
    await _insert_providers(db, "null", "array")
    assert await repair_git_providers(db) is None

    row = await _providers(db)
    assert row["value"] == "null"
    assert row["updated_at"] is None


async def test_soft_deleted_setting_is_ignored(db: Database):
    await _insert_providers(db, "broken")
    await db.execute("UPDATE system_settings SET deleted_at = '2024-01-01T00:00:00+00:00'")
    assert await repair_git_providers(db) is None
    assert (await _providers(db))["value"] == "broken"


async def test_database_error_is_soft(db: Database):
    with patch.object(
        Database, "execute_fetchone",
        new=AsyncMock(side_effect=aiosqlite.OperationalError("no such table: system_settings")),
    ):
        soft = await repair_git_providers(db)
    assert soft is not None
    assert soft.stage == "data_repair"
    assert soft.target == "system_settings.git.providers"
    assert "no such table" in soft.message
