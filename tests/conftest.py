# tests/conftest.py
import pytest

from dbwarden.storage.database import Database


@pytest.fixture
async def raw_db(tmp_path):
    """An opened, tuned database with no schema applied."""
    database = Database(str(tmp_path / "data" / "test.db"))
    await database.open()
    await database.pre_structural_config()
    yield database
    await database.close()


@pytest.fixture
async def db(tmp_path):
    """A database brought up through the full startup sequence."""
    database = Database(str(tmp_path / "data" / "test.db"))
    await database.initialize()
    yield database
    await database.close()
