"""Shared fixtures: a file-backed SQLite database per test."""

from __future__ import annotations

import os

# Settings read at import time by main.py; keep them away from ./data
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("LOG_FORMAT", "console")
os.environ.setdefault("LOG_LEVEL", "WARNING")

from typing import TYPE_CHECKING, AsyncIterator

import pytest
import pytest_asyncio

from core.config import Settings
from core.database import Database
from core.persist import PersistDriver

if TYPE_CHECKING:
    from pathlib import Path


def sqlite_url(path: Path) -> str:
    return f"sqlite+aiosqlite:///{path}"


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    return Settings(database_url=sqlite_url(tmp_path / "persist.db"), log_format="console")


@pytest_asyncio.fixture
async def database(settings: Settings) -> AsyncIterator[Database]:
    database = Database(settings)
    await database.startup()
    yield database
    await database.shutdown()


@pytest_asyncio.fixture
async def persist(database: Database) -> AsyncIterator[PersistDriver]:
    driver = PersistDriver(database)
    await database.migrate()
    yield driver
    await driver.shutdown()
