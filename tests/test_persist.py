"""Persist driver: create/set/get/remove/tidy against SQLite."""

from __future__ import annotations

import asyncio
import uuid
from datetime import timedelta

import pytest
from pydantic import BaseModel

from constants import NEVER_EXPIRES
from core.exceptions import DuplicateKeyError, InvalidConversionError, SerializationError, StorageError
from core.health import check_persist, get_health_status
from core.persist import CreatePersistModel, PersistDriver, expiration_date, utcnow
from models.persist import PersistModel


class PersistedValue(BaseModel):
    buffer: str


def tag() -> str:
    return str(uuid.uuid4())


async def expire() -> None:
    await asyncio.sleep(0.05)


@pytest.mark.asyncio
async def test_get_missing_key_returns_none(persist: PersistDriver) -> None:
    assert await persist.get(tag(), str) is None


@pytest.mark.asyncio
async def test_create_get(persist: PersistDriver) -> None:
    key = tag()
    await persist.create(key, "Persist")
    assert await persist.get(key, str) == "Persist"


@pytest.mark.asyncio
async def test_double_create_fails_and_keeps_first_value(persist: PersistDriver) -> None:
    key = tag()
    await persist.create(key, "first")
    with pytest.raises(DuplicateKeyError) as excinfo:
        await persist.create(key, "second")
    assert excinfo.value.key == key
    assert await persist.get(key, str) == "first"


@pytest.mark.asyncio
async def test_set_twice_overwrites(persist: PersistDriver) -> None:
    key = tag()
    await persist.set(key, "test1")
    await persist.set(key, "test2")
    assert await persist.get(key, str) == "test2"
    assert await persist.db.query(PersistModel).filter(PersistModel.id == key).count() == 1


@pytest.mark.asyncio
async def test_expires(persist: PersistDriver) -> None:
    key1, key2 = tag(), tag()
    await persist.set(key1, "ThisIsTest1", expires=0)
    await persist.set(key2, "ThisIsTest2", expires=10)
    await expire()
    assert await persist.get(key1, str) is None
    assert await persist.get(key2, str) == "ThisIsTest2"


@pytest.mark.asyncio
async def test_expire_and_add(persist: PersistDriver) -> None:
    key = tag()
    await persist.set(key, "ThisIsTest1", expires=timedelta(seconds=0))
    await expire()
    assert await persist.get(key, str) is None

    # row is still present, so this goes through the update path
    await persist.set(key, "ThisIsTest2", expires=timedelta(seconds=10))
    assert await persist.get(key, str) == "ThisIsTest2"


@pytest.mark.asyncio
async def test_create_on_expired_key_is_duplicate(persist: PersistDriver) -> None:
    key = tag()
    await persist.create(key, "old", expires=0)
    await expire()
    with pytest.raises(DuplicateKeyError):
        await persist.create(key, "new")


@pytest.mark.asyncio
async def test_set_without_expiry_clears_expiration(persist: PersistDriver) -> None:
    key = tag()
    await persist.set(key, "short", expires=60)
    await persist.set(key, "forever")

    record = await persist.db.query(PersistModel).filter(PersistModel.id == key).first()
    assert record is not None
    assert record.expires == NEVER_EXPIRES


@pytest.mark.asyncio
async def test_codable(persist: PersistDriver) -> None:
    key = tag()
    await persist.set(key, PersistedValue(buffer="Persist"))
    value = await persist.get(key, PersistedValue)
    assert value == PersistedValue(buffer="Persist")


@pytest.mark.asyncio
async def test_structured_values(persist: PersistDriver) -> None:
    key = tag()
    await persist.set(key, {"a": [1, 2, 3], "b": None})
    assert await persist.get(key, dict) == {"a": [1, 2, 3], "b": None}


@pytest.mark.asyncio
async def test_get_wrong_type_raises_invalid_conversion(persist: PersistDriver) -> None:
    key = tag()
    await persist.set(key, "not a number")
    with pytest.raises(InvalidConversionError) as excinfo:
        await persist.get(key, int)
    assert excinfo.value.key == key
    assert excinfo.value.as_type is int


@pytest.mark.asyncio
@pytest.mark.parametrize(
    ("stored", "as_type"),
    [("5", int), ("true", bool), (1, bool), (1, str), ({"buffer": 1}, PersistedValue)],
)
async def test_get_does_not_coerce_between_json_types(persist: PersistDriver, stored, as_type) -> None:
    key = tag()
    await persist.set(key, stored)
    with pytest.raises(InvalidConversionError):
        await persist.get(key, as_type)


@pytest.mark.asyncio
async def test_stats_counts_without_writing(persist: PersistDriver) -> None:
    await persist.set(tag(), "a", expires=0)
    await persist.set(tag(), "b")
    await expire()

    assert await persist.stats() == {"database_id": "default", "entries": 2, "expired": 1}
    assert await persist.stats() == {"database_id": "default", "entries": 2, "expired": 1}


@pytest.mark.asyncio
async def test_health_check_leaves_user_keys_alone(database, persist: PersistDriver) -> None:
    await persist.set("_health_check", "user data")

    status = await get_health_status(database, persist)

    assert status["checks"]["persist"] is True
    assert await persist.get("_health_check", str) == "user data"
    assert await persist.db.query(PersistModel).count() == 1


@pytest.mark.asyncio
async def test_health_check_reports_missing_table(database) -> None:
    driver = PersistDriver(database)
    assert await check_persist(driver) is False


@pytest.mark.asyncio
async def test_unserializable_value_writes_nothing(persist: PersistDriver) -> None:
    key = tag()
    with pytest.raises(SerializationError):
        await persist.set(key, object())
    with pytest.raises(SerializationError):
        await persist.create(key, {1, 2})
    assert await persist.db.query(PersistModel).filter(PersistModel.id == key).count() == 0


@pytest.mark.asyncio
async def test_remove(persist: PersistDriver) -> None:
    key = tag()
    await persist.set(key, "ThisIsTest1")
    await persist.remove(key)
    assert await persist.get(key, str) is None


@pytest.mark.asyncio
async def test_remove_missing_key_is_noop(persist: PersistDriver) -> None:
    await persist.remove(tag())


@pytest.mark.asyncio
async def test_remove_expired_key(persist: PersistDriver) -> None:
    key = tag()
    await persist.set(key, "gone", expires=0)
    await expire()
    await persist.remove(key)
    await persist.create(key, "fresh")
    assert await persist.get(key, str) == "fresh"


@pytest.mark.asyncio
async def test_tidy_removes_only_expired(persist: PersistDriver) -> None:
    expired, permanent, later = tag(), tag(), tag()
    await persist.set(expired, "a", expires=0)
    await persist.set(permanent, "b")
    await persist.set(later, "c", expires=60)
    await expire()

    assert await persist.tidy() == 1
    assert await persist.tidy() == 0
    assert await persist.db.query(PersistModel).count() == 2
    assert await persist.get(permanent, str) == "b"
    assert await persist.get(later, str) == "c"


@pytest.mark.asyncio
async def test_tidy_concurrent_with_other_keys(persist: PersistDriver) -> None:
    for index in range(5):
        await persist.set(f"old-{index}", index, expires=0)
    await expire()

    async def writer(index: int) -> int:
        await persist.set(f"live-{index}", index)
        return await persist.get(f"live-{index}", int)

    results = await asyncio.gather(persist.tidy(), *(writer(index) for index in range(5)))

    assert results[1:] == [0, 1, 2, 3, 4]
    assert await persist.db.query(PersistModel).filter(PersistModel.id.like("old-%")).count() == 0
    assert await persist.db.query(PersistModel).filter(PersistModel.id.like("live-%")).count() == 5


@pytest.mark.asyncio
async def test_tidy_never_raises(database) -> None:
    # migration never run, so the table is missing
    driver = PersistDriver(database)
    assert await driver.tidy() == 0


@pytest.mark.asyncio
async def test_storage_failure_propagates(database) -> None:
    driver = PersistDriver(database)
    with pytest.raises(StorageError):
        await driver.get("key", str)
    with pytest.raises(StorageError):
        await driver.set("key", "value")


@pytest.mark.asyncio
async def test_end_to_end_scenario(persist: PersistDriver) -> None:
    await persist.create("a", "x")
    assert await persist.get("a", str) == "x"
    with pytest.raises(DuplicateKeyError):
        await persist.create("a", "y")
    await persist.set("a", "z")
    assert await persist.get("a", str) == "z"
    await persist.remove("a")
    assert await persist.get("a", str) is None


def test_driver_registers_migration_once(settings) -> None:
    from core.database import Database

    database = Database(settings)
    PersistDriver(database)
    PersistDriver(database)
    names = [migration.name for migration, _ in database.migrations]
    assert names == [CreatePersistModel().name]


def test_expiration_date() -> None:
    now = utcnow()
    assert expiration_date(None, now) == NEVER_EXPIRES
    assert expiration_date(30, now) == now + timedelta(seconds=30)
    assert expiration_date(timedelta(minutes=1), now) == now + timedelta(minutes=1)
    assert now.tzinfo is None
