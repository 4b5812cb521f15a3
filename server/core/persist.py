"""Persist driver for storing cross-request key/value pairs.

Values are encoded by a pluggable codec and stored in the `_persist_` table
with an optional expiration. Expired rows read as absent straight away and
are physically removed by the periodic tidy task.
"""

from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional, Type, TypeVar, Union

from sqlalchemy import or_

from constants import NEVER_EXPIRES, SET_MAX_ATTEMPTS
from core.cleanup import TidyService
from core.codec import DECODE_ERRORS, Codec, JSONCodec
from core.database import Database, DatabaseHandle, InsertStatus
from core.exceptions import DuplicateKeyError, InvalidConversionError, StorageError
from core.logging import get_logger, log_persist_operation
from core.migrations import Migration
from models.persist import PersistModel

logger = get_logger(__name__)

T = TypeVar("T")

Expires = Union[timedelta, int, float]


def utcnow() -> datetime:
    """Naive UTC now, matching how `expires` is stored."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def expiration_date(expires: Optional[Expires], now: Optional[datetime] = None) -> datetime:
    """Absolute expiration for a relative duration (seconds or timedelta)."""
    if expires is None:
        return NEVER_EXPIRES
    if not isinstance(expires, timedelta):
        expires = timedelta(seconds=expires)
    return (now or utcnow()) + expires


class CreatePersistModel(Migration):
    """Create and drop the persist table."""

    async def prepare(self, db: DatabaseHandle) -> None:
        await db.create_table(PersistModel)

    async def revert(self, db: DatabaseHandle) -> None:
        await db.drop_table(PersistModel)


class PersistDriver:
    """Key/value store with optional expiration, backed by a `Database`.

    Creating a driver registers the persist table migration with the
    database's migration list; run `Database.migrate()` before first use.
    `start()` launches the tidy task and `shutdown()` stops it.
    """

    def __init__(
        self,
        database: Database,
        database_id: Optional[str] = None,
        codec: Optional[Codec] = None,
        tidy_interval: Optional[float] = None,
    ):
        self.database = database
        self.database_id = database_id
        self.codec = codec or JSONCodec()
        database.migrations.add(CreatePersistModel(), database_id)
        self.tidy_service = TidyService(self.tidy, tidy_interval)

    @property
    def db(self) -> DatabaseHandle:
        return self.database.db(self.database_id)

    async def start(self) -> None:
        await self.tidy_service.start()

    async def shutdown(self) -> None:
        await self.tidy_service.stop()

    async def create(self, key: str, value: Any, expires: Optional[Expires] = None) -> None:
        """Create a new key. Raises `DuplicateKeyError` if the key exists, expired or not."""
        data = self.codec.encode(value)
        db = self.db
        record = PersistModel(id=key, data=data, expires=expiration_date(expires))
        result = await db.insert(record)
        if result.status is InsertStatus.CONSTRAINT_VIOLATION:
            log_persist_operation(logger, "create", key, db.database_id, duplicate=True)
            raise DuplicateKeyError(key)
        log_persist_operation(logger, "create", key, db.database_id, expires=record.expires)

    async def set(self, key: str, value: Any, expires: Optional[Expires] = None) -> None:
        """Create or overwrite a key.

        Data and expiration are both replaced, so a `set` without `expires`
        makes the key permanent.
        """
        data = self.codec.encode(value)
        expires_at = expiration_date(expires)
        db = self.db

        for _ in range(SET_MAX_ATTEMPTS):
            result = await db.insert(PersistModel(id=key, data=data, expires=expires_at))
            if result.status is InsertStatus.OK:
                log_persist_operation(logger, "set", key, db.database_id, expires=expires_at)
                return

            existing = await db.query(PersistModel).filter(PersistModel.id == key).first()
            if existing is None:
                # removed between insert and lookup
                continue
            existing.data = data
            existing.expires = expires_at
            if await db.update(existing):
                log_persist_operation(logger, "set", key, db.database_id,
                                      expires=expires_at, updated=True)
                return

        logger.error("Persist set failed after retries", key=key,
                     database_id=db.database_id, attempts=SET_MAX_ATTEMPTS)
        raise StorageError(f"Could not set key {key}: row kept changing under concurrent writers")

    async def get(self, key: str, as_type: Type[T]) -> Optional[T]:
        """Return the value for key decoded as `as_type`, or None if absent or expired."""
        db = self.db
        record = await db.query(PersistModel).filter(
            PersistModel.id == key,
            or_(PersistModel.expires.is_(None), PersistModel.expires > utcnow()),
        ).first()
        if record is None:
            log_persist_operation(logger, "get", key, db.database_id, hit=False)
            return None

        log_persist_operation(logger, "get", key, db.database_id, hit=True)
        try:
            return self.codec.decode(record.data, as_type)
        except DECODE_ERRORS as e:
            logger.warning("Persist value conversion failed", key=key,
                           database_id=db.database_id, as_type=getattr(as_type, "__name__", str(as_type)),
                           error=str(e))
            raise InvalidConversionError(key, as_type) from e

    async def remove(self, key: str) -> None:
        """Remove key. Removing a missing key is not an error."""
        db = self.db
        deleted = await db.query(PersistModel).filter(PersistModel.id == key).delete()
        log_persist_operation(logger, "remove", key, db.database_id, deleted=bool(deleted))

    async def stats(self) -> Dict[str, Any]:
        """Row counts for the persist table. Read-only.

        `expired` counts rows past their expiration that the tidy task has
        not removed yet.
        """
        db = self.db
        entries = await db.query(PersistModel).count()
        expired = await db.query(PersistModel).filter(PersistModel.expires < utcnow()).count()
        return {"database_id": db.database_id, "entries": entries, "expired": expired}

    async def tidy(self) -> int:
        """Delete expired rows. Returns the number removed; never raises."""
        try:
            db = self.db
            count = await db.query(PersistModel).filter(PersistModel.expires < utcnow()).delete()
        except Exception as e:
            logger.error("Failed to tidy expired persist entries", error=str(e))
            return 0
        if count > 0:
            logger.info("Cleaned up expired persist entries", count=count, database_id=db.database_id)
        return count
