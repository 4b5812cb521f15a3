"""Async database service with SQLModel and SQLAlchemy 2.0.

`Database` owns one engine per database ID and hands out `DatabaseHandle`s,
which expose row-level primitives (insert, filtered query, update, delete)
and schema helpers for migrations.
"""

import enum
import logging
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any, Dict, Generic, List, Optional, Type, TypeVar

from sqlalchemy import delete as sa_delete, event, func
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm.exc import StaleDataError
from sqlmodel import SQLModel, select

from constants import DEFAULT_DATABASE_ID
from core.config import Settings
from core.exceptions import DatabaseNotConfiguredError, StorageError
from core.logging import get_logger
from core.migrations import Migrations, Migrator

logger = get_logger(__name__)

ModelT = TypeVar("ModelT", bound=SQLModel)


# ============================================================================
# Query History
# ============================================================================

@dataclass
class QueryRecord:
    sql: str
    database_id: str
    parameters: Any = None
    timestamp: float = field(default_factory=time.time)


class QueryHistory:
    """Records executed SQL while enabled."""

    def __init__(self):
        self.enabled = False
        self.queries: List[QueryRecord] = []

    def start(self) -> None:
        self.enabled = True
        self.queries = []

    def stop(self) -> None:
        self.enabled = False

    def clear(self) -> None:
        self.queries = []

    def attach(self, engine: AsyncEngine, database_id: str) -> None:
        """Listen for statements executed on `engine`."""

        @event.listens_for(engine.sync_engine, "before_cursor_execute")
        def _record(conn, cursor, statement, parameters, context, executemany):
            if self.enabled:
                self.queries.append(QueryRecord(sql=statement, database_id=database_id, parameters=parameters))


# ============================================================================
# Database Handle
# ============================================================================

class InsertStatus(enum.Enum):
    OK = "ok"
    CONSTRAINT_VIOLATION = "constraint_violation"


@dataclass
class InsertResult(Generic[ModelT]):
    """Outcome of `DatabaseHandle.insert`.

    Integrity failures come back as `CONSTRAINT_VIOLATION`; every other
    failure raises `StorageError`.
    """

    status: InsertStatus
    record: ModelT

    @property
    def ok(self) -> bool:
        return self.status is InsertStatus.OK


class QueryBuilder(Generic[ModelT]):
    """Filtered query over a single model."""

    def __init__(self, handle: "DatabaseHandle", model: Type[ModelT]):
        self._handle = handle
        self._model = model
        self._clauses: List[Any] = []
        self._order: List[Any] = []

    def filter(self, *clauses) -> "QueryBuilder[ModelT]":
        self._clauses.extend(clauses)
        return self

    def sort(self, *order) -> "QueryBuilder[ModelT]":
        self._order.extend(order)
        return self

    def _select(self):
        stmt = select(self._model)
        if self._clauses:
            stmt = stmt.where(*self._clauses)
        if self._order:
            stmt = stmt.order_by(*self._order)
        return stmt

    async def first(self) -> Optional[ModelT]:
        async with self._handle.session() as session:
            result = await session.execute(self._select().limit(1))
            return result.scalars().first()

    async def all(self) -> List[ModelT]:
        stmt = self._select()
        if self._handle.page_size_limit is not None:
            stmt = stmt.limit(self._handle.page_size_limit)
        async with self._handle.session() as session:
            result = await session.execute(stmt)
            return list(result.scalars().all())

    async def count(self) -> int:
        stmt = select(func.count()).select_from(self._model)
        if self._clauses:
            stmt = stmt.where(*self._clauses)
        async with self._handle.session() as session:
            result = await session.execute(stmt)
            return result.scalar_one()

    async def delete(self) -> int:
        """Delete every matching row. Returns the number deleted."""
        stmt = sa_delete(self._model)
        if self._clauses:
            stmt = stmt.where(*self._clauses)
        async with self._handle.session() as session:
            result = await session.execute(stmt)
            await session.commit()
            return result.rowcount or 0


class DatabaseHandle:
    """Row-level access to one database.

    Each primitive runs in its own session and commits before returning.
    SQLAlchemy failures surface as `StorageError`.
    """

    def __init__(self, database: "Database", database_id: str, page_size_limit: Optional[int] = None):
        self.database = database
        self.database_id = database_id
        self.page_size_limit = page_size_limit

    @asynccontextmanager
    async def session(self):
        try:
            async with self.database.get_session(self.database_id) as session:
                yield session
        except SQLAlchemyError as e:
            raise StorageError(str(e)) from e

    def query(self, model: Type[ModelT]) -> QueryBuilder[ModelT]:
        return QueryBuilder(self, model)

    async def insert(self, record: ModelT) -> InsertResult[ModelT]:
        try:
            async with self.database.get_session(self.database_id) as session:
                session.add(record)
                await session.commit()
        except IntegrityError as e:
            logger.debug("Insert blocked by constraint",
                         table=type(record).__tablename__, error=str(e.orig))
            return InsertResult(InsertStatus.CONSTRAINT_VIOLATION, record)
        except SQLAlchemyError as e:
            raise StorageError(str(e)) from e
        return InsertResult(InsertStatus.OK, record)

    async def update(self, record: ModelT) -> bool:
        """Persist changes to a record loaded through this handle.

        Returns False when the row no longer exists.
        """
        try:
            async with self.database.get_session(self.database_id) as session:
                session.add(record)
                await session.commit()
        except StaleDataError:
            return False
        except SQLAlchemyError as e:
            raise StorageError(str(e)) from e
        return True

    async def delete(self, record: ModelT) -> None:
        async with self.session() as session:
            await session.delete(record)
            await session.commit()

    async def create_table(self, model: Type[SQLModel]) -> None:
        try:
            async with self.database.engine(self.database_id).begin() as conn:
                await conn.run_sync(model.__table__.create, checkfirst=True)
        except SQLAlchemyError as e:
            raise StorageError(str(e)) from e

    async def drop_table(self, model: Type[SQLModel]) -> None:
        try:
            async with self.database.engine(self.database_id).begin() as conn:
                await conn.run_sync(model.__table__.drop, checkfirst=True)
        except SQLAlchemyError as e:
            raise StorageError(str(e)) from e


# ============================================================================
# Database Service
# ============================================================================

@dataclass
class DatabaseConfig:
    url: str
    engine_kwargs: Dict[str, Any] = field(default_factory=dict)


class Database:
    """Async database service with SQLModel."""

    def __init__(self, settings: Settings):
        self.settings = settings
        self.history = QueryHistory()
        self.migrations = Migrations()
        self._configs: Dict[str, DatabaseConfig] = {}
        self._engines: Dict[str, AsyncEngine] = {}
        self._sessions: Dict[str, async_sessionmaker] = {}
        self.default_id: Optional[str] = None

        engine_kwargs = {"echo": settings.database_echo}
        if not settings.database_url.startswith("sqlite"):
            engine_kwargs.update(
                pool_size=settings.database_pool_size,
                max_overflow=settings.database_max_overflow,
            )
        self.use(settings.database_url, DEFAULT_DATABASE_ID, default=True, **engine_kwargs)

    def use(self, url: str, database_id: str, *, default: bool = False, **engine_kwargs) -> None:
        """Register a database. Must be called before startup."""
        if self._engines:
            raise RuntimeError("Databases must be registered before startup")
        self._configs[database_id] = DatabaseConfig(url=url, engine_kwargs=engine_kwargs)
        if default or self.default_id is None:
            self.default_id = database_id

    def resolve_id(self, database_id: Optional[str] = None) -> str:
        resolved = database_id if database_id is not None else self.default_id
        if resolved not in self._configs:
            raise DatabaseNotConfiguredError(database_id)
        return resolved

    @property
    def ids(self) -> List[str]:
        return list(self._configs)

    async def startup(self):
        """Create engines and session factories for every registered database."""
        try:
            # Disable verbose database and asyncio logging
            logging.getLogger("aiosqlite").setLevel(logging.WARNING)
            logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
            logging.getLogger("sqlalchemy.dialects").setLevel(logging.WARNING)
            logging.getLogger("sqlalchemy.pool").setLevel(logging.WARNING)

            for database_id, config in self._configs.items():
                engine = create_async_engine(config.url, **config.engine_kwargs)
                self.history.attach(engine, database_id)
                self._engines[database_id] = engine
                self._sessions[database_id] = async_sessionmaker(
                    bind=engine,
                    class_=AsyncSession,
                    expire_on_commit=False
                )

            logger.info("Database initialized successfully", databases=self.ids, default=self.default_id)

        except Exception as e:
            logger.error("Database startup failed", error=str(e))
            raise

    async def shutdown(self):
        """Close database connections."""
        for engine in self._engines.values():
            await engine.dispose()
        if self._engines:
            logger.info("Database connections closed")
        self._engines.clear()
        self._sessions.clear()

    def engine(self, database_id: Optional[str] = None) -> AsyncEngine:
        resolved = self.resolve_id(database_id)
        if resolved not in self._engines:
            raise RuntimeError("Database not initialized")
        return self._engines[resolved]

    @asynccontextmanager
    async def get_session(self, database_id: Optional[str] = None):
        """Get async database session."""
        resolved = self.resolve_id(database_id)
        if resolved not in self._sessions:
            raise RuntimeError("Database not initialized")

        async with self._sessions[resolved]() as session:
            try:
                yield session
            except Exception:
                await session.rollback()
                raise
            finally:
                await session.close()

    def db(self, database_id: Optional[str] = None, *, page_size_limit: Optional[int] = None) -> DatabaseHandle:
        """Return a handle on the database with ID (default database when None)."""
        return DatabaseHandle(self, self.resolve_id(database_id), page_size_limit=page_size_limit)

    # ============================================================================
    # Migrations
    # ============================================================================

    def migrator(self) -> Migrator:
        return Migrator(self)

    async def migrate(self) -> int:
        """Run pending migrations as one batch."""
        migrator = self.migrator()
        await migrator.setup_if_needed()
        return await migrator.prepare_batch()

    async def revert(self) -> int:
        """Revert every applied migration batch."""
        migrator = self.migrator()
        await migrator.setup_if_needed()
        return await migrator.revert_all_batches()
