"""Schema migrations: registry and batch runner.

Applied migrations are logged per database in the `_migrations` table. Each
`prepare_batch` call applies every pending migration under one new batch
number, and batches are reverted newest first.
"""

from typing import TYPE_CHECKING, Dict, Iterator, List, Optional, Tuple

from core.exceptions import MigrationNotFoundError
from core.logging import get_logger
from models.migration import MigrationLog

if TYPE_CHECKING:
    from core.database import Database, DatabaseHandle

logger = get_logger(__name__)


class Migration:
    """Base class for schema migrations."""

    @property
    def name(self) -> str:
        cls = type(self)
        return f"{cls.__module__}.{cls.__qualname__}"

    async def prepare(self, db: "DatabaseHandle") -> None:
        raise NotImplementedError

    async def revert(self, db: "DatabaseHandle") -> None:
        raise NotImplementedError


class Migrations:
    """Ordered list of migrations, each bound to a database ID (None = default)."""

    def __init__(self):
        self._entries: List[Tuple[Migration, Optional[str]]] = []

    def add(self, migration: Migration, database_id: Optional[str] = None) -> bool:
        """Register a migration. Returns False if it was already registered."""
        for existing, existing_id in self._entries:
            if existing.name == migration.name and existing_id == database_id:
                return False
        self._entries.append((migration, database_id))
        return True

    def __iter__(self) -> Iterator[Tuple[Migration, Optional[str]]]:
        return iter(list(self._entries))

    def __len__(self) -> int:
        return len(self._entries)


class Migrator:
    """Runs the migrations registered on a `Database`."""

    def __init__(self, database: "Database"):
        self.database = database
        self.migrations = database.migrations

    def _entries(self) -> List[Tuple[Migration, str]]:
        return [(m, self.database.resolve_id(db_id)) for m, db_id in self.migrations]

    def _database_ids(self) -> List[str]:
        ids: List[str] = []
        for _, database_id in self._entries():
            if database_id not in ids:
                ids.append(database_id)
        return ids

    def _find(self, name: str, database_id: str) -> Migration:
        for migration, entry_id in self._entries():
            if migration.name == name and entry_id == database_id:
                return migration
        raise MigrationNotFoundError(name)

    async def _logs(self, database_id: str) -> List[MigrationLog]:
        return await self.database.db(database_id).query(MigrationLog).sort(MigrationLog.id).all()

    async def setup_if_needed(self) -> None:
        """Create the migration log in every database that has migrations."""
        for database_id in self._database_ids():
            await self.database.db(database_id).create_table(MigrationLog)

    async def preview_prepare_batch(self) -> List[Tuple[Migration, str]]:
        """List migrations that the next `prepare_batch` would apply."""
        applied: Dict[str, set] = {}
        for database_id in self._database_ids():
            applied[database_id] = {log.name for log in await self._logs(database_id)}
        return [
            (migration, database_id)
            for migration, database_id in self._entries()
            if migration.name not in applied[database_id]
        ]

    async def prepare_batch(self) -> int:
        """Apply pending migrations. Returns how many ran."""
        pending = await self.preview_prepare_batch()
        if not pending:
            return 0

        batches: Dict[str, int] = {}
        for migration, database_id in pending:
            if database_id not in batches:
                logs = await self._logs(database_id)
                batches[database_id] = max((log.batch for log in logs), default=0) + 1

            db = self.database.db(database_id)
            logger.info("Preparing migration", migration=migration.name,
                        database_id=database_id, batch=batches[database_id])
            await migration.prepare(db)
            result = await db.insert(MigrationLog(name=migration.name, batch=batches[database_id]))
            if not result.ok:
                logger.warning("Migration already logged", migration=migration.name, database_id=database_id)

        return len(pending)

    async def revert_last_batch(self) -> int:
        """Revert the newest batch in each database. Returns how many reverted."""
        reverted = 0
        for database_id in self._database_ids():
            logs = await self._logs(database_id)
            if not logs:
                continue
            last = max(log.batch for log in logs)
            db = self.database.db(database_id)
            for log in reversed([log for log in logs if log.batch == last]):
                migration = self._find(log.name, database_id)
                logger.info("Reverting migration", migration=log.name, database_id=database_id, batch=last)
                await migration.revert(db)
                await db.delete(log)
                reverted += 1
        return reverted

    async def revert_all_batches(self) -> int:
        """Revert every batch, newest first."""
        total = 0
        while True:
            reverted = await self.revert_last_batch()
            if not reverted:
                return total
            total += reverted
