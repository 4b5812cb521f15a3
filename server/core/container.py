"""Dependency injection container for the application."""

from dependency_injector import containers, providers

from core.config import Settings
from core.database import Database
from core.persist import PersistDriver


class Container(containers.DeclarativeContainer):
    """Application dependency injection container."""

    # Settings
    settings = providers.Singleton(
        Settings,
    )

    # Database (engines, migrations, query history)
    database = providers.Singleton(
        Database,
        settings=settings
    )

    # Persist driver (registers its migration on creation)
    persist = providers.Singleton(
        PersistDriver,
        database=database,
        database_id=settings.provided.persist_database_id,
        tidy_interval=settings.provided.persist_tidy_interval
    )


# Global container instance
container = Container()
