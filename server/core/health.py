"""Health check utilities for daemon monitoring.

Provides uptime tracking and health status for the /health endpoint.
"""
import time
from typing import Dict, Any, TYPE_CHECKING

from sqlalchemy import text

if TYPE_CHECKING:
    from core.database import Database
    from core.persist import PersistDriver

# Module-level startup time tracking
_startup_time: float = 0.0


def set_startup_time() -> None:
    """Record the application startup time. Call once during lifespan startup."""
    global _startup_time
    _startup_time = time.time()


def get_uptime() -> float:
    """Get uptime in seconds since startup."""
    return time.time() - _startup_time if _startup_time else 0.0


async def check_database(database: "Database") -> Dict[str, bool]:
    """Check connectivity of every registered database."""
    results = {}
    for database_id in database.ids:
        try:
            async with database.get_session(database_id) as session:
                await session.execute(text("SELECT 1"))
            results[database_id] = True
        except Exception:
            results[database_id] = False
    return results


async def check_persist(persist: "PersistDriver") -> bool:
    """Read the persist table counts; never writes to the store."""
    try:
        await persist.stats()
        return True
    except Exception:
        return False


async def get_health_status(
    database: "Database",
    persist: "PersistDriver"
) -> Dict[str, Any]:
    """Get health status for /health endpoint.

    Returns:
        Dict containing status, uptime, per-database checks and reaper state.
    """
    databases = await check_database(database)
    persist_healthy = await check_persist(persist)

    overall_status = "healthy" if (all(databases.values()) and persist_healthy) else "degraded"

    return {
        "status": overall_status,
        "uptime_seconds": round(get_uptime(), 1),
        "checks": {
            "databases": databases,
            "persist": persist_healthy,
        },
        "tidy_running": persist.tidy_service.running,
        "query_history": database.history.enabled,
    }
