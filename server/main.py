"""
FastAPI application exposing the SQLModel-backed persist store.

Databases, migrations and the persist driver come from the dependency
injection container and are started and stopped by the app lifespan.
"""

import logging
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI, Request, status
from fastapi.responses import JSONResponse, ORJSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from core.container import container
from core.database import Database
from core.exceptions import DuplicateKeyError, InvalidConversionError, StorageError
from core.health import get_health_status, set_startup_time
from core.logging import configure_logging, get_logger
from core.persist import PersistDriver
from routers import persist
from routers.persist import get_database, get_persist

# Initialize settings and logging
settings = container.settings()
configure_logging(settings)
logger = get_logger(__name__)

# Suppress noisy loggers
logging.getLogger("uvicorn").setLevel(logging.WARNING)
logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
logging.getLogger("uvicorn.error").setLevel(logging.WARNING)
logging.getLogger("watchfiles").setLevel(logging.WARNING)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan management."""
    # Startup
    logger.info("Starting persist service")

    database = container.database()
    # Creating the driver registers its migration
    persist_driver = container.persist()

    await database.startup()
    applied = await database.migrate()
    if applied:
        logger.info("Migrations applied", count=applied)

    await persist_driver.start()
    set_startup_time()

    logger.info("Services started successfully")
    yield

    # Shutdown
    await persist_driver.shutdown()
    await database.shutdown()
    logger.info("Services shutdown complete")


app = FastAPI(
    title="Persist Service",
    version="1.0.0",
    description="Key/value persistence over SQLModel databases",
    lifespan=lifespan,
    default_response_class=ORJSONResponse
)


class CatchAllExceptionsMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        try:
            return await call_next(request)
        except Exception as e:
            logger.error(f"Unhandled exception: {type(e).__name__}: {str(e)}", exc_info=True)
            return JSONResponse(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                content={
                    "success": False,
                    "error": f"{type(e).__name__}: {str(e)}",
                    "detail": "Internal server error"
                }
            )


app.add_middleware(CatchAllExceptionsMiddleware)


@app.exception_handler(DuplicateKeyError)
async def duplicate_key_handler(request: Request, exc: DuplicateKeyError):
    return JSONResponse(
        status_code=status.HTTP_409_CONFLICT,
        content={"success": False, "error": str(exc), "key": exc.key}
    )


@app.exception_handler(InvalidConversionError)
async def invalid_conversion_handler(request: Request, exc: InvalidConversionError):
    return JSONResponse(
        status_code=422,
        content={"success": False, "error": str(exc), "key": exc.key}
    )


@app.exception_handler(StorageError)
async def storage_error_handler(request: Request, exc: StorageError):
    logger.error("Storage failure", path=request.url.path, error=str(exc))
    return JSONResponse(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        content={"success": False, "error": "Storage unavailable"}
    )


app.include_router(persist.router)


@app.get("/health")
async def health_check(
    database: Database = Depends(get_database),
    persist_driver: PersistDriver = Depends(get_persist)
):
    """Detailed health check."""
    return await get_health_status(database, persist_driver)


if __name__ == "__main__":
    import uvicorn
    logger.info("Starting persist service",
                host=settings.host, port=settings.port, debug=settings.debug)
    uvicorn.run(
        "main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
        reload_dirs=["."] if settings.debug else None,
        reload_excludes=["*.pyc", "__pycache__", "*.log", "*.db"] if settings.debug else None,
    )
