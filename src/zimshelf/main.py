import logging
import sys
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

import zimshelf.models  # noqa: F401 - register all models with SQLModel
from zimshelf.config import settings
from zimshelf.database import create_db_and_tables
from zimshelf.routers import api_router


def _configure_logging() -> None:
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
        handlers=[logging.StreamHandler(sys.stderr)],
        force=True,
    )
    for name in ("httpx", "httpcore", "uvicorn.access"):
        logging.getLogger(name).setLevel(logging.WARNING)


_configure_logging()
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(_app: FastAPI) -> AsyncIterator[None]:
    create_db_and_tables()
    settings.zim_dir.mkdir(parents=True, exist_ok=True)

    from zimshelf.services.kiwix_supervisor import get_supervisor, release_supervisor
    from zimshelf.services.scheduler import get_scheduler

    if settings.supervisor_enabled:
        await get_supervisor().start()
    if settings.scheduler_enabled:
        get_scheduler().start()
    logger.info("Application started")
    yield
    logger.info("Shutting down...")
    try:
        await get_scheduler().stop()
    except Exception:
        logger.exception("Failed to stop update scheduler")
    try:
        from zimshelf.services.download_service import shutdown as shutdown_downloads

        await shutdown_downloads()
    except Exception:
        logger.exception("Failed to shutdown downloads")
    try:
        await release_supervisor()
        logger.info("kiwix-serve supervisor released")
    except Exception:
        logger.exception("Failed to stop kiwix-serve")
    try:
        from zimshelf.database import engine

        engine.dispose()
        logger.info("Database engine disposed")
    except Exception:
        logger.exception("Failed to dispose database engine")
    logger.info("Shutdown complete")


app = FastAPI(
    title="zimshelf",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost:5173", "http://127.0.0.1:5173"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


app.include_router(api_router)


@app.get("/")
async def root() -> dict[str, str]:
    return {"status": "ok"}


@app.get("/health")
async def health() -> dict[str, str]:
    return {"status": "healthy"}
