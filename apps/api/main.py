"""FastAPI application entrypoint for the Comic Library Metadata API."""

import asyncio
import logging
import sys
from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from api.routes import approval, health
from core.config import Settings, get_settings
from db.session import async_session_maker, create_db_and_tables, engine
from services.anilist_client import AniListClient
from services.catalog_store import CatalogStore
from services.comicvine_client import ComicVineClient
from services.metadata_approval import MetadataApprovalService
from services.metadata_provider import MetadataProvider, MetadataSourceClient

logger = logging.getLogger(__name__)


def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        handlers=[logging.StreamHandler(sys.stdout)],
    )
    # Request lines are noise next to pipeline progress
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)


def build_approval_service(config: Settings, clients: list[MetadataSourceClient]) -> MetadataApprovalService:
    provider = MetadataProvider(clients)
    return MetadataApprovalService.build(provider, CatalogStore(async_session_maker), settings=config)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Startup wires the metadata sources and session sweeper; shutdown stops them."""
    logger.info("Starting Comic Library Metadata API...")
    config = get_settings()
    config.ensure_directories()
    await create_db_and_tables()

    clients = [ComicVineClient(), AniListClient()]
    service = build_approval_service(config, clients)
    app.state.approval_service = service

    shutdown_event = asyncio.Event()
    app.state.shutdown_event = shutdown_event
    sweeper = asyncio.create_task(service.run_sweeper(shutdown_event))

    logger.info("API startup complete (sources: %s)", ", ".join(c.name for c in clients))
    yield

    logger.info("Initiating graceful shutdown...")
    shutdown_event.set()
    try:
        await asyncio.wait_for(sweeper, timeout=5.0)
    except asyncio.TimeoutError:
        logger.warning("Session sweeper did not stop in time; cancelling")
        sweeper.cancel()

    for client in clients:
        try:
            await client.aclose()
        except Exception as e:
            logger.warning("Error closing %s client: %s", client.name, e)

    logger.info("Closing database connections...")
    await engine.dispose()
    logger.info("Graceful shutdown complete")


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    config = get_settings()
    configure_logging(config.log_level)

    app = FastAPI(
        title=config.app_name,
        version=config.app_version,
        description="REST API for reviewing and applying comic and manga metadata",
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.cors_origins_list,
        allow_origin_regex=r"https?://(localhost|127\.0\.0\.1)(:\d+)?",
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(health.router, tags=["Health"])
    app.include_router(approval.router, prefix="/approval", tags=["Approval"])

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    config = get_settings()
    uvicorn.run(
        "main:app",
        host=config.host,
        port=config.port,
        reload=config.debug,
        workers=config.workers if not config.debug else 1,
    )
