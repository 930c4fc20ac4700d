"""layersync - WFS layer synchronization service.

Main FastAPI application.
"""

import sys
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from loguru import logger

from layersync import __version__
from layersync.api.router import router as layers_router
from layersync.api.ws import router as ws_router
from layersync.config import Settings, get_settings
from layersync.engine import SyncEngine


def configure_logging(level: str = "INFO") -> None:
    """Route loguru output to stderr at ``level``."""
    logger.remove()
    logger.add(
        sys.stderr,
        level=level.upper(),
        format="<green>{time:HH:mm:ss.SSS}</green> | <level>{level: <8}</level> | "
               "<cyan>{name}</cyan> - <level>{message}</level>",
    )


def create_app(settings: Optional[Settings] = None, engine: Optional[SyncEngine] = None) -> FastAPI:
    """Build the application.

    Args:
        settings: Settings to build the engine from (default: environment).
        engine: Pre-built engine (tests); it is not closed on shutdown.
    """
    settings = settings or get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("=" * 60)
        logger.info(f"  {settings.app_name} v{__version__} - INITIALIZING")
        logger.info("=" * 60)

        owned = engine is None
        app.state.engine = engine or SyncEngine(settings)
        logger.info(f"WFS endpoint: {app.state.engine.settings.wfs_url}")
        logger.info(f"Catalog: {len(app.state.engine.catalog)} layers")
        logger.info(f"Temporal layer: {app.state.engine.temporal.layer_name}")

        yield

        logger.info(f"{settings.app_name} shutting down...")
        if owned:
            await app.state.engine.aclose()

    app = FastAPI(
        title="layersync",
        description="Layer synchronization engine for WFS map clients",
        version=__version__,
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(layers_router)
    app.include_router(ws_router)

    @app.get("/health")
    async def health(request: Request, check_geoserver: bool = Query(False)):
        """Health check endpoint; optionally checks the feature service."""
        out = {
            "status": "operational",
            "version": __version__,
            "system": settings.app_name,
        }
        if check_geoserver:
            available = await request.app.state.engine.client.check_availability()
            out["geoserver"] = "available" if available else "unavailable"
        return out

    return app


def main() -> None:
    import uvicorn

    settings = get_settings()
    configure_logging(settings.log_level)
    uvicorn.run(create_app(settings), host=settings.host, port=settings.port)


if __name__ == "__main__":
    main()
