"""
Commerce connector service — application entry point.
"""

from __future__ import annotations

import logging
import sys

import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from config.settings import config
from connectors.routes import get_connector_manager, router as integrations_router
from database.session import engine
from scheduler.lock import DistributedLock
from scheduler.periodic import JobScheduler

logging.basicConfig(
    level=logging.DEBUG if config.debug else logging.INFO,
    format="%(asctime)s  %(levelname)-8s  %(name)s — %(message)s",
    stream=sys.stdout,
)
for _noisy in ("httpcore", "httpx", "asyncpg", "urllib3"):
    logging.getLogger(_noisy).setLevel(logging.WARNING)
logger = logging.getLogger(__name__)


def create_app() -> FastAPI:
    app = FastAPI(
        title="Commerce Connectors",
        version="1.0.0",
        description="OAuth connectors and scheduled data sync for Shopify and Klaviyo.",
    )

    # CORS
    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Routes
    app.include_router(integrations_router, prefix="/api/integrations")

    scheduler = JobScheduler()
    app.state.scheduler = scheduler

    @app.on_event("startup")
    async def on_startup():
        manager = get_connector_manager()

        logger.info("Discovering connectors…")
        manager.registry.discover()

        # OAuth handshakes abandoned before the last shutdown
        await manager.purge_stale_oauth_states()

        if config.sync_scheduler_enabled:
            scheduler.add(manager.build_sync_job(DistributedLock(engine)))
            scheduler.start()
        else:
            logger.info("Scheduled sync disabled (SYNC_SCHEDULER_ENABLED=false)")

        logger.info("Application ready to accept requests.")

    @app.on_event("shutdown")
    async def on_shutdown():
        await scheduler.stop()
        await engine.dispose()
        logger.info("Shutdown complete.")

    return app


app = create_app()

if __name__ == "__main__":
    uvicorn.run(
        "main:app",
        host=config.host,
        port=config.port,
        reload=config.debug,
        log_level="debug" if config.debug else "info",
    )
