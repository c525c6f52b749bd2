"""FastAPI sidecar exposing the BundleNudge agent to the host application."""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
import uvicorn

from bundlenudge.api.routes import router
from bundlenudge.client import BundleNudge
from bundlenudge.config import get_settings
from bundlenudge.utils.logging import setup_logger


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan context manager for startup/shutdown hooks.

    Startup:
    - Initialize logger
    - Create the data directory
    - Initialize the BundleNudge agent (crash check, verification window)

    Shutdown:
    - End the session cleanly and drain telemetry
    """
    settings = get_settings()
    logger = setup_logger(
        "bundlenudge",
        settings.log_file,
        level=logging.getLevelName(settings.log_level.upper()),
    )
    logger.info("BundleNudge agent starting up...")

    settings.data_dir.mkdir(parents=True, exist_ok=True)
    logger.debug(f"Ensured directory exists: {settings.data_dir}")

    sdk = await BundleNudge.initialize(settings)
    logger.info(
        f"BundleNudge agent ready on {settings.agent_host}:{settings.agent_port} "
        f"(version={sdk.get_current_version()})"
    )

    yield

    logger.info("BundleNudge agent shutting down...")
    await sdk.shutdown()


app = FastAPI(
    title="BundleNudge Agent",
    description="Over-the-air bundle update agent with automatic rollback",
    version="1.0.0",
    lifespan=lifespan,
)

app.include_router(router)


@app.get("/")
async def root():
    """Health check endpoint."""
    return {"status": "ok", "service": "bundlenudge-agent", "version": "1.0.0"}


def main():
    """Main entry point for running the agent."""
    settings = get_settings()
    uvicorn.run(
        app,
        host=settings.agent_host,
        port=settings.agent_port,
        log_level=settings.log_level.lower(),
        access_log=True,
    )


if __name__ == "__main__":
    main()
