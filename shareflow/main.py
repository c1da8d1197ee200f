"""FastAPI application for the ShareFlow signaling relay."""
from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager, suppress
from typing import AsyncIterator

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .core.config import Settings, settings
from .routers import admin, signaling
from .services.sessions import SessionSupervisor

logger = logging.getLogger(__name__)


async def sweep_rooms(supervisor: SessionSupervisor, interval: float) -> None:
    """Periodically drop idle rooms until cancelled."""

    while True:
        await asyncio.sleep(interval)
        try:
            supervisor.sweep()
        except Exception as exc:  # noqa: BLE001 - keep sweeping on the next tick
            logger.exception("Room sweep failed: %s", exc)


def create_app(app_settings: Settings | None = None) -> FastAPI:
    """Build the app with its own supervisor; state lives for the app's lifetime."""

    config = app_settings or settings
    supervisor = SessionSupervisor(settings=config)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        logging.getLogger("shareflow").setLevel(config.log_level.upper())
        logger.info("Starting relay (env=%s, origins=%s)", config.app_env, ", ".join(config.cors_allow_origins))
        sweeper = asyncio.create_task(sweep_rooms(supervisor, config.sweep_interval_seconds))
        try:
            yield
        finally:
            sweeper.cancel()
            with suppress(asyncio.CancelledError):
                await sweeper
            await supervisor.aclose()
            logger.info("Relay stopped")

    app = FastAPI(title="ShareFlow Signaling Relay", version="1.0.0", lifespan=lifespan)
    app.state.supervisor = supervisor

    if config.cors_allow_origins:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=config.cors_allow_origins,
            allow_credentials=True,
            allow_methods=["GET", "POST"],
            allow_headers=["*"],
        )

    app.include_router(admin.router)
    app.include_router(signaling.router, prefix="/api", tags=["signaling"])
    return app


app = create_app()
