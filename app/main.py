import asyncio
import sys
from contextlib import asynccontextmanager, suppress

from fastapi import FastAPI
from loguru import logger

from app import settings
from app.db import create_schema, dispose_engine, init_engine
from app.errors import EngineError, register_exception_handlers
from app.lifecycle import reservation_manager
from app.routers import admin, appointments, bookings, provider, webhooks


def configure_logging() -> None:
    logger.remove()
    logger.add(sys.stderr, level=settings.log_level)


async def _auto_start_loop(interval: float) -> None:
    """Move confirmed reservations whose scheduled time has passed to in_progress."""
    while True:
        await asyncio.sleep(interval)
        try:
            started = await reservation_manager.start_due()
        except EngineError as exc:
            logger.warning("Auto-start sweep failed: {}", exc.detail)
            continue
        if started:
            logger.info("Auto-started {} reservation(s)", started)


@asynccontextmanager
async def lifespan(app: FastAPI):
    configure_logging()
    init_engine(settings.db_url)
    if settings.generate_schemas:
        await create_schema()

    sweeper = None
    if settings.auto_start_interval > 0:
        sweeper = asyncio.create_task(_auto_start_loop(settings.auto_start_interval))
    logger.info("lavellh-bookings-ms started")
    try:
        yield
    finally:
        if sweeper is not None:
            sweeper.cancel()
            with suppress(asyncio.CancelledError):
                await sweeper
        await dispose_engine()


def create_app() -> FastAPI:
    app = FastAPI(title="Lavellh Bookings", version="0.1.0", lifespan=lifespan)
    register_exception_handlers(app)
    for module in (bookings, appointments, provider, admin, webhooks):
        app.include_router(module.router)
    return app


app = create_app()
