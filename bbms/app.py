"""
FastAPI application entry point for the monitoring backend.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from datetime import datetime, timezone

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from starlette.concurrency import run_in_threadpool

from bbms import realtime, worker
from bbms.config import get_settings
from bbms.dependencies import get_document_store, get_monitor, get_queue_client
from bbms.errors import BbmsError
from bbms.ledger import format_timestamp
from bbms.queue import InMemoryJobQueue
from bbms.routes import router
from bbms.schemas import HealthResponse

logger = logging.getLogger(__name__)


async def _drain_appends(interval_seconds: float) -> None:
    while True:
        try:
            await run_in_threadpool(worker.drain)
        except Exception:
            logger.exception("In-process append worker failed")
        await asyncio.sleep(interval_seconds)


def _check_ledger() -> None:
    settings = get_settings()
    try:
        count = get_document_store().ping(settings.rubidex_collection_id)
        logger.info("Ledger connection successful (%d documents)", count)
    except BbmsError as exc:
        logger.error("Ledger connection failed: %s", exc.message)


@contextlib.asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    tasks = []
    await run_in_threadpool(_check_ledger)
    if settings.monitor_enabled:
        tasks.append(
            asyncio.create_task(
                get_monitor().run_forever(settings.monitor_poll_interval_seconds)
            )
        )
    if settings.run_inprocess_worker or isinstance(get_queue_client(), InMemoryJobQueue):
        tasks.append(asyncio.create_task(_drain_appends(1.0)))
    try:
        yield
    finally:
        for task in tasks:
            task.cancel()
        for task in tasks:
            with contextlib.suppress(asyncio.CancelledError):
                await task


async def handle_bbms_error(request: Request, exc: BbmsError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    return JSONResponse(status_code=exc.status_code, content=exc.as_dict())


def create_app() -> FastAPI:
    settings = get_settings()
    logging.basicConfig(level=settings.log_level)
    app = FastAPI(
        title="BBMS Monitoring Backend", version=settings.app_version, lifespan=lifespan
    )
    app.add_exception_handler(BbmsError, handle_bbms_error)
    app.include_router(router, prefix=settings.api_prefix)
    app.include_router(realtime.router)

    @app.get("/health", response_model=HealthResponse)
    def health():
        return HealthResponse(
            status="OK",
            timestamp=format_timestamp(datetime.now(timezone.utc)),
            version=settings.app_version,
        )

    return app


app = create_app()
