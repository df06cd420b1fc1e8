from dotenv import load_dotenv

# Load environment variables BEFORE Settings is built
load_dotenv()

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Optional

import uvicorn
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from api.routers import health, webhook
from api.services.review_queue import ReviewHandler, ReviewQueue
from api.services.review_service import ReviewPipeline
from common.config import Settings
from common.errors import AuthError, ForbiddenError, SchemaError
from common.logging_config import configure_logging
from telemetry.metrics import MetricsRecorder
from telemetry.persistence import create_metrics_store, flush_metrics, restore_metrics, run_periodic_flush

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan context manager.

    Startup restores persisted metrics and starts the periodic flush.
    Shutdown stops the review worker and writes a final snapshot.
    """
    settings: Settings = app.state.settings
    recorder: MetricsRecorder = app.state.metrics
    store = app.state.metrics_store
    flush_task: Optional[asyncio.Task] = None

    if store is not None:
        restore_metrics(recorder, store)
        flush_task = asyncio.create_task(
            run_periodic_flush(recorder, store, settings.metrics_save_interval_seconds),
            name="metrics-flush",
        )

    mode = "created only" if settings.process_only_created else "created and updated"
    logger.info(f"PR review service ready (processing PR events: {mode})")

    yield

    await app.state.review_queue.shutdown()
    if flush_task is not None:
        flush_task.cancel()
        try:
            await flush_task
        except asyncio.CancelledError:
            pass
    if store is not None:
        await flush_metrics(recorder, store)
        store.close()
        logger.info("Metrics saved on shutdown")


def _error_body(error: str, message: str, **extra) -> dict:
    return {"error": error, "message": message, **extra}


async def _schema_error_handler(request: Request, exc: SchemaError) -> JSONResponse:
    logger.warning(f"Webhook rejected: {exc}")
    return JSONResponse(
        status_code=400,
        content=_error_body("Invalid payload", str(exc), details=exc.errors),
    )


async def _auth_error_handler(request: Request, exc: AuthError) -> JSONResponse:
    return JSONResponse(status_code=401, content=_error_body("Unauthorized", str(exc)))


async def _forbidden_error_handler(request: Request, exc: ForbiddenError) -> JSONResponse:
    return JSONResponse(status_code=403, content=_error_body("Forbidden", str(exc)))


async def _unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception(f"Unhandled error on {request.method} {request.url.path}")
    return JSONResponse(status_code=500, content=_error_body("Internal server error", str(exc)))


def create_app(
    settings: Optional[Settings] = None,
    *,
    pipeline: Optional[ReviewHandler] = None,
) -> FastAPI:
    """
    Build the webhook service.

    ``pipeline`` replaces the review handler the queue runs; by default the
    full git -> prompt -> agent pipeline is built from ``settings``.
    """
    settings = settings or Settings()
    configure_logging(settings.log_level)

    recorder = MetricsRecorder()
    handler = pipeline or ReviewPipeline.from_settings(settings, recorder)

    app = FastAPI(
        title="PR Review Bot",
        description="Receives pull request webhooks and runs an automated code review for each one.",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.metrics = recorder
    app.state.review_queue = ReviewQueue(handler)
    app.state.metrics_store = create_metrics_store(settings)

    app.add_exception_handler(SchemaError, _schema_error_handler)
    app.add_exception_handler(AuthError, _auth_error_handler)
    app.add_exception_handler(ForbiddenError, _forbidden_error_handler)
    app.add_exception_handler(Exception, _unhandled_error_handler)

    app.include_router(health.router, tags=["Health"])
    app.include_router(webhook.router, tags=["Webhook"])

    return app


def run_server():
    """
    Run the API server.

    This function is used as an entry point for the CLI command.
    """
    settings = Settings()
    uvicorn.run(
        "api.app:create_app",
        factory=True,
        host=settings.host,
        port=settings.port,
    )


if __name__ == "__main__":
    run_server()
