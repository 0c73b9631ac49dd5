import asyncio
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from http import HTTPStatus

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from collector.config import settings
from collector.errors import IngestionError
from collector.ingestion import IngestionService
from collector.privacy import GeoIPCountryLookup
from collector.rate_limiter import SlidingWindowRateLimiter
from collector.schemas import BatchSubmission, StatusResponse
from collector.storage import create_gateway

# Setup basic logging
logging.basicConfig(level=settings.LOG_LEVEL)
logger = logging.getLogger(__name__)


@dataclass
class CollectorState:
    """Per-application state for the collector service."""
    ingestion: IngestionService | None = None
    sweep_task: asyncio.Task | None = None


def _build_ingestion_service() -> IngestionService:
    rate_limiter = SlidingWindowRateLimiter(
        limit=settings.RATE_LIMIT_MAX_BATCHES,
        window_seconds=settings.RATE_LIMIT_WINDOW_SECONDS,
    )
    return IngestionService(
        rate_limiter=rate_limiter,
        lookup=GeoIPCountryLookup(settings.GEOIP_DB_PATH),
        gateway=create_gateway(settings),
        max_insert=settings.MAX_INSERT,
        storage_timeout=settings.STORAGE_TIMEOUT_SECONDS,
    )


async def _rate_limit_sweep_job(rate_limiter: SlidingWindowRateLimiter) -> None:
    """Periodically drops rate limiter state for keys that have gone quiet."""
    while True:
        await asyncio.sleep(settings.RATE_LIMIT_SWEEP_SECONDS)
        removed = rate_limiter.sweep()
        logger.debug(f"Rate limiter sweep removed {removed} keys, {len(rate_limiter)} tracked")


# Callback to handle results of background tasks
def _handle_task_result(task: asyncio.Task):
    try:
        task.result()  # Raise exception if task failed
        logger.info(f"Background task {task.get_name()} completed successfully.")
    except asyncio.CancelledError:
        logger.info(f"Background task {task.get_name()} was cancelled.")
    except Exception as e:
        logger.error(f"Background task {task.get_name()} failed: {e}", exc_info=True)


async def _shutdown_tasks(state: CollectorState, owns_service: bool) -> None:
    """Handle graceful shutdown of background tasks and connections."""
    if state.sweep_task and not state.sweep_task.done():
        logger.info("Cancelling rate limiter sweep task...")
        state.sweep_task.cancel()
        try:
            await state.sweep_task
        except asyncio.CancelledError:
            logger.info("Rate limiter sweep task successfully cancelled.")

    if owns_service and state.ingestion is not None:
        logger.info("Closing storage engine and GeoIP reader...")
        await asyncio.to_thread(state.ingestion.gateway.dispose)
        close = getattr(state.ingestion.lookup, "close", None)
        if close is not None:
            close()
        logger.info("Storage engine and GeoIP reader closed.")


def create_app(state: CollectorState | None = None) -> FastAPI:
    """Build the collector application.

    Passing a ``state`` with a ready ``IngestionService`` skips building one
    from settings, which is how tests supply their own collaborators.
    """
    state = state or CollectorState()
    owns_service = state.ingestion is None

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Handles startup and shutdown events for the FastAPI application."""
        logger.info("Collector service starting up...")
        if state.ingestion is None:
            state.ingestion = _build_ingestion_service()

        logger.info("Scheduling rate limiter sweep as a background task...")
        state.sweep_task = asyncio.create_task(
            _rate_limit_sweep_job(state.ingestion.rate_limiter), name="rate_limit_sweep"
        )
        state.sweep_task.add_done_callback(_handle_task_result)

        yield

        logger.info("Collector service shutting down...")
        await _shutdown_tasks(state, owns_service)
        logger.info("Collector service shutdown complete.")

    app = FastAPI(lifespan=lifespan, title="API Analytics Collector Service")
    app.state.collector = state

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(IngestionError)
    async def ingestion_error_handler(request: Request, exc: IngestionError):
        client = request.client.host if request.client else "unknown"
        logger.warning(f"Rejected batch from {client}: {exc.message}")
        return JSONResponse(
            status_code=exc.status_code,
            content={"status": exc.status_code, "message": exc.message},
        )

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError):
        client = request.client.host if request.client else "unknown"
        logger.warning(f"Unparseable batch from {client}: {len(exc.errors())} errors")
        return JSONResponse(
            status_code=HTTPStatus.BAD_REQUEST,
            content={"status": HTTPStatus.BAD_REQUEST, "message": "Invalid request data."},
        )

    @app.get("/health", summary="Health check endpoint")
    async def health_check():
        """Provides a simple health check endpoint."""
        return {"status": "ok"}

    @app.post(
        "/api/log-request",
        status_code=HTTPStatus.CREATED,
        response_model=StatusResponse,
        summary="Log a batch of API requests",
    )
    @app.post(
        "/api/requests",
        status_code=HTTPStatus.CREATED,
        response_model=StatusResponse,
        summary="Log a batch of API requests",
    )
    async def log_requests(payload: BatchSubmission):
        """
        Receives a batch of logged requests from a client library.
        Valid requests are redacted according to the batch privacy level and
        stored with a single insert.
        """
        report = await state.ingestion.ingest(payload)
        logger.debug(f"Batch for {report.api_key}: {len(report.dropped)} requests dropped")
        return StatusResponse(
            status=HTTPStatus.CREATED, message="API requests logged successfully."
        )

    return app


app = create_app()


if __name__ == "__main__":
    # This is for local development running directly with `python -m collector.main`
    # For production, use `uvicorn collector.main:app --host 0.0.0.0 --port 8000`
    import uvicorn

    logger.info("Starting Uvicorn server for local development...")
    uvicorn.run(app, host=settings.APP_HOST, port=settings.APP_PORT)
