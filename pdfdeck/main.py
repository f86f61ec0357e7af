"""FastAPI application entry point and AWS Lambda handler.

Local mode: uvicorn pdfdeck.main:create_app --factory
"""

import asyncio
import uuid
from contextlib import asynccontextmanager
from functools import lru_cache

import structlog
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from mangum import Mangum
from pydantic import ValidationError

from pdfdeck.api import router
from pdfdeck.config import Settings, load_settings
from pdfdeck.dependencies import Services, build_services
from pdfdeck.errors import register_error_handlers
from pdfdeck.log import configure_logging
from pdfdeck.models import HealthResponse, StartJobMessage

REQUEST_ID_HEADER = "X-Request-Id"


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler for startup/shutdown."""
    logger = structlog.get_logger()
    services: Services = app.state.services
    settings = services.settings

    # Startup
    logger.info(
        "Starting pdfdeck API",
        service=settings.service_name,
        state_backend=settings.state_backend,
        queue_backend=settings.queue_backend,
        anti_replay=settings.anti_replay_enabled,
    )

    stop_event = asyncio.Event()
    worker_task = None
    if settings.run_worker_in_process and services.worker is not None:
        worker_task = asyncio.create_task(
            services.worker.run(services.queue, stop_event=stop_event, wait_seconds=1)
        )
        logger.info("In-process worker started")

    yield

    # Shutdown
    stop_event.set()
    if worker_task is not None:
        await worker_task
    logger.info("Shutting down pdfdeck API")


def create_app(
    settings: Settings | None = None,
    services: Services | None = None,
) -> FastAPI:
    """
    Build the FastAPI application.

    With no arguments, settings are resolved from the environment, validated
    and every collaborator is constructed. Tests pass prebuilt services.
    """
    if services is None:
        settings = settings or load_settings()
        configure_logging(settings)
        settings.require_api()
        services = build_services(
            settings, with_worker=settings.run_worker_in_process)
    settings = services.settings

    app = FastAPI(
        title="pdfdeck",
        description="Converts uploaded PDFs into structured slide decks",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.services = services

    # Add CORS middleware (the sidebar client calls from another origin)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=False,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def bind_request_context(request: Request, call_next):
        request_id = (request.headers.get(REQUEST_ID_HEADER) or "").strip() or str(uuid.uuid4())
        request.state.request_id = request_id
        structlog.contextvars.clear_contextvars()
        structlog.contextvars.bind_contextvars(
            request_id=request_id,
            method=request.method,
            path=request.url.path,
        )
        try:
            response = await call_next(request)
        finally:
            structlog.contextvars.clear_contextvars()
        response.headers[REQUEST_ID_HEADER] = request_id
        return response

    register_error_handlers(app)

    # Include signed API routes
    app.include_router(router, prefix=settings.api_prefix)

    @app.get("/health", response_model=HealthResponse)
    async def health_check() -> HealthResponse:
        """Unauthenticated liveness check."""
        return HealthResponse()

    @app.get("/public/health", response_model=HealthResponse)
    async def public_health_check() -> HealthResponse:
        """Unauthenticated liveness check for external monitors."""
        return HealthResponse()

    return app


# =============================================================================
# AWS Lambda Handler
# =============================================================================


@lru_cache(maxsize=1)
def _http_handler() -> Mangum:
    # Wrap FastAPI app with Mangum for Lambda compatibility
    return Mangum(create_app(), lifespan="auto")


@lru_cache(maxsize=1)
def _worker_services() -> Services:
    settings = load_settings()
    configure_logging(settings)
    settings.require_worker()
    return build_services(settings, with_api=False)


def _handle_sqs_batch(records: list[dict]) -> dict:
    """Run each SQS record through the worker; report the ones to redeliver."""
    logger = structlog.get_logger()
    worker = _worker_services().worker
    failures: list[dict] = []

    async def run_batch() -> None:
        for record in records:
            try:
                message = StartJobMessage.model_validate_json(record["body"])
            except ValidationError as e:
                logger.error("Dropping malformed job message",
                             message_id=record.get("messageId"), error=str(e))
                continue
            if not await worker.handle(message):
                failures.append({"itemIdentifier": record["messageId"]})

    asyncio.run(run_batch())
    return {"batchItemFailures": failures}


def handler(event, context):
    """
    AWS Lambda entry point.

    Supports:
    - SQS batches of job start messages (routed to the worker)
    - Regular API Gateway / ALB requests (routed to FastAPI)
    - Scheduled warming events (returns immediately to keep container warm)
    """
    logger = structlog.get_logger()

    # Check if this is a warming ping (CloudWatch scheduled event)
    if event.get("source") == "aws.events" or event.get("detail-type") == "Scheduled Event":
        logger.info("Received warming ping, keeping container warm")
        return {"statusCode": 200, "body": "warm"}

    records = event.get("Records") or []
    if records and all(r.get("eventSource") == "aws:sqs" for r in records):
        return _handle_sqs_batch(records)

    # Regular request - route to FastAPI via Mangum
    return _http_handler()(event, context)
