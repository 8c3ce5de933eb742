import asyncio
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from bookshop.api.main import build_api_router
from bookshop.clients.catalog_client import CatalogClient
from bookshop.consumers import ConsumerHost, OrderPlacedConsumer, PaymentProcessedConsumer
from bookshop.core.broker import BrokerConnection
from bookshop.core.config import ServiceRole, Settings, settings
from bookshop.core.db import Database
from bookshop.core.errors import BookshopError
from bookshop.core.metrics import (
    background_task_errors_total,
    background_tasks_running,
    registry,
)
from bookshop.core.redis import ProcessedMessageCache, RedisClient
from bookshop.events import Queue
from bookshop.middleware.logging_middleware import LoggingMiddleware
from bookshop.middleware.metrics_middleware import MetricsMiddleware
from bookshop.middleware.tracing_middleware import TracingMiddleware
from bookshop.models import SERVICE_TABLES, PaymentMethod
from bookshop.workers.outbox_relay import OutboxRelay

# Must run before any logger is used
from bookshop.core.logging import configure_logging, get_logger

configure_logging()
logger = get_logger(__name__)

# Queues each role publishes to through its outbox
PUBLISHES = {
    ServiceRole.ORDER: [Queue.ORDER_PLACED],
    ServiceRole.PAYMENT: [Queue.PAYMENT_PROCESSED],
    ServiceRole.CATALOG: [],
}


def build_workers(
    role: ServiceRole,
    db: Database,
    broker: BrokerConnection,
    processed: ProcessedMessageCache | None,
    settings: Settings,
) -> list[ConsumerHost | OutboxRelay]:
    """Background loops for ``role``: its consumer host and its outbox relay"""
    workers: list[ConsumerHost | OutboxRelay] = []

    if role is ServiceRole.PAYMENT:
        handler = OrderPlacedConsumer(
            db, processed, method=PaymentMethod(settings.PAYMENT_DEFAULT_METHOD)
        )
        workers.append(ConsumerHost.from_settings(broker, Queue.ORDER_PLACED, handler, settings))
    elif role is ServiceRole.CATALOG:
        handler = PaymentProcessedConsumer(db, processed)
        workers.append(
            ConsumerHost.from_settings(broker, Queue.PAYMENT_PROCESSED, handler, settings)
        )

    if PUBLISHES[role]:
        workers.append(OutboxRelay.from_settings(db, broker, settings))

    return workers


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Own every connection and background task of the service"""
    role: ServiceRole = app.state.role
    workers: list[ConsumerHost | OutboxRelay] = []
    tasks: list[asyncio.Task] = []
    monitor_task = None

    logger.info(
        "application_starting",
        service=settings.SERVICE_NAME,
        role=role.value,
        environment=settings.ENVIRONMENT,
    )

    db = Database(settings.SQLALCHEMY_DATABASE_URI)
    redis_client = RedisClient(settings.REDIS_URL)
    broker = BrokerConnection.from_settings(settings)
    catalog = None

    try:
        db.create_tables(SERVICE_TABLES[role])
        await redis_client.connect()
        await broker.connect()
        for queue in PUBLISHES[role]:
            await broker.declare_queue(queue)

        if role is ServiceRole.ORDER:
            catalog = CatalogClient(
                settings.CATALOG_SERVICE_URL, timeout=settings.CATALOG_REQUEST_TIMEOUT_SECONDS
            )

        app.state.db = db
        app.state.redis = redis_client
        app.state.broker = broker
        app.state.catalog = catalog

        processed = ProcessedMessageCache(redis_client, settings.PROCESSED_MESSAGE_TTL)
        workers = build_workers(role, db, broker, processed, settings)
        for worker in workers:
            tasks.append(asyncio.create_task(worker.run(), name=worker.name))
            background_tasks_running.labels(task_name=worker.name).set(1)

        if tasks:
            monitor_task = asyncio.create_task(
                monitor_background_tasks(*tasks), name="task-monitor"
            )

        logger.info(
            "application_started",
            role=role.value,
            background_tasks=[task.get_name() for task in tasks],
        )
    except Exception as e:
        logger.error(
            "application_startup_failed",
            error_type=type(e).__name__,
            error_message=str(e),
            exc_info=True,
        )
        background_task_errors_total.labels(task_name="startup", error_type="startup_error").inc()
        await broker.close()
        await redis_client.disconnect()
        db.dispose()
        raise

    yield

    logger.info("application_shutting_down")

    try:
        await stop_workers(workers, tasks, settings.CONSUMER_SHUTDOWN_GRACE_SECONDS)

        if monitor_task and not monitor_task.done():
            monitor_task.cancel()
            await asyncio.gather(monitor_task, return_exceptions=True)

        if catalog:
            await catalog.close()
        await broker.close()
        await redis_client.disconnect()
        db.dispose()

        logger.info("application_shutdown_complete")
    except Exception as e:
        logger.error(
            "application_shutdown_error",
            error_type=type(e).__name__,
            error_message=str(e),
            exc_info=True,
        )


async def stop_workers(workers, tasks: list[asyncio.Task], grace_seconds: float) -> None:
    """
    Ask every worker to stop, then cancel whatever is still running after
    ``grace_seconds``. A cancelled consumer never acknowledges its in-flight
    message, so it is redelivered after restart.
    """
    for worker in workers:
        worker.stop()
    if not tasks:
        return

    _, pending = await asyncio.wait(tasks, timeout=grace_seconds)
    for task in pending:
        logger.warning("background_task_cancelled_on_shutdown", task_name=task.get_name())
        task.cancel()
    await asyncio.gather(*tasks, return_exceptions=True)

    for task in tasks:
        background_tasks_running.labels(task_name=task.get_name()).set(0)


async def monitor_background_tasks(*tasks: asyncio.Task, interval: float = 30) -> None:
    """Report background tasks that died with an exception"""
    reported: set[str] = set()
    while len(reported) < len(tasks):
        await asyncio.sleep(interval)

        for task in tasks:
            task_name = task.get_name()
            if task_name in reported or not task.done():
                continue
            reported.add(task_name)
            background_tasks_running.labels(task_name=task_name).set(0)
            if task.cancelled():
                continue

            error = task.exception()
            if error is not None:
                logger.error(
                    "background_task_failed",
                    task_name=task_name,
                    error_type=type(error).__name__,
                    error_message=str(error),
                    exc_info=error,
                )
                background_task_errors_total.labels(
                    task_name=task_name, error_type=type(error).__name__
                ).inc()


async def bookshop_error_handler(request: Request, exc: BookshopError) -> JSONResponse:
    log = logger.error if exc.status_code >= 500 else logger.info
    log(
        "request_rejected",
        error_type=type(exc).__name__,
        error_message=exc.message,
        status_code=exc.status_code,
        **exc.context,
    )
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message})


def create_app(role: ServiceRole = settings.SERVICE_ROLE) -> FastAPI:
    """Build the FastAPI application for one service role"""
    app = FastAPI(
        title=f"{settings.PROJECT_NAME} {role.value} service",
        openapi_url=f"{settings.API_V1_STR}/openapi.json",
        lifespan=lifespan,
    )
    app.state.role = role

    if settings.ENABLE_METRICS:

        @app.get("/metrics", include_in_schema=False)
        async def metrics():
            """Prometheus metrics endpoint"""
            return Response(generate_latest(registry), media_type=CONTENT_TYPE_LATEST)

    app.add_exception_handler(BookshopError, bookshop_error_handler)

    # Registered in reverse: tracing runs first, so the access log has trace.id
    app.add_middleware(MetricsMiddleware)
    app.add_middleware(LoggingMiddleware)
    app.add_middleware(TracingMiddleware)

    app.include_router(build_api_router(role), prefix=settings.API_V1_STR)
    return app


app = create_app(settings.SERVICE_ROLE)
