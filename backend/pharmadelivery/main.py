"""
FastAPI application entry point with health endpoints and service routing.

This module provides the main FastAPI application instance with CORS
configuration, request correlation, rate limiting, global exception handling
and the order, review, delivery run and realtime routers. The lifespan hook
connects Redis and runs the nightly neglected order sweep.
"""

import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from redis.exceptions import RedisError
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from pharmadelivery.api.v1.delivery_runs import router as delivery_runs_router
from pharmadelivery.api.v1.orders import router as orders_router
from pharmadelivery.api.v1.realtime import router as realtime_router
from pharmadelivery.api.v1.reviews import router as reviews_router
from pharmadelivery.cache.redis_client import close_redis_client, get_redis_client
from pharmadelivery.core.config import get_settings
from pharmadelivery.core.logging import (
    clear_context,
    configure_logging,
    get_logger,
    get_request_id,
    log_performance,
    set_request_id,
)
from pharmadelivery.core.rate_limit import limiter
from pharmadelivery.core.timeutils import seconds_until_local_hour
from pharmadelivery.database.connection import close_database_connections, get_session
from pharmadelivery.services.orders.metrics import ConflictCounter
from pharmadelivery.services.orders.repository import OrderRepositoryError
from pharmadelivery.services.orders.service import OrderService, OrderServiceError

# Configure logging before application initialization
configure_logging()
logger = get_logger(__name__)


async def run_neglected_order_sweep() -> int:
    """Cancel yesterday's unfinished orders once."""
    try:
        redis = await get_redis_client()
    except (RedisError, ConnectionError) as e:
        logger.warning("Sweep running without change notifications", error=str(e))
        redis = None

    async with get_session() as session:
        service = OrderService(session, redis)
        return await service.cancel_neglected_orders()


async def neglected_order_sweep_loop() -> None:
    """
    Background task that runs the neglected order sweep daily.

    Sleeps until the configured local hour in the business timezone, then
    cancels the previous day's orders that never reached a terminal status.
    """
    settings = get_settings()

    while True:
        delay = seconds_until_local_hour(
            settings.business_timezone,
            settings.neglected_sweep_hour,
        )
        logger.info("Neglected order sweep scheduled", seconds_until_run=round(delay))
        await asyncio.sleep(delay)

        try:
            cancelled = await run_neglected_order_sweep()
            logger.info("Neglected order sweep completed", cancelled=cancelled)
        except (
            OrderRepositoryError,
            OrderServiceError,
            SQLAlchemyError,
            RedisError,
            OSError,
        ) as e:
            logger.error(
                "Neglected order sweep failed",
                error=str(e),
                error_type=type(e).__name__,
            )


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """
    Application lifespan context manager for startup and shutdown events.

    Args:
        app: FastAPI application instance

    Yields:
        None during application runtime
    """
    settings = get_settings()

    logger.info(
        "Application starting",
        environment=settings.environment,
        debug=settings.debug,
        version=settings.app_version,
    )

    with log_performance(logger, "application_startup"):
        try:
            await get_redis_client()
        except (RedisError, ConnectionError) as e:
            # writes still work; change feeds resume once Redis is back
            logger.error("Redis unavailable at startup", error=str(e))

    sweep_task = None
    if settings.neglected_sweep_enabled and not settings.is_test:
        sweep_task = asyncio.create_task(neglected_order_sweep_loop())
        logger.info("Neglected order sweep started")

    yield

    logger.info("Application shutting down")
    with log_performance(logger, "application_shutdown"):
        if sweep_task is not None:
            sweep_task.cancel()
            try:
                await sweep_task
            except asyncio.CancelledError:
                pass
            logger.info("Neglected order sweep stopped")
        await close_redis_client()
        await close_database_connections()


# Initialize FastAPI application
settings = get_settings()
app = FastAPI(
    title=settings.app_name,
    version=settings.app_version,
    description="Pharmacy delivery order lifecycle API",
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_url="/openapi.json",
    lifespan=lifespan,
    debug=settings.debug,
)

# Configure rate limiting
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

# Configure CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=["X-Request-ID", "Retry-After"],
)


@app.middleware("http")
async def request_logging_middleware(request: Request, call_next):
    """
    Middleware for request logging and correlation ID management.

    Args:
        request: Incoming HTTP request
        call_next: Next middleware or route handler

    Returns:
        HTTP response with X-Request-ID header
    """
    request_id = set_request_id(request.headers.get("X-Request-ID"))

    logger.info(
        "Request received",
        method=request.method,
        path=request.url.path,
        client_host=request.client.host if request.client else None,
    )

    try:
        with log_performance(
            logger,
            "request_processing",
            method=request.method,
            path=request.url.path,
        ):
            response = await call_next(request)

        response.headers["X-Request-ID"] = request_id

        logger.info(
            "Request completed",
            method=request.method,
            path=request.url.path,
            status_code=response.status_code,
        )

        return response
    except Exception as e:
        logger.error(
            "Request failed",
            method=request.method,
            path=request.url.path,
            error=str(e),
            error_type=type(e).__name__,
        )
        raise
    finally:
        clear_context()


def validation_details(exc: RequestValidationError) -> list[dict]:
    """Reduce pydantic errors to JSON-safe fields; ``ctx`` may hold exceptions."""
    return [
        {
            "loc": list(error.get("loc", ())),
            "msg": error.get("msg", ""),
            "type": error.get("type", ""),
        }
        for error in exc.errors()
    ]


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    """Answer malformed requests with the validation details."""
    details = validation_details(exc)
    logger.warning(
        "Request validation failed",
        method=request.method,
        path=request.url.path,
        errors=details,
    )

    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content={
            "error": "Validation Error",
            "message": "Request validation failed",
            "details": details,
            "requestId": get_request_id(),
        },
    )


@app.exception_handler(Exception)
async def global_exception_handler(
    request: Request, exc: Exception
) -> JSONResponse:
    """
    Handle unexpected exceptions with a generic message and the request id.

    Args:
        request: HTTP request that caused exception
        exc: Exception that was raised

    Returns:
        JSON response without internal details
    """
    logger.error(
        "Unhandled exception",
        method=request.method,
        path=request.url.path,
        error=str(exc),
        error_type=type(exc).__name__,
        exc_info=True,
    )

    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={
            "error": "Internal Server Error",
            "message": "An unexpected error occurred",
            "requestId": get_request_id(),
        },
    )


@app.get(
    "/health",
    status_code=status.HTTP_200_OK,
    tags=["Health"],
    summary="Health check endpoint",
)
async def health_check() -> dict[str, str]:
    """Always 200 while the process is serving requests."""
    return {
        "status": "healthy",
        "service": settings.app_name,
        "version": settings.app_version,
        "environment": settings.environment,
    }


@app.get(
    "/ready",
    status_code=status.HTTP_200_OK,
    tags=["Health"],
    summary="Readiness check endpoint",
)
async def readiness_check():
    """
    Readiness check for orchestration.

    The database is required. Redis only degrades realtime delivery, so it
    is reported but does not fail readiness.
    """
    db_status = "healthy"
    try:
        async with get_session() as session:
            await session.execute(text("SELECT 1"))
    except (SQLAlchemyError, OSError) as e:
        logger.warning(
            "Database connectivity check failed",
            error=str(e),
            error_type=type(e).__name__,
        )
        db_status = "unhealthy"

    try:
        redis = await get_redis_client()
        redis_status = "healthy" if await redis.health_check() else "unhealthy"
    except (RedisError, ConnectionError):
        redis_status = "unavailable"

    if db_status != "healthy":
        logger.warning("Readiness check failed", database=db_status, redis=redis_status)
        return JSONResponse(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            content={
                "status": "not_ready",
                "service": settings.app_name,
                "database": db_status,
                "redis": redis_status,
            },
        )

    return {
        "status": "ready",
        "service": settings.app_name,
        "version": settings.app_version,
        "database": db_status,
        "redis": redis_status,
    }


@app.get(
    "/live",
    status_code=status.HTTP_200_OK,
    tags=["Health"],
    summary="Liveness check endpoint",
)
async def liveness_check() -> dict[str, str]:
    return {
        "status": "alive",
        "service": settings.app_name,
        "version": settings.app_version,
    }


@app.get(
    "/metrics/conflicts",
    tags=["Health"],
    summary="Transition conflict counter",
)
async def transition_conflicts() -> dict[str, object]:
    """Compare-and-swap conflicts seen on order transitions so far."""
    try:
        redis = await get_redis_client()
    except (RedisError, ConnectionError):
        redis = None
    counter = ConflictCounter(redis)
    try:
        value = await counter.value()
    except (RedisError, ConnectionError) as e:
        logger.warning("Conflict counter unavailable", error=str(e))
        return JSONResponse(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            content={"name": counter.key, "value": None},
        )
    return {"name": counter.key, "value": value}


app.include_router(orders_router, prefix=settings.api_v1_prefix)
app.include_router(reviews_router, prefix=settings.api_v1_prefix)
app.include_router(delivery_runs_router, prefix=settings.api_v1_prefix)
app.include_router(realtime_router, prefix=settings.api_v1_prefix)
