"""Application factory for the trip marketplace booking engine."""

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware

from .core.config import settings
from .core.database import close_db, engine, init_db
from .core.exceptions import (
    ProblemDetailsException,
    generic_exception_handler,
    problem_details_handler,
    request_validation_handler,
)
from .core.middleware import setup_middleware
from .core.observability import (
    SERVICE_NAME,
    SERVICE_VERSION,
    instrument_fastapi,
    instrument_sqlalchemy,
    setup_metrics,
    setup_structured_logging,
    setup_tracing,
)
from .routers import admin, booking, health, metrics, payment, pricing, referral, trip
from .schemas.common import PROBLEM_RESPONSES
from .services.notification_service import notification_dispatcher
from .workers.manager import WorkerManager, worker_manager

setup_structured_logging()

logging.basicConfig(
    level=getattr(logging, settings.log_level),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)

logger = logging.getLogger(__name__)

# Versioned RPC areas; each may answer with a Problem Details body
API_ROUTERS = (trip.router, pricing.router, booking.router, payment.router, referral.router, admin.router)


def build_lifespan(workers: WorkerManager, create_tables: bool = True):
    """
    Build the startup/shutdown handler.

    Tests pass an empty worker manager and ``create_tables=False`` so the
    in-memory schema they prepare is left alone.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        logger.info(
            "Starting booking engine",
            extra={"environment": settings.environment, "currency": settings.currency}
        )
        try:
            setup_tracing(SERVICE_NAME)
            setup_metrics(SERVICE_NAME)
            instrument_sqlalchemy(engine)
            if create_tables:
                await init_db()
            await workers.start_all()
        except Exception as e:
            logger.error("Booking engine failed to start", extra={"error": str(e)})
            raise

        yield

        # Stop sweeping before the engine goes away, then flush pending notifications
        try:
            await workers.stop_all()
            await notification_dispatcher.drain()
            await close_db()
        except Exception as e:
            logger.error("Error during booking engine shutdown", extra={"error": str(e)})
        logger.info("Booking engine stopped")

    return lifespan


def create_app(workers: WorkerManager = worker_manager, create_tables: bool = True) -> FastAPI:
    app = FastAPI(
        title="Trip Marketplace Booking API",
        description="RPC-over-HTTP API for pricing, holding, paying for and cancelling seats on capacity-limited group trips",
        version=SERVICE_VERSION,
        debug=settings.debug,
        lifespan=build_lifespan(workers, create_tables),
        docs_url="/docs" if settings.debug else None,
        redoc_url="/redoc" if settings.debug else None,
    )
    app.state.workers = workers

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["*"],
        expose_headers=["X-Request-ID", "Idempotent-Replayed", "traceparent", "tracestate"],
    )
    setup_middleware(app, enable_logging=True)
    instrument_fastapi(app)

    app.add_exception_handler(ProblemDetailsException, problem_details_handler)
    app.add_exception_handler(RequestValidationError, request_validation_handler)
    app.add_exception_handler(Exception, generic_exception_handler)

    app.include_router(health.probe_router)
    app.include_router(health.router)
    for api_router in API_ROUTERS:
        app.include_router(api_router, responses=PROBLEM_RESPONSES)
    app.include_router(metrics.router)

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "tripmarket.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
        log_level=settings.log_level.lower(),
    )
