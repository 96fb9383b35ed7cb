from contextlib import asynccontextmanager
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from app.config.settings import settings
from app.utils.logging import get_logger
from app.routers import main_router
from app.services.scheduler_service import JobScheduler, build_default_jobs
from app.utils.errors import setup_error_handlers
from app.middlewares import (
    RequestIDMiddleware,
    SecurityHeadersMiddleware,
    GatewayAuthMiddleware,
)

# Initialize the logger
logger = get_logger()


@asynccontextmanager
async def lifespan(application: FastAPI):
    logger.info(f"{settings.NAME} is starting up...")

    # Jobs are always registered so the admin surface can trigger them;
    # their timers only run when the in-process scheduler is enabled.
    scheduler = JobScheduler()
    scheduler.initialize(build_default_jobs(), start=settings.SCHEDULER_ENABLED)
    application.state.scheduler = scheduler

    yield

    await scheduler.shutdown()
    logger.info(f"{settings.NAME} is shutting down...")


def create_application() -> FastAPI:
    """Initialize the FastAPI application with settings and lifespan events."""
    application = FastAPI(
        title=settings.NAME, version=settings.VERSION, lifespan=lifespan
    )

    # Setup error handlers
    setup_error_handlers(application)

    # Add CORS middleware
    application.add_middleware(
        CORSMiddleware,
        allow_origins=settings.ALLOWED_HOSTS,
        allow_credentials=True,
        allow_methods=["GET", "POST", "PATCH", "OPTIONS"],
        allow_headers=["Content-Type", "X-Request-ID", "X-User-ID", "X-User-Role"],
    )

    # Add custom middlewares
    application.add_middleware(
        SecurityHeadersMiddleware, production=settings.ENVIRONMENT == "production"
    )
    application.add_middleware(
        GatewayAuthMiddleware, shared_secret=settings.GATEWAY_SHARED_SECRET
    )
    application.add_middleware(RequestIDMiddleware)

    # Routers
    application.include_router(main_router, prefix=settings.API_PREFIX, tags=["APIs"])

    return application


app = create_application()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "app.main:app",
        host="0.0.0.0",
        port=8000,
        reload=True,
        log_config=None,
        log_level=None,
    )
