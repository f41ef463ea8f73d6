import asyncio
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from merchswap.core.config import settings
from merchswap.core.database import async_session
from merchswap.core.errors import (
    ConsistencyError,
    ExternalServiceError,
    InvalidTransitionError,
    MerchswapError,
    NotFoundError,
    ValidationError,
)
from merchswap.routers import attribution, events, experiments, health, rotations, stats
from merchswap.services.catalog import get_catalog
from merchswap.services.rotation import RotationScheduler, run_scheduler_loop

logging.basicConfig(
    level=settings.LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    scheduler_task = None
    if settings.SCHEDULER_ENABLED:
        scheduler = RotationScheduler(async_session, get_catalog())
        scheduler_task = asyncio.create_task(
            run_scheduler_loop(scheduler, settings.SCHEDULER_INTERVAL_SECONDS)
        )
        logger.info("In-process rotation scheduler started (every %ss)", settings.SCHEDULER_INTERVAL_SECONDS)

    yield

    if scheduler_task is not None:
        scheduler_task.cancel()
        try:
            await scheduler_task
        except asyncio.CancelledError:
            pass
        logger.info("In-process rotation scheduler stopped")


app = FastAPI(
    title=settings.PROJECT_NAME,
    openapi_url=f"{settings.API_V1_PREFIX}/openapi.json",
    lifespan=lifespan,
)

# CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# Domain errors
_STATUS_BY_ERROR: list[tuple[type[MerchswapError], int]] = [
    (ValidationError, status.HTTP_422_UNPROCESSABLE_ENTITY),
    (NotFoundError, status.HTTP_404_NOT_FOUND),
    (InvalidTransitionError, status.HTTP_409_CONFLICT),
    (ConsistencyError, status.HTTP_409_CONFLICT),
    (ExternalServiceError, status.HTTP_502_BAD_GATEWAY),
]


@app.exception_handler(MerchswapError)
async def merchswap_error_handler(request: Request, exc: MerchswapError) -> JSONResponse:
    for error_type, status_code in _STATUS_BY_ERROR:
        if isinstance(exc, error_type):
            break
    else:
        status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    if status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc)
    return JSONResponse(status_code=status_code, content={"detail": str(exc)})


# Routers
app.include_router(health.router)
app.include_router(attribution.router, prefix=settings.API_V1_PREFIX)
app.include_router(events.router, prefix=settings.API_V1_PREFIX)
app.include_router(experiments.router, prefix=settings.API_V1_PREFIX)
app.include_router(rotations.router, prefix=settings.API_V1_PREFIX)
app.include_router(stats.router, prefix=settings.API_V1_PREFIX)
