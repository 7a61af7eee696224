"""
FastAPI application factory with New Relic APM, CORS, lifespan, the
settlement sweeper task, and all routers.
"""
import asyncio
import logging
import os

# New Relic must be initialized BEFORE any other imports that it instruments.
if os.getenv("NEW_RELIC_LICENSE_KEY"):
    import newrelic.agent
    newrelic.agent.initialize("newrelic.ini")

from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from trek.config import get_settings
from trek.database import AsyncSessionLocal
from trek.dependencies import get_escrow, get_notifier
from trek.errors import TrekError
from trek.redis_client import get_redis, close_redis
from trek.routers import rides, ride_requests, settlement, users
from trek.services.sweeper import sweeper_loop

settings = get_settings()
logger = logging.getLogger(__name__)

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Starting %s [%s]", settings.app_name, settings.env)
    await get_redis()          # warm up connection pool
    sweeper = None
    if settings.sweeper_enabled:
        sweeper = asyncio.create_task(sweeper_loop(AsyncSessionLocal, get_escrow(), get_notifier()))
    yield
    if sweeper:
        sweeper.cancel()
    await close_redis()
    logger.info("Shutdown complete")


app = FastAPI(
    title=settings.app_name,
    version="1.0.0",
    description="University ride-sharing marketplace: ride requests, lifecycle and payment escrow",
    lifespan=lifespan,
)

# CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# Domain errors carry their own kind and status
@app.exception_handler(TrekError)
async def trek_error_handler(request: Request, exc: TrekError):
    logger.info("%s on %s: %s", exc.kind, request.url.path, exc.message)
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


# Global error handler
@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logger.error("Unhandled error on %s: %s", request.url, exc, exc_info=True)
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"error": "internal_error", "detail": "Internal server error"},
    )


# Health check (no auth)
@app.get("/health", tags=["Health"])
async def health():
    return {"status": "ok"}


# Register routers
app.include_router(rides.router)
app.include_router(ride_requests.router)
app.include_router(users.router)
app.include_router(settlement.router)
