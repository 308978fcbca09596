"""
ParkWatch - campus violation and appeal service
"""
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from parkwatch.api.v1.routers import contests, notifications, realtime, snapshots, violations
from parkwatch.core.config import configure_logging, settings
from parkwatch.core.database import create_all
from parkwatch.core.errors import ParkwatchError, PersistenceError, StateConflictError
from parkwatch.realtime.hub import hub

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    configure_logging()
    await create_all()
    logger.info("ParkWatch started (%s)", settings.ENVIRONMENT)
    yield
    await hub.close()


async def handle_parkwatch_error(request: Request, exc: ParkwatchError) -> JSONResponse:
    if isinstance(exc, PersistenceError):
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.original or exc.detail)
    elif isinstance(exc, StateConflictError) and exc.status_code == 409:
        logger.warning("%s %s conflict: %s", request.method, request.url.path, exc.detail)
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


def create_app() -> FastAPI:
    app = FastAPI(
        title="ParkWatch",
        description="Campus vehicle violations, appeals and live channel updates",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_exception_handler(ParkwatchError, handle_parkwatch_error)

    for module in (contests, violations, notifications, snapshots, realtime):
        app.include_router(module.router, prefix="/api/v1")

    @app.get("/health")
    async def health():
        return {"status": "ok", "connections": hub.connection_count}

    return app


app = create_app()
