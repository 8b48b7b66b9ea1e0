from __future__ import annotations

from contextlib import asynccontextmanager

from dotenv import load_dotenv
load_dotenv()

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from boxoffice.db.base import import_models
from boxoffice.api.v1.router import router as api_router
from boxoffice.core.config import settings
from boxoffice.core.errors import PipelineError
from boxoffice.core.logging import get_logger, set_request_id, setup_logging
from boxoffice.services.background import dispatcher
from boxoffice.services.job_queue import init_redis_pool, close_redis_pool

# Import all models to populate Base.metadata
import_models()

logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    setup_logging()
    if settings.USE_ARQ_WORKER:
        await init_redis_pool()

    yield

    # Shutdown: let detached fulfillments and notifications finish
    await dispatcher.drain(timeout=settings.WEBHOOK_ACK_BUDGET_SECONDS * 4)
    if settings.USE_ARQ_WORKER:
        await close_redis_pool()


app = FastAPI(title="Box Office API", lifespan=lifespan)


@app.middleware("http")
async def request_id_middleware(request: Request, call_next):
    request_id = set_request_id(request.headers.get("X-Request-ID"))
    response = await call_next(request)
    response.headers["X-Request-ID"] = request_id
    return response


@app.exception_handler(PipelineError)
async def pipeline_error_handler(request: Request, exc: PipelineError):
    if exc.http_status >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    return JSONResponse(status_code=exc.http_status, content=exc.to_dict())


app.include_router(api_router, prefix="/api/v1")
