"""FastAPI entry point for the CLAT doubt service."""

import asyncio
import logging
from contextlib import asynccontextmanager

import litellm
import uvicorn
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from config.settings import get_settings
from errors.exceptions import DoubtServiceError
from models.errors import ErrorCode, error_body
from services.container import build_services
from services.middleware import RequestIdFilter, RequestIdMiddleware
from services.notification_dispatcher import periodic_purge
from services.realtime import RedisRealtimeChannel

settings = get_settings()

# ── Logging ──────────────────────────────────────────────────
logging.basicConfig(
    level=settings.log_level.upper(),
    format="%(asctime)s %(levelname)s [%(request_id)s] %(name)s: %(message)s",
)
for _handler in logging.getLogger().handlers:
    _handler.addFilter(RequestIdFilter())

logger = logging.getLogger(__name__)

# ── Global LiteLLM settings ──────────────────────────────────
litellm.request_timeout = settings.ai_timeout
litellm.suppress_debug_info = True


async def _cancel(task: asyncio.Task) -> None:
    task.cancel()
    try:
        await task
    except asyncio.CancelledError:
        pass
    except Exception:
        logger.exception("Background task %s failed", task.get_name())


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Manage application lifecycle: start/stop shared resources."""
    services = build_services(settings)
    await services.start()
    app.state.services = services

    if await services.store.ping():
        logger.info("Store backend '%s' reachable", settings.store_backend)
    else:
        logger.warning("Store backend '%s' unreachable at startup", settings.store_backend)

    tasks = [
        asyncio.create_task(
            periodic_purge(
                services.dispatcher,
                interval_seconds=settings.notification_purge_interval,
                days=settings.notification_retention_days,
            ),
            name="notification-purge",
        )
    ]

    # Redis fan-out: every instance relays published events into its local rooms
    if isinstance(services.channel, RedisRealtimeChannel):
        if await services.channel.ping():
            logger.info("Redis connection verified")
        else:
            logger.warning("Redis connection failed: realtime events stay local")
        tasks.append(
            asyncio.create_task(services.channel.relay_to_hub(services.hub), name="realtime-relay")
        )

    try:
        yield
    finally:
        try:
            for task in tasks:
                await _cancel(task)
        finally:
            await services.close()


app = FastAPI(
    title="CLAT Doubt Service",
    description="Doubt resolution for CLAT preparation: threads, assignment, AI answers and live notifications",
    version="1.0.0",
    lifespan=lifespan,
)

# ── Middleware stack (outermost first) ─────────────────────────
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.add_middleware(RequestIdMiddleware)


# ── Error handlers ───────────────────────────────────────────


@app.exception_handler(DoubtServiceError)
async def doubt_service_error_handler(request: Request, exc: DoubtServiceError):
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    return JSONResponse(
        status_code=exc.status_code,
        content=error_body(exc.code, exc.message, exc.details),
    )


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    details = [
        {
            "field": ".".join(str(part) for part in err.get("loc", ()) if part != "body"),
            "message": err.get("msg", ""),
        }
        for err in exc.errors()
    ]
    return JSONResponse(
        status_code=400,
        content=error_body(ErrorCode.INVALID_REQUEST, "Validation failed", details),
    )


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse(
        status_code=500,
        content=error_body(ErrorCode.INTERNAL_ERROR, "Internal server error"),
    )


# ── Register routers ────────────────────────────────────────
from api.health import router as health_router  # noqa: E402
from api.doubts import router as doubts_router  # noqa: E402
from api.notifications import router as notifications_router  # noqa: E402
from api.realtime import router as realtime_router  # noqa: E402

app.include_router(health_router)
app.include_router(doubts_router)
app.include_router(notifications_router)
app.include_router(realtime_router)


if __name__ == "__main__":
    if settings.debug:
        # Development: single worker with reload
        uvicorn.run(
            "main:app",
            host="0.0.0.0",
            port=settings.service_port,
            reload=True,
        )
    else:
        # Rooms live in process memory: more than one worker needs realtime_backend=redis.
        # Best: gunicorn main:app -c deploy/gunicorn.conf.py
        uvicorn.run(
            "main:app",
            host="0.0.0.0",
            port=settings.service_port,
            workers=1 if settings.realtime_backend != "redis" else 4,
            timeout_keep_alive=120,
        )
