import contextvars
import logging
import time
import traceback
import uuid

from contextlib import asynccontextmanager
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from app.config import get_settings
from app.hipaa.log_sanitizer import PHISanitizationFilter

settings = get_settings()
logger = logging.getLogger(__name__)

_is_production = settings.APP_ENV == "production"

APP_VERSION = "1.0.0"

# ---------------------------------------------------------------------------
# Request ID context: propagated into every log record automatically
# ---------------------------------------------------------------------------
request_id_ctx: contextvars.ContextVar[str] = contextvars.ContextVar("request_id", default="-")


class _RequestIdFilter(logging.Filter):
    """Inject the current request ID into every log record."""
    def filter(self, record: logging.LogRecord) -> bool:
        record.request_id = request_id_ctx.get("-")
        return True


def _configure_logging() -> None:
    """Attach request-id and PHI filters to the root handlers.

    Filters on a logger only see records logged on that logger itself, so
    they go on the handlers, where propagated records from every module pass.
    """
    root = logging.getLogger()
    if not root.handlers:
        logging.basicConfig(
            level=logging.INFO,
            format="%(asctime)s %(levelname)s [%(request_id)s] %(name)s: %(message)s",
        )
    for handler in root.handlers:
        if not any(isinstance(f, _RequestIdFilter) for f in handler.filters):
            handler.addFilter(_RequestIdFilter())
        if not any(isinstance(f, PHISanitizationFilter) for f in handler.filters):
            handler.addFilter(PHISanitizationFilter())


_configure_logging()

# Background task health tracking: updated by each loop iteration
_background_health: dict[str, float] = {}


async def _recurring_billing_loop():
    """Nightly loop: bill subscriptions whose next billing date has arrived.

    Runs once per day at ~2 AM UTC. Uses advisory lock to prevent
    duplicate runs across multiple workers.
    """
    import asyncio
    from datetime import datetime, timedelta, timezone

    ADVISORY_LOCK_ID = 731500221
    logger.info("recurring_billing_loop: started")

    while True:
        try:
            now = datetime.now(timezone.utc)
            next_run = now.replace(hour=2, minute=0, second=0, microsecond=0)
            if now >= next_run:
                next_run += timedelta(days=1)
            sleep_seconds = (next_run - now).total_seconds()
            logger.info("recurring_billing_loop: next run in %.0f seconds", sleep_seconds)
            await asyncio.sleep(sleep_seconds)

            from app.database import AsyncSessionLocal
            from sqlalchemy import text as sa_text
            async with AsyncSessionLocal() as db:
                lock_result = await db.execute(
                    sa_text(f"SELECT pg_try_advisory_lock({ADVISORY_LOCK_ID})")
                )
                acquired = lock_result.scalar_one()
                if not acquired:
                    logger.info("recurring_billing_loop: another worker holds the lock; skipping")
                    continue

                try:
                    from app.services.recurring_billing import run_recurring_billing
                    from app.tebra.service import TebraService
                    results = await run_recurring_billing(db, TebraService(), today=next_run.date())
                    logger.info("recurring_billing_loop: completed: %s", results)
                    _background_health["recurring_billing_last_ok"] = time.time()
                finally:
                    await db.execute(
                        sa_text(f"SELECT pg_advisory_unlock({ADVISORY_LOCK_ID})")
                    )
                    await db.commit()

        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning("recurring_billing_loop: error: %s", e)
            await asyncio.sleep(300)  # Retry in 5 min on error


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Start background tasks on startup; release shared resources on shutdown."""
    import asyncio

    billing_task = None
    if settings.ENABLE_RECURRING_BILLING:
        billing_task = asyncio.create_task(_recurring_billing_loop())
    else:
        logger.info("recurring_billing_loop: disabled (ENABLE_RECURRING_BILLING=false)")

    if settings.TEBRA_BILLING_MOCK:
        logger.warning("TEBRA_BILLING_MOCK is on: charges and payments are not sent to Tebra")

    logger.info("Application startup complete")
    yield

    # --- Graceful shutdown ---
    logger.info("Shutting down, cancelling background tasks...")

    # 1. Cancel the background task
    if billing_task is not None:
        billing_task.cancel()
        try:
            await billing_task
        except asyncio.CancelledError:
            logger.info("recurring_billing_loop: stopped")

    # 2. Close shared HTTP client
    try:
        from app.utils.http_client import close_http_client
        await close_http_client()
        logger.info("Shared HTTP client closed")
    except Exception as exc:
        logger.warning("Error closing HTTP client: %s", exc)

    # 3. Dispose the database engine to close all pooled connections
    try:
        from app.database import engine
        await engine.dispose()
        logger.info("Database connection pool disposed")
    except Exception as exc:
        logger.warning("Error disposing database engine: %s", exc)

    # 4. Clear in-memory caches
    from app.utils.cache import chart_cache, processed_events
    chart_cache.clear()
    processed_events.clear()

    logger.info("Shutdown complete")


app = FastAPI(
    title="Tebra Practice Sync API",
    version=APP_VERSION,
    lifespan=lifespan,
    docs_url=None if _is_production else "/docs",
    redoc_url=None if _is_production else "/redoc",
    openapi_url=None if _is_production else "/openapi.json",
)


# ---------------------------------------------------------------------------
# Exception handlers: Tebra taxonomy to HTTP, everything else to 500
# ---------------------------------------------------------------------------
from app.routes.tebra import tebra_error_handler
from app.tebra.errors import TebraError

app.add_exception_handler(TebraError, tebra_error_handler)


@app.exception_handler(Exception)
async def _global_exception_handler(request: Request, exc: Exception):
    logger.error(
        "Unhandled exception on %s %s: %s\n%s",
        request.method,
        request.url.path,
        exc,
        traceback.format_exc(),
    )
    return JSONResponse(
        status_code=500,
        content={"detail": "Internal server error"},
    )

# ---------------------------------------------------------------------------
# Middleware stack (last added = outermost = processes requests first)
# ---------------------------------------------------------------------------
app.add_middleware(
    CORSMiddleware,
    allow_origins=[origin.strip() for origin in settings.CORS_ORIGINS.split(",")],
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
    allow_headers=["Authorization", "Content-Type", "Accept", "X-Requested-With"],
)

# ---------------------------------------------------------------------------
# Request body size limit. Document uploads carry base64 content trimmed to
# 1 MB decoded downstream, so the raw limit leaves headroom for encoding.
# ---------------------------------------------------------------------------
MAX_BODY_BYTES = 5 * 1024 * 1024  # 5 MB
MAX_WEBHOOK_BODY_BYTES = 1024 * 1024  # 1 MB

@app.middleware("http")
async def _limit_request_body(request: Request, call_next):
    """Reject oversized request bodies.

    Checks the Content-Length header and, for chunked transfers that omit
    it, reads the body and checks the actual size.
    """
    if request.method in ("GET", "HEAD", "OPTIONS", "DELETE"):
        return await call_next(request)

    if request.url.path.startswith("/api/webhooks/"):
        limit = MAX_WEBHOOK_BODY_BYTES
    else:
        limit = MAX_BODY_BYTES

    content_length = request.headers.get("content-length")
    if content_length:
        try:
            if int(content_length) > limit:
                return JSONResponse(
                    status_code=413,
                    content={"detail": "Request body too large"},
                )
        except (ValueError, TypeError):
            return JSONResponse(
                status_code=400,
                content={"detail": "Invalid Content-Length header"},
            )
    else:
        body = await request.body()
        if len(body) > limit:
            return JSONResponse(
                status_code=413,
                content={"detail": "Request body too large"},
            )

    return await call_next(request)

# ---------------------------------------------------------------------------
# Request ID correlation: attach a unique ID to every request/response for
# log tracing.
# ---------------------------------------------------------------------------
@app.middleware("http")
async def _request_id(request: Request, call_next):
    """Attach X-Request-ID to every response and to every log record of the request."""
    rid = request.headers.get("x-request-id") or str(uuid.uuid4())
    request.state.request_id = rid
    token = request_id_ctx.set(rid)
    try:
        response = await call_next(request)
        response.headers["X-Request-ID"] = rid
        return response
    finally:
        request_id_ctx.reset(token)

# ---------------------------------------------------------------------------
# Route blueprints
# ---------------------------------------------------------------------------
from app.routes.tebra import router as tebra_router
from app.routes.webhooks import router as webhook_router
from app.routes.billing import router as billing_router

app.include_router(tebra_router, prefix="/api/tebra", tags=["Tebra"])
app.include_router(webhook_router, prefix="/api/webhooks", tags=["Webhooks"])
app.include_router(billing_router, prefix="/api/billing", tags=["Billing Sync"])


@app.get("/api/health")
async def health_check():
    """Health check endpoint that verifies DB connectivity.

    Returns HTTP 503 when the database is unreachable so that load balancers
    stop routing traffic to this instance.
    """
    from app.database import AsyncSessionLocal
    from sqlalchemy import text

    db_ok = False
    try:
        async with AsyncSessionLocal() as session:
            await session.execute(text("SELECT 1"))
            db_ok = True
    except Exception as e:
        logger.warning("health_check: database connection failed: %s", e)

    if not db_ok:
        return JSONResponse(
            status_code=503,
            content={"status": "degraded", "version": APP_VERSION, "database": "unavailable"},
        )

    billing_status = "disabled"
    if settings.ENABLE_RECURRING_BILLING:
        billing_last_ok = _background_health.get("recurring_billing_last_ok")
        billing_status = "unknown"
        if billing_last_ok:
            age = time.time() - billing_last_ok
            billing_status = "ok" if age < 90000 else f"stale ({int(age)}s ago)"

    return {
        "status": "healthy",
        "version": APP_VERSION,
        "database": "connected",
        "background_tasks": {"recurring_billing": billing_status},
    }
