from fastapi import FastAPI
from fastapi import Request
from fastapi.middleware.cors import CORSMiddleware
from judgeboard.api import admin, callbacks, leaderboard, metrics_endpoint, submissions
from judgeboard.db.session import init_db
from judgeboard.core.config import settings
from judgeboard.core.metrics import check_database_health, check_redis_health, init_fastapi_instrumentation
from judgeboard.core.logging_config import setup_logging
from judgeboard.services.ranking import register_ranking_listeners
import logging
import os
import asyncio

# Configure logging (JSON)
setup_logging()

app = FastAPI(
    title="Judgeboard",
    description="Judging aggregation and ranking API",
    version="1.0.0"
)

try:
    init_fastapi_instrumentation(app)
except Exception as _e:
    logging.getLogger(__name__).exception("Prometheus metrics init failed", extra={"error": str(_e)})

_cors_origins_env = os.getenv("CORS_ORIGINS", "*")
_cors_origins = [o.strip() for o in _cors_origins_env.split(",") if o.strip()]
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"] if "*" in _cors_origins else _cors_origins,
    allow_credentials=False if "*" in _cors_origins else True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.on_event("startup")
def startup_event():
    logger = logging.getLogger(__name__)
    if init_db():
        logger.info("Database initialized successfully")

    # Submissions without testcases are finalized in-process
    register_ranking_listeners()

    try:
        async def _system_health_loop():
            while True:
                try:
                    db_ok = await asyncio.to_thread(check_database_health)
                    redis_ok = await asyncio.to_thread(check_redis_health)
                    if not (db_ok and redis_ok):
                        logger.error("system_health_check_failed", extra={"stage": "health"})
                except Exception as e:
                    logger.error("system_health_check_failed", extra={"error": str(e)})
                await asyncio.sleep(15)
        asyncio.create_task(_system_health_loop())
    except Exception as e:
        logger.warning("failed_to_start_system_health_loop", extra={"error": str(e)})


@app.middleware("http")
async def request_logging_middleware(request: Request, call_next):
    import time
    from uuid import uuid4
    logger = logging.getLogger("request")
    start = time.perf_counter()
    request_id = request.headers.get("X-Request-Id") or str(uuid4())
    extra = {
        "request_id": request_id,
        "method": request.method,
        "path": request.url.path,
        "client": request.client.host if request.client else "-",
        "user_id": request.headers.get("X-User-Id"),
    }

    try:
        response = await call_next(request)
    except Exception:
        extra.update(status_code=500, duration_ms=int((time.perf_counter() - start) * 1000))
        logger.exception("request_failed", extra=extra)
        raise

    extra.update(status_code=getattr(response, "status_code", 0), duration_ms=int((time.perf_counter() - start) * 1000))
    logger.info("request_completed", extra=extra)
    response.headers["X-Request-Id"] = request_id
    return response


# Include API routes
app.include_router(callbacks.router, tags=["callbacks"])
app.include_router(submissions.router, prefix="/api", tags=["submissions"])
app.include_router(leaderboard.router, prefix="/api", tags=["leaderboard"])
app.include_router(admin.router, prefix="/api/admin", tags=["admin"])
app.include_router(metrics_endpoint.router, tags=["metrics"])


@app.get("/health")
def health_check():
    """Liveness + Readiness: verify core dependencies (DB, Redis, broker)."""
    from sqlalchemy import text
    import redis as _redis
    from judgeboard.db.base import utcnow
    logger = logging.getLogger(__name__)

    statuses: dict[str, str] = {}
    try:
        from judgeboard.db.session import engine
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        statuses["database"] = "ok"
    except Exception as e:
        statuses["database"] = f"error: {e}"

    try:
        r = _redis.from_url(settings.REDIS_URL, socket_timeout=2)
        r.ping()
        statuses["redis"] = "ok"
    except Exception as e:
        statuses["redis"] = f"error: {e}"

    try:
        broker = _redis.from_url(settings.CELERY_BROKER_URL, socket_timeout=2)
        broker.ping()
        statuses["broker"] = "ok"
    except Exception as e:
        statuses["broker"] = f"error: {e}"

    healthy = all(v == "ok" for v in statuses.values())
    timestamp = utcnow().isoformat()
    if not healthy:
        logger.error("health_check_failed", extra={"components": statuses})
    else:
        logger.info("health_check_passed", extra={"components": statuses})

    return {
        "status": "healthy" if healthy else "unhealthy",
        "components": statuses,
        "timestamp": timestamp,
    }
