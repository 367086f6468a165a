import os
import time
import logging
from typing import Optional

from prometheus_client import Counter, Histogram, Gauge, start_http_server
from threading import Thread, Event
import redis as redis_lib

# Ensure Prometheus multiprocess directory exists if needed
mp_dir = os.getenv("PROMETHEUS_MULTIPROC_DIR")
if mp_dir:
    try:
        os.makedirs(mp_dir, exist_ok=True)
    except Exception as e:
        logging.getLogger(__name__).warning(f"Failed to create Prometheus multiprocess directory {mp_dir}: {e}")


# ----------
# Judging pipeline
# ----------

SUBMISSIONS_DISPATCHED_TOTAL = Counter(
    "submissions_dispatched_total",
    "Submissions dispatched to the judge engine",
    labelnames=("mode",),  # practice | contest | run
)

JUDGE_DISPATCH_FAILURES_TOTAL = Counter(
    "judge_dispatch_failures_total",
    "Judge batch dispatch failures",
    labelnames=("reason",),
)

CALLBACKS_RECEIVED_TOTAL = Counter(
    "judge_callbacks_received_total",
    "Judge callbacks received",
    labelnames=("outcome",),  # recorded | complete | duplicate | orphaned | rejected | error
)

SUBMISSIONS_FINALIZED_TOTAL = Counter(
    "submissions_finalized_total",
    "Submissions moved to a terminal verdict",
    labelnames=("status", "trigger"),  # trigger: complete | sweep | run
)

FINALIZE_LOCK_CONTENDED_TOTAL = Counter(
    "finalize_lock_contended_total",
    "Finalization attempts that lost the done-lock race",
)

FINALIZATION_DURATION_SECONDS = Histogram(
    "finalization_duration_seconds",
    "Time spent resolving and persisting a verdict",
    buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0),
)


# ----------
# Rankings
# ----------

RANKING_UPDATES_TOTAL = Counter(
    "ranking_updates_total",
    "Incremental ranking updates applied",
    labelnames=("board",),  # problem | contest | problem_stats
)

RANKING_REBUILD_DURATION_SECONDS = Histogram(
    "ranking_rebuild_duration_seconds",
    "Duration of a full leaderboard rebuild",
    labelnames=("board",),
    buckets=(0.1, 0.5, 1.0, 5.0, 10.0, 30.0, 60.0, 300.0, 900.0),
)

RANKING_REBUILD_FAILURES_TOTAL = Counter(
    "ranking_rebuild_failures_total",
    "Leaderboard rebuild failures",
    labelnames=("board",),
)

LEADERBOARD_QUERIES_TOTAL = Counter(
    "leaderboard_queries_total",
    "Total leaderboard queries",
    labelnames=("board",),
)

LEADERBOARD_QUERY_DURATION_SECONDS = Histogram(
    "leaderboard_query_duration_seconds",
    "Duration of leaderboard retrieval (including Redis/DB)",
)

STREAM_SUBSCRIBERS = Gauge(
    "sse_stream_subscribers",
    "Open Server-Sent Events connections",
    labelnames=("stream",),  # leaderboard | submission
)


# Celery queue backlog
CELERY_QUEUE_LENGTH = Gauge(
    "celery_queue_length",
    "Length of Celery broker queue in Redis",
    labelnames=("queue_name",),
)

# System health metrics
DATABASE_HEALTH = Gauge(
    "database_health",
    "Database connection health status (1=healthy, 0=unhealthy)",
)

REDIS_HEALTH = Gauge(
    "redis_health",
    "Redis connection health status (1=healthy, 0=unhealthy)",
)

DATABASE_HEALTH.set(0)
REDIS_HEALTH.set(0)


def check_database_health():
    """Check database health and update metrics"""
    try:
        from judgeboard.db.session import engine
        from sqlalchemy import text
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        DATABASE_HEALTH.set(1)
        return True
    except Exception as e:
        DATABASE_HEALTH.set(0)
        logging.getLogger(__name__).error(f"Database health check failed: {str(e)}")
        return False


def check_redis_health():
    """Check Redis health and update metrics"""
    try:
        from judgeboard.core.config import settings
        r = redis_lib.from_url(settings.REDIS_URL, socket_timeout=2)
        r.ping()
        REDIS_HEALTH.set(1)
        return True
    except Exception as e:
        REDIS_HEALTH.set(0)
        logging.getLogger(__name__).error(f"Redis health check failed: {str(e)}")
        return False


def init_fastapi_instrumentation(app) -> None:
    """Attach Prometheus instrumentation.

    Imported lazily so worker processes don't need FastAPI instrumentator.
    """
    try:
        from prometheus_fastapi_instrumentator import Instrumentator  # type: ignore
        from prometheus_client import CollectorRegistry, multiprocess, REGISTRY
    except Exception as e:
        logging.getLogger(__name__).warning("fastapi_instrumentator_unavailable", extra={"error": str(e)})
        return

    if os.getenv("PROMETHEUS_MULTIPROC_DIR"):
        registry = CollectorRegistry()
        multiprocess.MultiProcessCollector(registry)
        instrumentator = Instrumentator(registry=registry)
    else:
        instrumentator = Instrumentator(registry=REGISTRY)

    # /metrics is served by judgeboard.api.metrics_endpoint
    instrumentator.instrument(app)


def start_worker_metrics_server(port: Optional[int] = None) -> None:
    """Start a Prometheus metrics HTTP server for the worker process.

    When PROMETHEUS_MULTIPROC_DIR is set, counters aggregated from prefork
    children are exposed through a MultiProcessCollector registry.
    """
    logger = logging.getLogger(__name__)
    p = int(port or os.getenv("WORKER_METRICS_PORT", "9101"))
    logger.info(f"Starting worker metrics server on port {p}")

    try:
        mp = os.getenv("PROMETHEUS_MULTIPROC_DIR")
        if mp:
            os.makedirs(mp, exist_ok=True)
            for fname in os.listdir(mp):
                if fname.endswith(".db"):
                    try:
                        os.remove(os.path.join(mp, fname))
                    except OSError as e:
                        logger.debug("mp_dir_cleanup_failed", extra={"file": fname, "error": str(e)})

            from prometheus_client import CollectorRegistry, multiprocess

            registry = CollectorRegistry()
            multiprocess.MultiProcessCollector(registry)
            start_http_server(p, addr='0.0.0.0', registry=registry)
        else:
            start_http_server(p, addr='0.0.0.0')
        logger.info("Worker metrics server started successfully")
    except OSError as e:
        # Port already in use; ignore to prevent crash in forked workers
        logger.error(f"Failed to start worker metrics server on port {p}: {str(e)}")


def start_celery_queue_length_collector(
    redis_url: Optional[str],
    queue_names: Optional[list[str]] = None,
    interval_seconds: int = 10,
):
    """Periodically collect Redis LLEN for Celery queues and export as a gauge.

    Returns a stop_event that can be set() to stop the collector.
    """
    queue_names = queue_names or ["celery"]
    stop_event: Event = Event()

    def _run():
        client = None
        while not stop_event.is_set():
            try:
                if client is None and redis_url:
                    client = redis_lib.from_url(redis_url, socket_timeout=5)
                for q in queue_names:
                    llen = client.llen(q) if client is not None else 0
                    CELERY_QUEUE_LENGTH.labels(queue_name=q).set(float(llen))
            except Exception as e:
                client = None
                logging.getLogger(__name__).debug("queue_length_loop_error", extra={"error": str(e)})
            finally:
                stop_event.wait(interval_seconds)

    t = Thread(target=_run, daemon=True)
    t.start()
    return stop_event


class DurationTimer:
    """Simple context manager to measure durations with perf_counter."""

    def __init__(self):
        self._start = 0.0
        self.seconds = 0.0

    def __enter__(self):
        self._start = time.perf_counter()
        return self

    def __exit__(self, exc_type, exc, tb):
        self.seconds = max(0.0, time.perf_counter() - self._start)
        return False
