from celery import Celery
from celery.schedules import crontab
from celery.signals import task_prerun, task_postrun, task_failure, task_retry, worker_init
from judgeboard.core.config import settings
import os
import logging
from judgeboard.core.metrics import start_worker_metrics_server, start_celery_queue_length_collector
from judgeboard.core.logging_config import setup_logging

# Ensure structured JSON logging for the worker process
setup_logging()

celery_app = Celery(
    "judgeboard",
    broker=settings.CELERY_BROKER_URL,
    backend=settings.CELERY_RESULT_BACKEND,
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_time_limit=600,
    task_reject_on_worker_lost=True,
    task_acks_late=True,
    worker_prefetch_multiplier=1,
    broker_connection_retry_on_startup=True,
    task_routes={
        "judgeboard.core.celery.finalize_submission_task": {"queue": "celery"},
        "judgeboard.core.celery.sweep_stuck_submissions_task": {"queue": "celery"},
        "judgeboard.core.celery.rebuild_rankings_task": {"queue": "heavy"},
        "judgeboard.core.celery.rebuild_contest_leaderboard_task": {"queue": "heavy"},
        "judgeboard.core.celery.close_contest_task": {"queue": "heavy"},
    },
    beat_schedule={
        "rebuild-global-rankings-daily": {
            "task": "judgeboard.core.celery.rebuild_rankings_task",
            "schedule": crontab(hour=settings.RANKING_REBUILD_HOUR, minute=0),
        },
        "sweep-stuck-submissions": {
            "task": "judgeboard.core.celery.sweep_stuck_submissions_task",
            "schedule": float(settings.STUCK_SWEEP_INTERVAL_SECONDS),
        },
    },
)


@celery_app.on_after_configure.connect
def setup_observability(sender, **kwargs):
    logger = logging.getLogger(__name__)
    logger.info("Setting up observability for Celery worker")

    try:
        start_worker_metrics_server()
    except Exception as e:
        logger.error(f"Failed to start worker metrics server: {str(e)}")

    try:
        start_celery_queue_length_collector(
            os.getenv("CELERY_BROKER_URL", settings.CELERY_BROKER_URL),
            queue_names=["celery", "heavy"],
            interval_seconds=10,
        )
        logger.info("Queue length collector started successfully")
    except Exception as e:
        logger.error(f"Failed to start queue length collector: {str(e)}")


@worker_init.connect
def register_listeners(**kwargs):
    # Finalization runs in the worker, so the ranking consumers must live here too
    from judgeboard.services.ranking import register_ranking_listeners

    register_ranking_listeners()
    logging.getLogger(__name__).info("Ranking listeners registered")


# ---- Celery task lifecycle structured logs ----

def _task_context(task_name, task_id, args, kwargs) -> dict:
    context = {"task_name": task_name, "task_id": task_id}
    kwargs = kwargs if isinstance(kwargs, dict) else {}
    first = args[0] if isinstance(args, (list, tuple)) and args else None
    if kwargs.get("submission_id") or isinstance(first, str):
        context["submission_id"] = kwargs.get("submission_id") or first
    if kwargs.get("contest_id") is not None or isinstance(first, int):
        context["contest_id"] = kwargs.get("contest_id", first)
    return context


@task_prerun.connect
def _on_task_start(task_id=None, task=None, args=None, kwargs=None, **extra_kwargs):
    try:
        logging.getLogger("celery.task").info(
            "task_started", extra=_task_context(getattr(task, "name", None), task_id, args, kwargs)
        )
    except Exception as e:
        logging.getLogger(__name__).debug("celery_task_start_log_failed", extra={"error": str(e)})


@task_postrun.connect
def _on_task_success(task_id=None, task=None, args=None, kwargs=None, retval=None, state=None, **extra_kwargs):
    try:
        logging.getLogger("celery.task").info(
            "task_succeeded",
            extra={**_task_context(getattr(task, "name", None), task_id, args, kwargs), "stage": state},
        )
    except Exception as e:
        logging.getLogger(__name__).debug("celery_task_success_log_failed", extra={"error": str(e)})


@task_failure.connect
def _on_task_failure(task_id=None, exception=None, args=None, kwargs=None, traceback=None, einfo=None, sender=None, **extra_kwargs):
    try:
        logging.getLogger("celery.task").error(
            f"task_failed: {str(exception)}",
            extra=_task_context(getattr(sender, "name", None), task_id, args, kwargs),
        )
    except Exception as e:
        logging.getLogger(__name__).debug("celery_task_failure_log_failed", extra={"error": str(e)})


@task_retry.connect
def _on_task_retry(request=None, reason=None, einfo=None, **extra_kwargs):
    try:
        logging.getLogger("celery.task").warning(
            f"task_retry: {str(reason)}",
            extra=_task_context(
                getattr(getattr(request, "task", None), "name", None),
                getattr(request, "id", None),
                getattr(request, "args", None),
                getattr(request, "kwargs", None),
            ),
        )
    except Exception as e:
        logging.getLogger(__name__).debug("celery_task_retry_log_failed", extra={"error": str(e)})


@celery_app.task
def finalize_submission_task(submission_id: str):
    """Resolve and persist the verdict once every testcase has reported.

    Not retried: on a failed write the done-lock stays until its TTL expires
    and the stuck sweep picks the submission up again.
    """
    from judgeboard.services.finalizer import finalization_gate

    return finalization_gate.try_finalize(submission_id).value


@celery_app.task
def sweep_stuck_submissions_task():
    from judgeboard.services.finalizer import finalization_gate

    return finalization_gate.sweep_stuck_submissions()


@celery_app.task
def rebuild_rankings_task():
    from judgeboard.services.rebuild import ranking_rebuilder

    return ranking_rebuilder.rebuild_all()


@celery_app.task
def rebuild_contest_leaderboard_task(contest_id: int):
    from judgeboard.services.rebuild import ranking_rebuilder

    return ranking_rebuilder.rebuild_contest_leaderboard(contest_id)


@celery_app.task(bind=True, max_retries=20)
def close_contest_task(self, contest_id: int):
    """Close the contest, retrying while its last submissions are judged."""
    from judgeboard.services.contests import ContestClosePending, contest_service

    try:
        return contest_service.close_contest(contest_id)
    except ContestClosePending as exc:
        raise self.retry(exc=exc, countdown=settings.CONTEST_CLOSE_RETRY_SECONDS)
