import os
from datetime import timedelta

from fastapi import APIRouter, Depends, Response
from prometheus_client import CONTENT_TYPE_LATEST, REGISTRY, CollectorRegistry, generate_latest, multiprocess
from sqlalchemy import func
from sqlalchemy.orm import Session
from judgeboard.db.base import utcnow
from judgeboard.db.session import get_db
from judgeboard.models import JUDGING_STATUSES, Submission

router = APIRouter()


@router.get("/metrics")
def prometheus_metrics():
    """Prometheus exposition, aggregated across processes when multiprocess mode is on."""
    if os.getenv("PROMETHEUS_MULTIPROC_DIR"):
        registry = CollectorRegistry()
        multiprocess.MultiProcessCollector(registry)
    else:
        registry = REGISTRY
    return Response(generate_latest(registry), media_type=CONTENT_TYPE_LATEST)


def _status_counts(db: Session, since=None) -> dict:
    query = db.query(Submission.status, func.count(Submission.id))
    if since is not None:
        query = query.filter(Submission.submitted_at >= since)
    return {status: count for status, count in query.group_by(Submission.status).all()}


@router.get("/judging-metrics")
def get_judging_metrics(db: Session = Depends(get_db)):
    """Submission counts by verdict over rolling windows, straight from the database."""
    now = utcnow()
    windows = {
        "total": None,
        "recent": now - timedelta(hours=1),
        "daily": now - timedelta(days=1),
        "weekly": now - timedelta(weeks=1),
    }
    report = {name: _status_counts(db, since) for name, since in windows.items()}

    report["judging"] = (
        db.query(func.count(Submission.id)).filter(Submission.status.in_(JUDGING_STATUSES)).scalar()
    )
    report["timestamp"] = now.isoformat()
    return report
