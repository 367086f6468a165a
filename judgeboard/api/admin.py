from fastapi import APIRouter, Depends, HTTPException
from judgeboard.core.authz import Principal, authorizer, get_principal
from judgeboard.core.celery import close_contest_task, rebuild_contest_leaderboard_task, rebuild_rankings_task
import logging

logger = logging.getLogger(__name__)
router = APIRouter()


def _require(principal: Principal, action: str, resource: str) -> None:
    if not authorizer.authorize(principal, action, resource):
        logger.warning(
            f"Denied {action} on {resource}",
            extra={"user_id": principal.user_id},
        )
        raise HTTPException(403, "Forbidden")


@router.post("/rankings/rebuild", status_code=202)
def rebuild_rankings(principal: Principal = Depends(get_principal)):
    """Queue a full rebuild of both global leaderboards."""
    _require(principal, "manage", "ranking")
    task = rebuild_rankings_task.delay()
    logger.info("ranking_rebuild_queued", extra={"task_id": task.id, "user_id": principal.user_id})
    return {"task_id": task.id, "status": "queued"}


@router.post("/contests/{contest_id}/leaderboard/rebuild", status_code=202)
def rebuild_contest_leaderboard(contest_id: int, principal: Principal = Depends(get_principal)):
    _require(principal, "manage", "ranking")
    task = rebuild_contest_leaderboard_task.delay(contest_id)
    logger.info("contest_leaderboard_rebuild_queued", extra={"task_id": task.id, "contest_id": contest_id})
    return {"task_id": task.id, "status": "queued", "contest_id": contest_id}


@router.post("/contests/{contest_id}/close", status_code=202)
def close_contest(contest_id: int, principal: Principal = Depends(get_principal)):
    _require(principal, "manage", "contest")
    task = close_contest_task.delay(contest_id)
    logger.info("contest_close_queued", extra={"task_id": task.id, "contest_id": contest_id})
    return {"task_id": task.id, "status": "queued", "contest_id": contest_id}
