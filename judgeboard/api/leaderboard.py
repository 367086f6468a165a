from fastapi import APIRouter, Depends, HTTPException, Query, Request
from fastapi.responses import StreamingResponse
from judgeboard.core.authz import Principal, authorizer, get_principal
from judgeboard.services.leaderboard import GLOBAL_BOARDS, leaderboard_service
from judgeboard.services.stream import leaderboard_stream, relay_until_disconnected
import logging

logger = logging.getLogger(__name__)

router = APIRouter()


def _require_read(principal: Principal) -> None:
    if not authorizer.authorize(principal, "read", "ranking"):
        raise HTTPException(403, "Not allowed to read rankings")


@router.get("/contests/{contest_id}/leaderboard")
def get_contest_leaderboard(
    contest_id: int,
    page: int = Query(1, ge=1),
    limit: int = Query(50, ge=1, le=200),
    principal: Principal = Depends(get_principal),
):
    """Contest standings ordered by score, earlier last submission first on ties."""
    _require_read(principal)
    include_internal = authorizer.authorize(principal, "read", "ranking:internal")
    return leaderboard_service.get_contest_leaderboard(contest_id, page=page, limit=limit, include_internal=include_internal)


@router.get("/contests/{contest_id}/leaderboard/me")
def get_my_standing(contest_id: int, principal: Principal = Depends(get_principal)):
    if principal.user_id is None:
        raise HTTPException(401, "Authentication required")
    standing = leaderboard_service.get_participant_standing(contest_id, principal.user_id)
    if standing is None:
        raise HTTPException(404, "No standing for this contest yet")
    return standing


@router.get("/contests/{contest_id}/leaderboard/stream")
def stream_contest_leaderboard(contest_id: int, request: Request, principal: Principal = Depends(get_principal)):
    _require_read(principal)
    return StreamingResponse(
        relay_until_disconnected(request, leaderboard_stream.events(contest_id, yield_idle=True)),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )


@router.get("/rankings/{board}")
def get_global_ranking(
    board: str,
    page: int = Query(1, ge=1),
    limit: int = Query(50, ge=1, le=200),
    principal: Principal = Depends(get_principal),
):
    _require_read(principal)
    if board not in GLOBAL_BOARDS:
        raise HTTPException(404, f"Unknown ranking board: {board}")
    return leaderboard_service.get_global_ranking(board, page=page, limit=limit)
