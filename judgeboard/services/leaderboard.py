import logging
from datetime import datetime, timezone
from typing import Optional

from judgeboard.core.cache import get_or_set
from judgeboard.core.config import settings
from judgeboard.core.keys import RankingKeys
from judgeboard.core.metrics import DurationTimer, LEADERBOARD_QUERIES_TOTAL, LEADERBOARD_QUERY_DURATION_SECONDS
from judgeboard.core.redis_client import get_redis
from judgeboard.db.session import SessionLocal
from judgeboard.models import ContestParticipant, ContestProblem, User
from judgeboard.services.ranking import decode_global_score

logger = logging.getLogger(__name__)

GLOBAL_BOARDS = {
    "problem": RankingKeys.PROBLEM_BASED,
    "contest": RankingKeys.CONTEST_BASED,
}

# Only returned to principals allowed to read ranking:internal
INTERNAL_ENTRY_FIELDS = ("totalSubmissions", "lastSubmissionAt", "finishTimeMs")


def _tie_break(entry: dict):
    return (-entry["totalScore"], entry["lastSubmissionAt"] or datetime.max.isoformat(), entry["userId"])


def _problem_status(problem_scores: dict, contest_problems: list) -> list[dict]:
    rows = []
    for cp in contest_problems:
        ps = problem_scores.get(str(cp.problem_id)) or {}
        if ps.get("firstAcTime") is not None:
            status = "SOLVED"
        elif ps.get("submissions"):
            status = "ATTEMPTED"
        else:
            status = "NOT_STARTED"
        rows.append({
            "problemId": cp.problem_id,
            "problemOrder": cp.order_index,
            "status": status,
            "score": ps.get("score", 0),
            "attempts": ps.get("submissions", 0),
        })
    return rows


def strip_internal_fields(page: dict) -> dict:
    return {
        **page,
        "data": [{k: v for k, v in entry.items() if k not in INTERNAL_ENTRY_FIELDS} for entry in page["data"]],
    }


class LeaderboardService:
    """Read side of the sorted-set leaderboards, cached for a short TTL."""

    def __init__(self, redis_client=None, session_factory=None):
        self._redis = redis_client
        self.session_factory = session_factory or SessionLocal

    @property
    def redis(self):
        if self._redis is None:
            self._redis = get_redis()
        return self._redis

    def _load_participants(self, db, contest_id: int, user_ids: list[int]) -> dict:
        rows = (
            db.query(ContestParticipant, User.username)
            .outerjoin(User, User.id == ContestParticipant.user_id)
            .filter(ContestParticipant.contest_id == contest_id, ContestParticipant.user_id.in_(user_ids))
            .all()
        )
        return {participant.user_id: (participant, username) for participant, username in rows}

    def _build_contest_page(self, contest_id: int, page: int, limit: int) -> dict:
        key = RankingKeys.contest_leaderboard(contest_id)
        total = self.redis.zcard(key)
        start = (page - 1) * limit
        window = self.redis.zrevrange(key, start, start + limit - 1, withscores=True)
        if not window:
            return {"data": [], "meta": {"page": page, "limit": limit, "total": total}}

        # Widen to whole score groups at the page edges so the
        # last_submission_at tie-break is applied consistently across pages.
        high, low = window[0][1], window[-1][1]
        above = self.redis.zcount(key, f"({high}", "+inf")
        group = self.redis.zrevrangebyscore(key, high, low, withscores=True)

        db = self.session_factory()
        try:
            loaded = self._load_participants(db, contest_id, [int(member) for member, _ in group])
            contest_problems = (
                db.query(ContestProblem)
                .filter(ContestProblem.contest_id == contest_id)
                .order_by(ContestProblem.order_index.asc())
                .all()
            )
            entries = []
            for member, score in group:
                user_id = int(member)
                participant, username = loaded.get(user_id, (None, None))
                problem_scores = (participant.problem_scores or {}) if participant else {}
                last_submission_at = participant.last_submission_at if participant else None
                entries.append({
                    "userId": user_id,
                    "username": username or "Unknown",
                    "totalScore": float(score),
                    "solvedCount": participant.solved_count if participant else 0,
                    "finishTimeMs": participant.finish_time_ms if participant else 0,
                    "totalSubmissions": participant.total_submissions if participant else 0,
                    "lastSubmissionAt": last_submission_at.isoformat() if last_submission_at else None,
                    "problemStatus": _problem_status(problem_scores, contest_problems),
                })
        finally:
            db.close()

        entries.sort(key=_tie_break)
        previous = None
        rank = 0
        for position, entry in enumerate(entries, start=above + 1):
            standing = (entry["totalScore"], entry["lastSubmissionAt"])
            if standing != previous:
                rank = position
                previous = standing
            entry["rank"] = rank

        offset = start - above
        return {"data": entries[offset:offset + limit], "meta": {"page": page, "limit": limit, "total": total}}

    def get_contest_leaderboard(self, contest_id: int, page: int = 1, limit: int = 50, include_internal: bool = False) -> dict:
        with DurationTimer() as t:
            result = get_or_set(
                self.redis,
                RankingKeys.contest_leaderboard_page(contest_id, page, limit),
                settings.LEADERBOARD_CACHE_TTL_SECONDS,
                lambda: self._build_contest_page(contest_id, page, limit),
            )
        LEADERBOARD_QUERIES_TOTAL.labels(board="contest_leaderboard").inc()
        LEADERBOARD_QUERY_DURATION_SECONDS.observe(t.seconds)
        return result if include_internal else strip_internal_fields(result)

    def get_participant_standing(self, contest_id: int, user_id: int) -> Optional[dict]:
        key = RankingKeys.contest_leaderboard(contest_id)
        score = self.redis.zscore(key, str(user_id))
        if score is None:
            return None

        above = self.redis.zcount(key, f"({score}", "+inf")
        tied = [int(m) for m in self.redis.zrangebyscore(key, score, score)]
        db = self.session_factory()
        try:
            loaded = self._load_participants(db, contest_id, tied)
        finally:
            db.close()

        me = loaded.get(user_id, (None, None))[0]
        my_time = me.last_submission_at if me else None
        earlier = 0
        for other_id, (participant, _) in loaded.items():
            if other_id == user_id or my_time is None:
                continue
            if participant.last_submission_at is not None and participant.last_submission_at < my_time:
                earlier += 1
        return {
            "userId": user_id,
            "totalScore": float(score),
            "rank": above + earlier + 1,
            "lastSubmissionAt": my_time.isoformat() if my_time else None,
        }

    def _build_global_page(self, board: str, page: int, limit: int) -> dict:
        key = GLOBAL_BOARDS[board]
        start = (page - 1) * limit
        total = self.redis.zcard(key)
        window = self.redis.zrevrange(key, start, start + limit - 1, withscores=True)

        db = self.session_factory()
        try:
            user_ids = [int(member) for member, _ in window]
            usernames = dict(db.query(User.id, User.username).filter(User.id.in_(user_ids)).all()) if user_ids else {}
        finally:
            db.close()

        data = []
        for position, (member, score) in enumerate(window, start=start + 1):
            user_id = int(member)
            entry = {"rank": position, "userId": user_id, "username": usernames.get(user_id, "Unknown")}
            if board == "problem":
                global_score, last_solve = decode_global_score(score)
                entry["globalScore"] = global_score
                entry["lastSolveAt"] = datetime.fromtimestamp(last_solve, tz=timezone.utc).replace(tzinfo=None).isoformat() if last_solve else None
            else:
                entry["contestRating"] = float(score)
            data.append(entry)
        return {"data": data, "meta": {"page": page, "limit": limit, "total": total}}

    def get_global_ranking(self, board: str, page: int = 1, limit: int = 50) -> dict:
        if board not in GLOBAL_BOARDS:
            raise ValueError(f"Unknown ranking board: {board}")
        with DurationTimer() as t:
            result = get_or_set(
                self.redis,
                RankingKeys.global_page(board, page, limit),
                settings.LEADERBOARD_CACHE_TTL_SECONDS,
                lambda: self._build_global_page(board, page, limit),
            )
        LEADERBOARD_QUERIES_TOTAL.labels(board=board).inc()
        LEADERBOARD_QUERY_DURATION_SECONDS.observe(t.seconds)
        return result


leaderboard_service = LeaderboardService()
