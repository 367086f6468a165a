"""Contest close-out: final ranks, rating hand-off and stream shutdown.

The rating formula is not implemented here. A ``RatingCalculator`` receives the
final standings once and returns each participant's new rating.
"""

import logging
from dataclasses import dataclass
from typing import Optional, Protocol

from redis.exceptions import LockError
from sqlalchemy import func

from judgeboard.core.config import settings
from judgeboard.core.keys import RankingKeys
from judgeboard.core.redis_client import get_redis
from judgeboard.db.session import SessionLocal
from judgeboard.models import JUDGING_STATUSES, Contest, ContestParticipant, ContestStatus, Submission, UserStatistics
from judgeboard.services.rebuild import RankingRebuilder, ranking_rebuilder
from judgeboard.services.stream import LeaderboardStream, leaderboard_stream

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Standing:
    user_id: int
    rank: int
    total_score: float
    rating_before: float
    contests_participated: int


@dataclass(frozen=True)
class RatingChange:
    user_id: int
    rating_after: float


class RatingCalculator(Protocol):
    def calculate(self, contest_id: int, standings: list[Standing]) -> list[RatingChange]: ...


class UnchangedRatings:
    """Keeps every rating as is; stands in until a real calculator is configured."""

    def calculate(self, contest_id: int, standings: list[Standing]) -> list[RatingChange]:
        return [RatingChange(user_id=s.user_id, rating_after=s.rating_before) for s in standings]


class ContestNotFound(Exception):
    pass


class ContestClosePending(Exception):
    """Contest submissions are still being judged; retry the close later."""

    def __init__(self, contest_id: int, pending: int):
        super().__init__(f"Contest {contest_id} has {pending} submissions still judging")
        self.contest_id = contest_id
        self.pending = pending


class ContestService:
    def __init__(
        self,
        redis_client=None,
        session_factory=None,
        rebuilder: Optional[RankingRebuilder] = None,
        stream: Optional[LeaderboardStream] = None,
        rating_calculator: Optional[RatingCalculator] = None,
    ):
        self._redis = redis_client
        self.session_factory = session_factory or SessionLocal
        self.rebuilder = rebuilder or ranking_rebuilder
        self.stream = stream or leaderboard_stream
        self.rating_calculator = rating_calculator or UnchangedRatings()

    @property
    def redis(self):
        if self._redis is None:
            self._redis = get_redis()
        return self._redis

    def close_contest(self, contest_id: int) -> dict:
        """Close a contest once: stop intake, wait for verdicts, rank, rate, end.

        Safe to call again after any failure. The contest stays CLOSING until
        ratings and the ENDED status commit together, so a retry resumes where
        the failed run stopped and a finished close is never repeated.
        Raises ``ContestClosePending`` while contest submissions are still being judged.
        """
        log_extra = {"contest_id": contest_id, "stage": "contest_close"}
        lock = self.redis.lock(
            RankingKeys.contest_close_lock(contest_id),
            timeout=settings.CONTEST_CLOSE_LOCK_TTL_SECONDS,
        )
        if not lock.acquire(blocking=False):
            logger.info("contest_close_in_progress", extra=log_extra)
            return {"contest_id": contest_id, "status": "closing"}
        try:
            return self._close_locked(contest_id, log_extra)
        finally:
            try:
                lock.release()
            except LockError as e:
                logger.warning(f"Contest close lock lost before release: {str(e)}", extra=log_extra)

    def _close_locked(self, contest_id: int, log_extra: dict) -> dict:
        db = self.session_factory()
        try:
            contest = db.get(Contest, contest_id)
            if contest is None:
                raise ContestNotFound(f"Contest {contest_id} not found")
            if contest.status == ContestStatus.ENDED.value:
                logger.info("contest_already_closed", extra=log_extra)
                return {"contest_id": contest_id, "status": "already_closed"}
            if contest.status != ContestStatus.CLOSING.value:
                contest.status = ContestStatus.CLOSING.value
                db.commit()
            is_rated = contest.is_rated

            pending = (
                db.query(func.count(Submission.id))
                .filter(Submission.contest_id == contest_id, Submission.status.in_(JUDGING_STATUSES))
                .scalar()
            ) or 0
        finally:
            db.close()

        if pending:
            logger.info(f"Contest close waiting on {pending} submissions", extra=log_extra)
            raise ContestClosePending(contest_id, pending)

        ranked = self.rebuilder.rebuild_contest_leaderboard(contest_id)["ranked"]

        db = self.session_factory()
        try:
            ended = (
                db.query(Contest)
                .filter(Contest.id == contest_id, Contest.status == ContestStatus.CLOSING.value)
                .update({Contest.status: ContestStatus.ENDED.value}, synchronize_session=False)
            )
            if not ended:
                db.rollback()
                logger.info("contest_already_closed", extra=log_extra)
                return {"contest_id": contest_id, "status": "already_closed"}
            board = self._apply_ratings(db, contest_id) if is_rated else {}
            db.commit()
        finally:
            db.close()

        if board:
            self.redis.zadd(RankingKeys.CONTEST_BASED, board)
        self.stream.publish_end(contest_id)
        logger.info(f"Contest closed with {ranked} ranked, {len(board)} rated", extra=log_extra)
        return {"contest_id": contest_id, "status": "closed", "ranked": ranked, "rated": len(board)}

    def _apply_ratings(self, db, contest_id: int) -> dict:
        """Write rating changes into ``db`` without committing; returns the rating board."""
        participants = (
            db.query(ContestParticipant)
            .filter(ContestParticipant.contest_id == contest_id, ContestParticipant.rank.isnot(None))
            .order_by(ContestParticipant.rank.asc())
            .all()
        )
        if not participants:
            return {}

        user_ids = [p.user_id for p in participants]
        stats = {s.user_id: s for s in db.query(UserStatistics).filter(UserStatistics.user_id.in_(user_ids)).all()}
        for user_id in user_ids:
            if user_id not in stats:
                stats[user_id] = UserStatistics(user_id=user_id, contest_rating=1500.0, contests_participated=0)
                db.add(stats[user_id])

        standings = [
            Standing(
                user_id=p.user_id,
                rank=p.rank,
                total_score=float(p.total_score or 0),
                rating_before=float(stats[p.user_id].contest_rating),
                contests_participated=stats[p.user_id].contests_participated or 0,
            )
            for p in participants
        ]
        changes = {c.user_id: c for c in self.rating_calculator.calculate(contest_id, standings)}

        board = {}
        for participant in participants:
            stat = stats[participant.user_id]
            before = float(stat.contest_rating)
            change = changes.get(participant.user_id)
            after = float(change.rating_after) if change else before
            participant.rating_before = before
            participant.rating_after = after
            participant.rating_delta = after - before
            stat.contest_rating = after
            stat.contests_participated = (stat.contests_participated or 0) + 1
            board[str(participant.user_id)] = after
        return board


contest_service = ContestService()
