"""Incremental ranking updates driven by ``SubmissionJudged`` events.

Global problem board score encoding (shared with the rebuilder)::

    encoded = global_score * 10**10 + (MAX_TIMESTAMP - last_solve_epoch)

Higher score wins; among equal scores the earlier last solve wins.
"""

import logging
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy.exc import IntegrityError

from judgeboard.core.cache import invalidate_pattern
from judgeboard.core.config import settings
from judgeboard.core.events import SUBMISSION_JUDGED, SubmissionJudged, event_bus
from judgeboard.core.keys import RankingKeys
from judgeboard.core.metrics import RANKING_UPDATES_TOTAL
from judgeboard.core.redis_client import get_redis
from judgeboard.db.base import utcnow
from judgeboard.db.session import SessionLocal
from judgeboard.models import (
    Contest,
    ContestParticipant,
    ContestProblem,
    Problem,
    ProblemDifficulty,
    ProgressStatus,
    SubmissionStatus,
    User,
    UserProblemProgress,
)
from judgeboard.services.stream import LeaderboardStream, leaderboard_stream

logger = logging.getLogger(__name__)

MAX_TIMESTAMP = 9999999999
SCORE_MULTIPLIER = 10 ** 10


def to_epoch_seconds(moment: Optional[datetime]) -> int:
    if moment is None:
        return 0
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return int(moment.timestamp())


def encode_global_score(global_score: int, last_solve_at: Optional[datetime]) -> int:
    return int(global_score) * SCORE_MULTIPLIER + (MAX_TIMESTAMP - to_epoch_seconds(last_solve_at))


def decode_global_score(encoded: float) -> tuple[int, Optional[int]]:
    """Inverse of ``encode_global_score``: (global_score, last_solve_epoch or None)."""
    encoded = int(encoded)
    global_score, remainder = divmod(encoded, SCORE_MULTIPLIER)
    last_solve = MAX_TIMESTAMP - remainder
    return global_score, (last_solve or None)


def difficulty_weight(difficulty: str) -> int:
    return {
        ProblemDifficulty.EASY.value: settings.PROBLEM_WEIGHT_EASY,
        ProblemDifficulty.MEDIUM.value: settings.PROBLEM_WEIGHT_MEDIUM,
        ProblemDifficulty.HARD.value: settings.PROBLEM_WEIGHT_HARD,
    }.get(difficulty, 0)


def contest_problem_score(points: float, passed: int, total: int, elapsed_minutes: float,
                          duration_minutes: float, decay_rate: Optional[float] = None) -> float:
    """IOI partial score with optional linear time decay, rounded to cents."""
    if total <= 0 or points <= 0:
        return 0.0
    decay_rate = settings.CONTEST_DECAY_RATE if decay_rate is None else decay_rate
    score = points * passed / total
    if duration_minutes > 0 and decay_rate:
        decay = min(max(elapsed_minutes, 0.0) / duration_minutes * decay_rate, 1.0)
        score = max(0.0, score - score * decay)
    return round(score, 2)


def participant_entry(participant: ContestParticipant) -> dict:
    return {
        "userId": participant.user_id,
        "totalScore": float(participant.total_score or 0),
        "solvedCount": participant.solved_count,
        "finishTimeMs": participant.finish_time_ms,
        "totalSubmissions": participant.total_submissions,
        "lastSubmissionAt": participant.last_submission_at.isoformat() if participant.last_submission_at else None,
        "problemScores": participant.problem_scores or {},
        "rank": participant.rank,
    }


class RankingUpdater:
    def __init__(self, redis_client=None, session_factory=None, stream: Optional[LeaderboardStream] = None):
        self._redis = redis_client
        self.session_factory = session_factory or SessionLocal
        self.stream = stream or leaderboard_stream

    @property
    def redis(self):
        if self._redis is None:
            self._redis = get_redis()
        return self._redis

    def on_submission_judged(self, event: SubmissionJudged) -> None:
        log_extra = {"submission_id": event.submission_id, "user_id": event.user_id,
                     "problem_id": event.problem_id, "stage": "ranking"}
        db = self.session_factory()
        try:
            self.update_problem_stats(db, event)
            first_solve = self.update_user_progress(db, event)
            if first_solve:
                self.update_global_score(db, event)
            if event.contest_id is not None:
                self.update_contest_standing(db, event)
        except Exception:
            db.rollback()
            logger.exception("ranking_update_failed", extra=log_extra)
            raise
        finally:
            db.close()

    def update_problem_stats(self, db, event: SubmissionJudged) -> None:
        accepted = 1 if event.status == SubmissionStatus.ACCEPTED.value else 0
        # Single statement; right-hand sides read the pre-update row.
        db.query(Problem).filter(Problem.id == event.problem_id).update(
            {
                Problem.total_submissions: Problem.total_submissions + 1,
                Problem.total_accepted: Problem.total_accepted + accepted,
                Problem.acceptance_rate: (Problem.total_accepted + accepted) * 100.0 / (Problem.total_submissions + 1),
            },
            synchronize_session=False,
        )
        db.commit()
        RANKING_UPDATES_TOTAL.labels(board="problem_stats").inc()

    def _ensure_progress(self, db, user_id: int, problem_id: int) -> None:
        exists = (
            db.query(UserProblemProgress.id)
            .filter(UserProblemProgress.user_id == user_id, UserProblemProgress.problem_id == problem_id)
            .first()
        )
        if exists:
            return
        db.add(UserProblemProgress(
            user_id=user_id,
            problem_id=problem_id,
            status=ProgressStatus.ATTEMPTED.value,
            attempts=0,
        ))
        try:
            db.commit()
        except IntegrityError:
            # Concurrent first attempt created the row
            db.rollback()

    def update_user_progress(self, db, event: SubmissionJudged) -> bool:
        """Record the attempt; returns True only for the user's first solve of the problem."""
        self._ensure_progress(db, event.user_id, event.problem_id)
        progress = db.query(UserProblemProgress).filter(
            UserProblemProgress.user_id == event.user_id,
            UserProblemProgress.problem_id == event.problem_id,
        )
        progress.update({UserProblemProgress.attempts: UserProblemProgress.attempts + 1}, synchronize_session=False)

        first_solve = False
        if event.status == SubmissionStatus.ACCEPTED.value:
            solved = progress.filter(UserProblemProgress.status != ProgressStatus.SOLVED.value).update(
                {
                    UserProblemProgress.status: ProgressStatus.SOLVED.value,
                    UserProblemProgress.solved_at: event.judged_at or utcnow(),
                },
                synchronize_session=False,
            )
            first_solve = solved == 1
        db.commit()
        return first_solve

    def update_global_score(self, db, event: SubmissionJudged) -> None:
        problem = db.get(Problem, event.problem_id)
        if problem is None:
            logger.warning("score_problem_missing", extra={"problem_id": event.problem_id})
            return
        weight = difficulty_weight(problem.difficulty)
        if weight <= 0:
            return

        solved_column = {
            ProblemDifficulty.EASY.value: User.solved_easy,
            ProblemDifficulty.MEDIUM.value: User.solved_medium,
            ProblemDifficulty.HARD.value: User.solved_hard,
        }[problem.difficulty]
        db.query(User).filter(User.id == event.user_id).update(
            {
                User.global_score: User.global_score + weight,
                solved_column: solved_column + 1,
                User.last_solve_at: event.judged_at or utcnow(),
            },
            synchronize_session=False,
        )
        db.commit()

        user = db.get(User, event.user_id)
        if user is None:
            logger.warning("score_user_missing", extra={"user_id": event.user_id})
            return
        encoded = encode_global_score(user.global_score, user.last_solve_at)
        self.redis.zadd(RankingKeys.PROBLEM_BASED, {str(user.id): encoded})
        RANKING_UPDATES_TOTAL.labels(board="problem").inc()
        logger.info(
            f"Global score +{weight} -> {user.global_score}",
            extra={"user_id": user.id, "problem_id": event.problem_id, "stage": "ranking"},
        )

    def update_contest_standing(self, db, event: SubmissionJudged) -> None:
        log_extra = {"contest_id": event.contest_id, "user_id": event.user_id, "submission_id": event.submission_id}
        submitted_at = event.submitted_at or event.judged_at or utcnow()

        contest = db.get(Contest, event.contest_id)
        if contest is None or not contest.is_active_at(submitted_at):
            logger.info("contest_submission_outside_window", extra=log_extra)
            return

        contest_problem = (
            db.query(ContestProblem)
            .filter(ContestProblem.contest_id == contest.id, ContestProblem.problem_id == event.problem_id)
            .first()
        )
        if contest_problem is None:
            logger.warning(f"Problem {event.problem_id} not found in contest", extra=log_extra)
            return

        participant = (
            db.query(ContestParticipant)
            .filter(ContestParticipant.contest_id == contest.id, ContestParticipant.user_id == event.user_id)
            .with_for_update()
            .first()
        )
        if participant is None:
            logger.warning("contest_participant_missing", extra=log_extra)
            return

        elapsed_ms = max(0, int((submitted_at - contest.start_time).total_seconds() * 1000))
        score = contest_problem_score(
            contest_problem.points,
            event.passed_testcases,
            event.total_testcases,
            elapsed_ms / 60000,
            contest.duration_minutes,
        )

        scores = dict(participant.problem_scores or {})
        key = str(event.problem_id)
        current = dict(scores.get(key) or {"score": 0.0, "submissions": 0, "lastSubmitTime": None, "firstAcTime": None})
        current["score"] = max(score, float(current.get("score") or 0.0))
        current["submissions"] = int(current.get("submissions") or 0) + 1
        current["lastSubmitTime"] = submitted_at.isoformat()
        if event.status == SubmissionStatus.ACCEPTED.value and current.get("firstAcTime") is None:
            current["firstAcTime"] = elapsed_ms
        scores[key] = current

        # Reassign so the JSON column is flagged dirty
        participant.problem_scores = scores
        participant.total_score = round(sum(float(s.get("score") or 0.0) for s in scores.values()), 2)
        participant.solved_count = sum(1 for s in scores.values() if s.get("firstAcTime") is not None)
        participant.finish_time_ms = sum(int(s["firstAcTime"]) for s in scores.values() if s.get("firstAcTime") is not None)
        participant.total_submissions = (participant.total_submissions or 0) + 1
        participant.last_submission_at = submitted_at
        db.commit()

        self.redis.zadd(RankingKeys.contest_leaderboard(contest.id), {str(participant.user_id): participant.total_score})
        invalidate_pattern(self.redis, RankingKeys.contest_leaderboard_page_pattern(contest.id))
        RANKING_UPDATES_TOTAL.labels(board="contest").inc()
        logger.info(
            f"Contest score {participant.total_score} (solved {participant.solved_count})",
            extra={**log_extra, "problem_id": event.problem_id, "stage": "ranking"},
        )

        self.stream.publish(contest.id, participant_entry(participant))


ranking_updater = RankingUpdater()


def register_ranking_listeners(bus=None, updater: Optional[RankingUpdater] = None) -> RankingUpdater:
    """Subscribe the ranking updater to finalized submissions; safe to call twice."""
    bus = bus or event_bus
    updater = updater or ranking_updater
    if updater.on_submission_judged not in bus.handlers(SUBMISSION_JUDGED):
        bus.subscribe(SUBMISSION_JUDGED, updater.on_submission_judged)
    return updater
