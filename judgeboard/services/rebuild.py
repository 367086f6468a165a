"""Full recomputation of the Redis leaderboards from the relational store.

Each board is written into a scratch key and swapped in with ``RENAME`` so
readers never observe a half-built board. Incremental updates that land on the
old key between the scan and the swap are overwritten; the next scheduled
rebuild (or the next incremental update for that member) repairs them.
"""

import logging
import uuid
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime
from typing import Optional

from redis.exceptions import LockError

from judgeboard.core.cache import invalidate_pattern
from judgeboard.core.config import settings
from judgeboard.core.keys import RankingKeys
from judgeboard.core.metrics import DurationTimer, RANKING_REBUILD_DURATION_SECONDS, RANKING_REBUILD_FAILURES_TOTAL
from judgeboard.core.redis_client import get_redis
from judgeboard.db.session import SessionLocal
from judgeboard.models import ContestParticipant, User, UserStatistics
from judgeboard.services.ranking import encode_global_score

logger = logging.getLogger(__name__)

PROBLEM_BOARD = "problem"
CONTEST_RATING_BOARD = "contest"


class RankingRebuilder:
    def __init__(self, redis_client=None, session_factory=None, batch_size: Optional[int] = None):
        self._redis = redis_client
        self.session_factory = session_factory or SessionLocal
        self.batch_size = batch_size or settings.RANKING_REBUILD_BATCH_SIZE

    @property
    def redis(self):
        if self._redis is None:
            self._redis = get_redis()
        return self._redis

    def _swap_in(self, scratch_key: str, target_key: str, written: int) -> None:
        if written:
            self.redis.rename(scratch_key, target_key)
        else:
            self.redis.delete(scratch_key, target_key)

    def rebuild_problem_ranking(self) -> dict:
        target = RankingKeys.PROBLEM_BASED
        scratch = f"{target}:rebuild:{uuid.uuid4().hex}"
        processed = ranked = 0
        last_id = 0

        db = self.session_factory()
        try:
            while True:
                users = (
                    db.query(User.id, User.global_score, User.last_solve_at)
                    .filter(User.is_active.is_(True), User.id > last_id)
                    .order_by(User.id.asc())
                    .limit(self.batch_size)
                    .all()
                )
                if not users:
                    break

                batch = {
                    str(user_id): encode_global_score(score, last_solve_at)
                    for user_id, score, last_solve_at in users
                    if (score or 0) > 0
                }
                if batch:
                    self.redis.zadd(scratch, batch)
                processed += len(users)
                ranked += len(batch)
                last_id = users[-1][0]
                logger.debug(f"Problem ranking: processed {processed} users")
        except Exception:
            self.redis.delete(scratch)
            raise
        finally:
            db.close()

        self._swap_in(scratch, target, ranked)
        return {"processed": processed, "ranked": ranked}

    def rebuild_contest_rating(self) -> dict:
        target = RankingKeys.CONTEST_BASED
        scratch = f"{target}:rebuild:{uuid.uuid4().hex}"
        processed = ranked = 0
        last_id = 0

        db = self.session_factory()
        try:
            while True:
                stats = (
                    db.query(UserStatistics.user_id, UserStatistics.contest_rating, UserStatistics.contests_participated)
                    .filter(UserStatistics.user_id > last_id)
                    .order_by(UserStatistics.user_id.asc())
                    .limit(self.batch_size)
                    .all()
                )
                if not stats:
                    break

                batch = {
                    str(user_id): float(rating)
                    for user_id, rating, participated in stats
                    if (participated or 0) > 0
                }
                if batch:
                    self.redis.zadd(scratch, batch)
                processed += len(stats)
                ranked += len(batch)
                last_id = stats[-1][0]
                logger.debug(f"Contest rating: processed {processed} users")
        except Exception:
            self.redis.delete(scratch)
            raise
        finally:
            db.close()

        self._swap_in(scratch, target, ranked)
        return {"processed": processed, "ranked": ranked}

    def _run_board(self, board: str, job) -> dict:
        try:
            with DurationTimer() as timer:
                result = job()
        except Exception as e:
            RANKING_REBUILD_FAILURES_TOTAL.labels(board=board).inc()
            logger.exception(f"Failed to rebuild {board} ranking: {str(e)}", extra={"stage": "rebuild"})
            return {"status": "failed", "error": str(e)}
        RANKING_REBUILD_DURATION_SECONDS.labels(board=board).observe(timer.seconds)
        logger.info(
            f"Rebuilt {board} ranking: {result['ranked']} ranked of {result['processed']} processed",
            extra={"stage": "rebuild", "duration_ms": int(timer.seconds * 1000)},
        )
        return {"status": "ok", "duration_ms": int(timer.seconds * 1000), **result}

    def rebuild_all(self) -> dict:
        """Rebuild both global boards concurrently under the singleton lock."""
        lock = self.redis.lock(RankingKeys.REBUILD_LOCK, timeout=settings.RANKING_REBUILD_LOCK_TTL_SECONDS)
        if not lock.acquire(blocking=False):
            logger.warning("ranking_rebuild_already_running", extra={"stage": "rebuild"})
            return {"status": "skipped"}

        logger.info("Starting global ranking rebuild", extra={"stage": "rebuild"})
        try:
            with DurationTimer() as timer:
                with ThreadPoolExecutor(max_workers=2, thread_name_prefix="ranking-rebuild") as pool:
                    problem = pool.submit(self._run_board, PROBLEM_BOARD, self.rebuild_problem_ranking)
                    contest = pool.submit(self._run_board, CONTEST_RATING_BOARD, self.rebuild_contest_rating)
                    boards = {PROBLEM_BOARD: problem.result(), CONTEST_RATING_BOARD: contest.result()}
        finally:
            # Token-checked release: a lock that expired and was re-taken stays with its new owner
            try:
                lock.release()
            except LockError as e:
                logger.warning(f"Rebuild lock lost before release: {str(e)}", extra={"stage": "rebuild"})

        logger.info(
            f"Global ranking rebuild completed in {int(timer.seconds * 1000)}ms",
            extra={"stage": "rebuild", "duration_ms": int(timer.seconds * 1000)},
        )
        return {"status": "ok", "boards": boards}

    def rebuild_contest_leaderboard(self, contest_id: int) -> dict:
        """Recompute one contest's sorted set and persist participant ranks."""
        target = RankingKeys.contest_leaderboard(contest_id)
        scratch = f"{target}:rebuild:{uuid.uuid4().hex}"

        db = self.session_factory()
        try:
            participants = (
                db.query(ContestParticipant)
                .filter(ContestParticipant.contest_id == contest_id)
                .all()
            )
            active = [p for p in participants if (p.total_submissions or 0) > 0]
            active.sort(key=lambda p: (-float(p.total_score or 0), p.last_submission_at or datetime.max, p.user_id))

            previous = None
            rank = 0
            for position, participant in enumerate(active, start=1):
                standing = (float(participant.total_score or 0), participant.last_submission_at)
                if standing != previous:
                    rank = position
                    previous = standing
                participant.rank = rank
            for participant in participants:
                if participant not in active:
                    participant.rank = None
            db.commit()

            if active:
                self.redis.zadd(scratch, {str(p.user_id): float(p.total_score or 0) for p in active})
        finally:
            db.close()

        self._swap_in(scratch, target, len(active))
        invalidate_pattern(self.redis, RankingKeys.contest_leaderboard_page_pattern(contest_id))
        logger.info(
            f"Rebuilt contest leaderboard with {len(active)} participants",
            extra={"contest_id": contest_id, "stage": "rebuild"},
        )
        return {"contest_id": contest_id, "ranked": len(active)}


ranking_rebuilder = RankingRebuilder()
