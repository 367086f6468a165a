"""Per-submission aggregation of asynchronous judge callbacks.

Tracking state lives in Redis under ``judge:sub:{id}:*``:

- ``meta``      hash ``{total, problemId, mode}`` written at dispatch time
- ``resultsI``  hash index -> JSON result, last write wins per index
- ``seen``      set of processed tokens

The received count is the cardinality of ``resultsI``. Every mutation is a
single atomic Redis command; completion is only signalled here; the
exactly-once transition belongs to the finalization gate.
"""

import enum
import json
import logging
from typing import Callable, Optional

from judgeboard.core.config import settings
from judgeboard.core.keys import JudgeKeys
from judgeboard.core.metrics import CALLBACKS_RECEIVED_TOTAL
from judgeboard.core.redis_client import get_redis

logger = logging.getLogger(__name__)


class CallbackOutcome(str, enum.Enum):
    RECORDED = "recorded"
    COMPLETE = "complete"
    DUPLICATE = "duplicate"
    ORPHANED = "orphaned"
    REJECTED = "rejected"  # index outside the dispatched batch


MODE_SUBMIT = "submit"
MODE_RUN = "run"


def _enqueue_finalize(submission_id: str) -> None:
    from judgeboard.core.celery import finalize_submission_task

    finalize_submission_task.delay(submission_id)


class CallbackCorrelator:
    def __init__(self, redis_client=None, on_complete: Optional[Callable[[str], None]] = None):
        self._redis = redis_client
        self.on_complete = on_complete or _enqueue_finalize

    @property
    def redis(self):
        if self._redis is None:
            self._redis = get_redis()
        return self._redis

    def init_tracking(self, submission_id: str, total_testcases: int, problem_id: int, mode: str = MODE_SUBMIT) -> None:
        """Create the tracking group for a freshly dispatched batch.

        ``mode`` is ``submit`` for persisted submissions and ``run`` for
        scratch runs, which are never written to the database.
        """
        ttl = settings.TRACKING_TTL_SECONDS
        pipe = self.redis.pipeline()
        pipe.hset(JudgeKeys.meta(submission_id), mapping={
            "total": int(total_testcases),
            "problemId": int(problem_id),
            "mode": mode,
        })
        pipe.expire(JudgeKeys.meta(submission_id), ttl)
        pipe.execute()
        logger.info(
            "judge_tracking_initialized",
            extra={"submission_id": submission_id, "problem_id": problem_id, "stage": "dispatch"},
        )

    def get_meta(self, submission_id: str) -> Optional[dict]:
        raw = self.redis.hgetall(JudgeKeys.meta(submission_id))
        if not raw:
            return None
        return {
            "total": int(raw.get("total", 0)),
            "problemId": int(raw.get("problemId", 0)),
            "mode": raw.get("mode") or MODE_SUBMIT,
        }

    def on_result(self, submission_id: str, token: Optional[str], testcase_index: int, result: dict) -> CallbackOutcome:
        """Record one testcase result; returns what happened to it."""
        log_extra = {"submission_id": submission_id, "token": token, "testcase_index": testcase_index}

        meta = self.get_meta(submission_id)
        if meta is None:
            # Already finalized (keys deleted) or never dispatched
            logger.debug("callback_without_tracking", extra=log_extra)
            CALLBACKS_RECEIVED_TOTAL.labels(outcome=CallbackOutcome.ORPHANED.value).inc()
            return CallbackOutcome.ORPHANED

        total = meta["total"]
        if testcase_index < 0 or testcase_index >= total:
            logger.warning(f"Testcase index outside batch of {total}", extra=log_extra)
            CALLBACKS_RECEIVED_TOTAL.labels(outcome=CallbackOutcome.REJECTED.value).inc()
            return CallbackOutcome.REJECTED

        seen_key = JudgeKeys.seen(submission_id)
        results_key = JudgeKeys.results_by_index(submission_id)
        dedup_member = token or f"index:{testcase_index}"

        if not self.redis.sadd(seen_key, dedup_member):
            logger.debug("callback_duplicate", extra=log_extra)
            CALLBACKS_RECEIVED_TOTAL.labels(outcome=CallbackOutcome.DUPLICATE.value).inc()
            return CallbackOutcome.DUPLICATE

        payload = dict(result)
        payload["index"] = int(testcase_index)
        payload["token"] = token

        ttl = settings.TRACKING_TTL_SECONDS
        pipe = self.redis.pipeline()
        pipe.hset(results_key, str(int(testcase_index)), json.dumps(payload))
        pipe.hlen(results_key)
        pipe.expire(results_key, ttl)
        pipe.expire(seen_key, ttl)
        _, received, _, _ = pipe.execute()

        logger.info(
            f"Recorded testcase result {received}/{total}",
            extra={**log_extra, "stage": "callback"},
        )

        if received >= total:
            CALLBACKS_RECEIVED_TOTAL.labels(outcome=CallbackOutcome.COMPLETE.value).inc()
            self.on_complete(submission_id)
            return CallbackOutcome.COMPLETE

        CALLBACKS_RECEIVED_TOTAL.labels(outcome=CallbackOutcome.RECORDED.value).inc()
        return CallbackOutcome.RECORDED

    def load_results(self, submission_id: str) -> dict:
        """All recorded results keyed by testcase index."""
        raw = self.redis.hgetall(JudgeKeys.results_by_index(submission_id))
        return {int(index): json.loads(value) for index, value in raw.items()}

    def clear(self, submission_id: str) -> None:
        self.redis.delete(*JudgeKeys.group(submission_id))


correlator = CallbackCorrelator()
