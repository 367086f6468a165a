"""Exactly-once transition of a submission from judging to its verdict.

The only mutual exclusion in the pipeline is the ``done:lock`` key, created
with ``SET NX EX``. Whoever creates it owns the finalization for this cycle;
everyone else returns without side effects. The lock is never released on a
failed durable write; its TTL decides when the stuck sweep may retry.

Scratch runs (``mode=run`` in the tracking meta) share the same gate but are
never persisted: their verdict is only pushed to the result stream.
"""

import enum
import json
import logging
from datetime import timedelta
from typing import Optional

from judgeboard.core.config import settings
from judgeboard.core.events import SUBMISSION_JUDGED, SubmissionJudged, event_bus as default_event_bus
from judgeboard.core.keys import JudgeKeys
from judgeboard.core.metrics import (
    DurationTimer,
    FINALIZATION_DURATION_SECONDS,
    FINALIZE_LOCK_CONTENDED_TOTAL,
    SUBMISSIONS_FINALIZED_TOTAL,
)
from judgeboard.core.redis_client import get_redis
from judgeboard.db.base import utcnow
from judgeboard.db.session import SessionLocal
from judgeboard.models import JUDGING_STATUSES, Submission
from judgeboard.services import verdict as verdict_resolver
from judgeboard.services.correlator import MODE_RUN, MODE_SUBMIT
from judgeboard.services.stream import SubmissionResultStream
from judgeboard.services.verdict import MISSING_RESULT_STATUS, TestcaseResult, Verdict

logger = logging.getLogger(__name__)


class FinalizeOutcome(str, enum.Enum):
    FINALIZED = "finalized"
    ALREADY_FINALIZING = "already_finalizing"
    ALREADY_FINALIZED = "already_finalized"
    NOT_FOUND = "not_found"


def displayed_results(results: list[TestcaseResult]) -> list[dict]:
    return [
        {**r.to_dict(), "output": verdict_resolver.truncate_output(r.output, settings.OUTPUT_DISPLAY_LIMIT)}
        for r in results
    ]


def result_payload(verdict: Verdict, mode: str, testcase_results: Optional[list[dict]] = None) -> dict:
    """Body of the ``result`` message pushed to clients waiting on a submission or run."""
    payload = {
        "mode": mode,
        "status": verdict.status.value,
        "passedTestcases": verdict.passed,
        "totalTestcases": verdict.total,
        "runtimeMs": verdict.average_runtime_ms,
        "memoryKb": verdict.max_memory_kb,
    }
    if testcase_results is not None:
        payload["testcaseResults"] = testcase_results
    return payload


class FinalizationGate:
    def __init__(self, redis_client=None, session_factory=None, event_bus=None,
                 results: Optional[SubmissionResultStream] = None):
        self._redis = redis_client
        self.session_factory = session_factory or SessionLocal
        self.event_bus = event_bus or default_event_bus
        self.results = results or SubmissionResultStream(redis_client=redis_client)
    @property
    def redis(self):
        if self._redis is None:
            self._redis = get_redis()
        return self._redis

    def _load_results(self, submission_id: str) -> list[TestcaseResult]:
        meta = self.redis.hgetall(JudgeKeys.meta(submission_id))
        raw = self.redis.hgetall(JudgeKeys.results_by_index(submission_id))

        by_index = {}
        for index, value in raw.items():
            data = json.loads(value)
            data["index"] = int(index)
            by_index[int(index)] = TestcaseResult.from_dict(data)

        # Without meta the expected size is unknown; resolve what was received.
        total = int(meta.get("total", 0)) if meta else len(by_index)
        for index in range(total):
            if index not in by_index:
                by_index[index] = TestcaseResult(index=index, status=MISSING_RESULT_STATUS)

        return [by_index[i] for i in sorted(by_index)]

    def try_finalize(self, submission_id: str, trigger: str = "complete") -> FinalizeOutcome:
        log_extra = {"submission_id": submission_id, "stage": "finalize"}
        lock_key = JudgeKeys.done_lock(submission_id)

        if not self.redis.set(lock_key, "1", nx=True, ex=settings.FINALIZE_LOCK_TTL_SECONDS):
            FINALIZE_LOCK_CONTENDED_TOTAL.inc()
            logger.debug("finalize_lock_held", extra=log_extra)
            return FinalizeOutcome.ALREADY_FINALIZING

        if self.redis.hget(JudgeKeys.meta(submission_id), "mode") == MODE_RUN:
            return self._finalize_run(submission_id, log_extra)

        db = self.session_factory()
        try:
            submission = db.get(Submission, submission_id)
            if submission is None:
                logger.warning("finalize_unknown_submission", extra=log_extra)
                self.redis.delete(*JudgeKeys.group(submission_id))
                return FinalizeOutcome.NOT_FOUND
            if submission.judged_at is not None:
                logger.info("submission_already_finalized", extra=log_extra)
                self.redis.delete(*JudgeKeys.group(submission_id))
                return FinalizeOutcome.ALREADY_FINALIZED

            with DurationTimer() as timer:
                results = self._load_results(submission_id)
                verdict = verdict_resolver.resolve(results)
                judged_at = utcnow()
                stored_results = displayed_results(results)

                try:
                    updated = (
                        db.query(Submission)
                        .filter(Submission.id == submission_id, Submission.judged_at.is_(None))
                        .update(
                            {
                                Submission.status: verdict.status.value,
                                Submission.testcase_results: stored_results,
                                Submission.passed_testcases: verdict.passed,
                                Submission.total_testcases: verdict.total,
                                Submission.runtime_ms: verdict.average_runtime_ms,
                                Submission.memory_kb: verdict.max_memory_kb,
                                Submission.judged_at: judged_at,
                            },
                            synchronize_session=False,
                        )
                    )
                    db.commit()
                except Exception as e:
                    db.rollback()
                    logger.exception(f"Failed to persist verdict: {str(e)}", extra=log_extra)
                    raise

            FINALIZATION_DURATION_SECONDS.observe(timer.seconds)

            if not updated:
                logger.info("submission_already_finalized", extra=log_extra)
                self.redis.delete(*JudgeKeys.group(submission_id))
                return FinalizeOutcome.ALREADY_FINALIZED

            SUBMISSIONS_FINALIZED_TOTAL.labels(status=verdict.status.value, trigger=trigger).inc()
            logger.info(
                "submission_finalized",
                extra={**log_extra, "user_id": submission.user_id, "problem_id": submission.problem_id,
                       "contest_id": submission.contest_id, "duration_ms": int(timer.seconds * 1000)},
            )

            event = SubmissionJudged(
                submission_id=submission.id,
                user_id=submission.user_id,
                problem_id=submission.problem_id,
                status=verdict.status.value,
                contest_id=submission.contest_id,
                passed_testcases=verdict.passed,
                total_testcases=verdict.total,
                runtime_ms=verdict.average_runtime_ms,
                memory_kb=verdict.max_memory_kb,
                submitted_at=submission.submitted_at,
                judged_at=judged_at,
            )
            self.event_bus.publish(SUBMISSION_JUDGED, event)
            self.results.publish_result(submission_id, result_payload(verdict, MODE_SUBMIT))

            self.redis.delete(*JudgeKeys.group(submission_id))
            return FinalizeOutcome.FINALIZED
        finally:
            db.close()

    def _finalize_run(self, submission_id: str, log_extra: dict) -> FinalizeOutcome:
        results = self._load_results(submission_id)
        verdict = verdict_resolver.resolve(results)
        self.results.publish_result(
            submission_id, result_payload(verdict, MODE_RUN, testcase_results=displayed_results(results))
        )
        self.redis.delete(*JudgeKeys.group(submission_id))

        SUBMISSIONS_FINALIZED_TOTAL.labels(status=verdict.status.value, trigger="run").inc()
        logger.info(f"Run finished with {verdict.status.value}", extra=log_extra)
        return FinalizeOutcome.FINALIZED

    def sweep_stuck_submissions(self, now=None, limit: int = 500) -> dict:
        """Force-finalize submissions judging for longer than the timeout.

        Missing testcase results resolve as judge timeouts, so a lost callback
        ends in a terminal error instead of an endless RUNNING.
        """
        now = now or utcnow()
        cutoff = now - timedelta(seconds=settings.JUDGING_TIMEOUT_SECONDS)

        db = self.session_factory()
        try:
            stuck_ids = [
                row[0]
                for row in db.query(Submission.id)
                .filter(Submission.status.in_(JUDGING_STATUSES))
                .filter(Submission.judged_at.is_(None))
                .filter(Submission.submitted_at < cutoff)
                .order_by(Submission.submitted_at.asc())
                .limit(limit)
                .all()
            ]
        finally:
            db.close()

        outcomes: dict[str, int] = {}
        for submission_id in stuck_ids:
            try:
                outcome = self.try_finalize(submission_id, trigger="sweep")
            except Exception as e:
                logger.error(f"Stuck submission finalization failed: {str(e)}", extra={"submission_id": submission_id})
                outcome_key = "error"
            else:
                outcome_key = outcome.value
            outcomes[outcome_key] = outcomes.get(outcome_key, 0) + 1

        if stuck_ids:
            logger.warning(f"Swept {len(stuck_ids)} stuck submissions", extra={"stage": "sweep"})
        return outcomes


finalization_gate = FinalizationGate()

