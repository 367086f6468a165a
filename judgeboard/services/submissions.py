import logging
import uuid
from typing import Optional

from judgeboard.core.metrics import JUDGE_DISPATCH_FAILURES_TOTAL, SUBMISSIONS_DISPATCHED_TOTAL
from judgeboard.db.base import utcnow
from judgeboard.models import (
    Contest,
    ContestParticipant,
    ContestProblem,
    ContestStatus,
    Problem,
    Submission,
    SubmissionStatus,
)
from judgeboard.services.correlator import MODE_RUN, CallbackCorrelator, correlator as default_correlator
from judgeboard.services.finalizer import FinalizationGate, finalization_gate
from judgeboard.services.judge_client import JudgeClient, JudgeDispatchError, judge_client

logger = logging.getLogger(__name__)


class SubmissionRejected(Exception):
    def __init__(self, message: str, status_code: int = 400):
        super().__init__(message)
        self.message = message
        self.status_code = status_code


class SubmissionService:
    def __init__(
        self,
        client: Optional[JudgeClient] = None,
        correlator: Optional[CallbackCorrelator] = None,
        gate: Optional[FinalizationGate] = None,
    ):
        self.client = client or judge_client
        self.correlator = correlator or default_correlator
        self.gate = gate or finalization_gate

    def validate_contest_submission(self, db, contest_id: int, user_id: int, problem_id: int) -> Contest:
        contest = db.get(Contest, contest_id)
        if contest is None:
            raise SubmissionRejected("Contest not found", status_code=404)
        if contest.status != ContestStatus.RUNNING.value or not contest.is_active_at(utcnow()):
            raise SubmissionRejected("Submissions are only allowed during running contests")

        registered = (
            db.query(ContestParticipant.id)
            .filter(ContestParticipant.contest_id == contest_id, ContestParticipant.user_id == user_id)
            .first()
        )
        if not registered:
            raise SubmissionRejected("You must register for this contest first", status_code=403)

        in_contest = (
            db.query(ContestProblem.id)
            .filter(ContestProblem.contest_id == contest_id, ContestProblem.problem_id == problem_id)
            .first()
        )
        if not in_contest:
            raise SubmissionRejected("Problem is not part of this contest")
        return contest

    def _mark_dispatch_failed(self, db, submission_id: str) -> None:
        db.query(Submission).filter(Submission.id == submission_id, Submission.judged_at.is_(None)).update(
            {Submission.status: SubmissionStatus.UNKNOWN_ERROR.value, Submission.judged_at: utcnow()},
            synchronize_session=False,
        )
        db.commit()
        self.correlator.clear(submission_id)

    def submit(self, db, user_id: int, problem_id: int, language_id: int, source_code: str,
               contest_id: Optional[int] = None) -> Submission:
        """Persist a submission and dispatch one judge run per testcase."""
        problem = db.get(Problem, problem_id)
        if problem is None:
            raise SubmissionRejected("Problem not found", status_code=404)
        if contest_id is not None:
            self.validate_contest_submission(db, contest_id, user_id, problem_id)

        submission_id = str(uuid.uuid4())
        log_extra = {"submission_id": submission_id, "user_id": user_id, "problem_id": problem_id,
                     "contest_id": contest_id, "stage": "dispatch"}

        try:
            payloads = self.client.build_payloads(submission_id, source_code, language_id, problem)
        except JudgeDispatchError as e:
            raise SubmissionRejected(str(e)) from e

        submission = Submission(
            id=submission_id,
            user_id=user_id,
            problem_id=problem_id,
            contest_id=contest_id,
            language_id=language_id,
            source_code=source_code,
            status=SubmissionStatus.PENDING.value,
            total_testcases=len(payloads),
            submitted_at=utcnow(),
        )
        db.add(submission)
        db.commit()
        logger.info("submission_created", extra=log_extra)

        # Tracking must exist before the first callback can arrive.
        self.correlator.init_tracking(submission_id, len(payloads), problem_id)

        if not payloads:
            logger.warning("submission_without_testcases", extra=log_extra)
            self.gate.try_finalize(submission_id)
            db.refresh(submission)
            return submission

        db.query(Submission).filter(Submission.id == submission_id, Submission.judged_at.is_(None)).update(
            {Submission.status: SubmissionStatus.RUNNING.value}, synchronize_session=False
        )
        db.commit()

        try:
            tokens = self.client.dispatch_batch(payloads)
        except JudgeDispatchError as e:
            JUDGE_DISPATCH_FAILURES_TOTAL.labels(reason=type(e.__cause__).__name__ if e.__cause__ else "response").inc()
            logger.error(f"Judge dispatch failed: {str(e)}", extra=log_extra)
            self._mark_dispatch_failed(db, submission_id)
            raise

        SUBMISSIONS_DISPATCHED_TOTAL.labels(mode="contest" if contest_id is not None else "practice").inc()
        logger.info(f"Dispatched {len(tokens)} testcases", extra=log_extra)
        db.refresh(submission)
        return submission

    def run(self, db, user_id: int, problem_id: int, language_id: int, source_code: str,
            testcases: Optional[list[dict]] = None) -> dict:
        """Judge code against caller-supplied testcases without recording a submission.

        The verdict is only delivered on the result stream for the returned id.
        """
        problem = db.get(Problem, problem_id)
        if problem is None:
            raise SubmissionRejected("Problem not found", status_code=404)
        if not testcases:
            raise SubmissionRejected("Testcases are required to run code")

        run_id = str(uuid.uuid4())
        log_extra = {"submission_id": run_id, "user_id": user_id, "problem_id": problem_id, "stage": "dispatch"}

        try:
            payloads = self.client.build_payloads(run_id, source_code, language_id, problem, testcases=testcases)
        except JudgeDispatchError as e:
            raise SubmissionRejected(str(e)) from e

        self.correlator.init_tracking(run_id, len(payloads), problem_id, mode=MODE_RUN)
        try:
            tokens = self.client.dispatch_batch(payloads)
        except JudgeDispatchError as e:
            JUDGE_DISPATCH_FAILURES_TOTAL.labels(reason=type(e.__cause__).__name__ if e.__cause__ else "response").inc()
            logger.error(f"Judge dispatch failed for run: {str(e)}", extra=log_extra)
            self.correlator.clear(run_id)
            raise

        SUBMISSIONS_DISPATCHED_TOTAL.labels(mode=MODE_RUN).inc()
        logger.info(f"Dispatched run of {len(tokens)} testcases", extra=log_extra)
        return {"submission_id": run_id, "mode": MODE_RUN, "total_testcases": len(payloads)}


submission_service = SubmissionService()
