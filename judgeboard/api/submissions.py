from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session
from judgeboard.core.authz import Principal, authorizer, get_principal
from judgeboard.db.session import get_db
from judgeboard.models import Submission
from judgeboard.services.correlator import correlator
from judgeboard.services.judge_client import JudgeDispatchError
from judgeboard.services.stream import relay_until_disconnected, submission_result_stream
from judgeboard.services.submissions import SubmissionRejected, submission_service
import logging

logger = logging.getLogger(__name__)
router = APIRouter()


class SubmissionCreate(BaseModel):
    problem_id: int
    language_id: int
    source_code: str = Field(..., min_length=1)
    contest_id: Optional[int] = None


class RunTestcase(BaseModel):
    input: str = ""
    output: Optional[str] = None


class RunCreate(BaseModel):
    problem_id: int
    language_id: int
    source_code: str = Field(..., min_length=1)
    testcases: list[RunTestcase] = Field(default_factory=list)


def _serialize(submission: Submission, include_results: bool = False) -> dict:
    data = {
        "id": submission.id,
        "user_id": submission.user_id,
        "problem_id": submission.problem_id,
        "contest_id": submission.contest_id,
        "language_id": submission.language_id,
        "status": submission.status,
        "passed_testcases": submission.passed_testcases,
        "total_testcases": submission.total_testcases,
        "runtime_ms": submission.runtime_ms,
        "memory_kb": submission.memory_kb,
        "submitted_at": submission.submitted_at.isoformat() if submission.submitted_at else None,
        "judged_at": submission.judged_at.isoformat() if submission.judged_at else None,
    }
    if include_results:
        data["testcase_results"] = submission.testcase_results or []
    return data


@router.post("/submissions", status_code=201)
def create_submission(
    payload: SubmissionCreate,
    db: Session = Depends(get_db),
    principal: Principal = Depends(get_principal),
):
    """Create a submission and dispatch it to the judge."""
    if principal.user_id is None:
        raise HTTPException(401, "Authentication required")

    try:
        submission = submission_service.submit(
            db,
            user_id=principal.user_id,
            problem_id=payload.problem_id,
            language_id=payload.language_id,
            source_code=payload.source_code,
            contest_id=payload.contest_id,
        )
    except SubmissionRejected as e:
        logger.warning(f"Submission rejected: {e.message}", extra={"user_id": principal.user_id, "problem_id": payload.problem_id})
        raise HTTPException(e.status_code, e.message)
    except JudgeDispatchError as e:
        raise HTTPException(502, f"Judge unavailable: {str(e)}")

    return _serialize(submission)


@router.get("/submissions/{submission_id}")
def get_submission(
    submission_id: str,
    db: Session = Depends(get_db),
    principal: Principal = Depends(get_principal),
):
    submission = db.get(Submission, submission_id)
    if not submission:
        logger.warning(f"Submission not found: {submission_id}")
        raise HTTPException(404, "Submission not found")

    is_owner = principal.user_id is not None and principal.user_id == submission.user_id
    return _serialize(submission, include_results=is_owner or authorizer.authorize(principal, "read", "submission:internal"))


@router.post("/submissions/run", status_code=202)
def run_code(
    payload: RunCreate,
    db: Session = Depends(get_db),
    principal: Principal = Depends(get_principal),
):
    """Judge code against the given testcases; the verdict arrives on the result stream."""
    if principal.user_id is None:
        raise HTTPException(401, "Authentication required")

    try:
        return submission_service.run(
            db,
            user_id=principal.user_id,
            problem_id=payload.problem_id,
            language_id=payload.language_id,
            source_code=payload.source_code,
            testcases=[tc.model_dump() for tc in payload.testcases],
        )
    except SubmissionRejected as e:
        logger.warning(f"Run rejected: {e.message}", extra={"user_id": principal.user_id, "problem_id": payload.problem_id})
        raise HTTPException(e.status_code, e.message)
    except JudgeDispatchError as e:
        raise HTTPException(502, f"Judge unavailable: {str(e)}")


@router.get("/submissions/{submission_id}/stream")
def stream_submission_result(
    submission_id: str,
    request: Request,
    db: Session = Depends(get_db),
    principal: Principal = Depends(get_principal),
):
    """Server-Sent Events ending with one ``result`` frame for a submission or run."""
    if principal.user_id is None:
        raise HTTPException(401, "Authentication required")

    initial = None
    submission = db.get(Submission, submission_id)
    if submission is not None:
        if submission.judged_at is not None:
            initial = {"type": "result", "submissionId": submission.id, "payload": _serialize(submission)}
    elif correlator.get_meta(submission_id) is None and submission_result_stream.cached_result(submission_id) is None:
        raise HTTPException(404, "Submission not found")

    return StreamingResponse(
        relay_until_disconnected(request, submission_result_stream.events(submission_id, initial=initial, yield_idle=True)),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )
