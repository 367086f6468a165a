from typing import Optional

from fastapi import APIRouter, Query, Request, Response
from starlette.concurrency import run_in_threadpool
from judgeboard.core.metrics import CALLBACKS_RECEIVED_TOTAL
from judgeboard.services.correlator import correlator
from judgeboard.services.judge_client import parse_callback
import logging

logger = logging.getLogger(__name__)
router = APIRouter()


@router.put("/submissions/judge0/callback/submit", status_code=204)
async def judge_callback(
    request: Request,
    sid: Optional[str] = Query(None, description="Submission ID"),
    tcid: Optional[str] = Query(None, description="Testcase index"),
):
    """Webhook for one testcase result.

    Always answers 204: the judge engine retries on anything else, and a
    failure here is recovered by the stuck-submission sweep. Query parameters
    are validated here rather than by FastAPI so malformed ones get 204 too.
    """
    log_extra = {"submission_id": sid, "testcase_index": tcid, "stage": "callback"}
    try:
        if sid is None or tcid is None:
            raise ValueError("callback is missing sid or tcid")
        index = int(tcid)
        body = await request.json()
        if not isinstance(body, dict):
            raise ValueError("callback body must be a JSON object")
        result = parse_callback(body)
        token = body.get("token")
        log_extra["token"] = token
        outcome = await run_in_threadpool(correlator.on_result, sid, token, index, result)
        logger.debug(f"callback_{outcome.value}", extra=log_extra)
    except Exception as e:
        CALLBACKS_RECEIVED_TOTAL.labels(outcome="error").inc()
        logger.exception(f"Judge callback processing failed: {str(e)}", extra=log_extra)
    return Response(status_code=204)
