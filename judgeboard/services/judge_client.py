import logging
from typing import Optional
from urllib.parse import urlencode

import requests

from judgeboard.core.config import settings
from judgeboard.services.verdict import as_float

logger = logging.getLogger(__name__)

BATCH_ENDPOINT = "/submissions/batch"
CALLBACK_PATH = "/submissions/judge0/callback/submit"


class JudgeDispatchError(Exception):
    """The judge engine refused or failed to acknowledge a batch."""


class JudgeClient:
    """HTTP client for the external judge engine (Judge0 compatible)."""

    def __init__(self, base_url: Optional[str] = None, callback_base_url: Optional[str] = None, session=None):
        if settings.JUDGE0_USE_CE and not base_url:
            base_url = f"https://{settings.RAPIDAPI_HOST}"
        self.base_url = (base_url or settings.JUDGE0_URL).rstrip("/")
        self.callback_base_url = (callback_base_url or settings.JUDGE0_CALLBACK_URL).rstrip("/")
        self.session = session or requests.Session()

    def _headers(self) -> dict:
        headers = {"Content-Type": "application/json"}
        if settings.JUDGE0_USE_CE:
            headers["X-RapidAPI-Key"] = settings.RAPIDAPI_KEY
            headers["X-RapidAPI-Host"] = settings.RAPIDAPI_HOST
        return headers

    def callback_url(self, submission_id: str, testcase_index: int) -> str:
        query = urlencode({"sid": submission_id, "tcid": testcase_index})
        return f"{self.callback_base_url}{CALLBACK_PATH}?{query}"

    def build_payloads(self, submission_id: str, source_code: str, language_id: int, problem,
                       testcases: Optional[list[dict]] = None) -> list[dict]:
        """One judge payload per testcase; ``testcases`` overrides the problem's own."""
        if testcases is None:
            testcases = problem.testcases or []
        if len(testcases) > settings.MAX_TESTCASES:
            raise JudgeDispatchError(f"Maximum testcase limit exceeded: {settings.MAX_TESTCASES}")

        cpu_time_limit = (problem.time_limit_ms or 0) / 1000 or None
        payloads = []
        for index, testcase in enumerate(testcases):
            payloads.append({
                "language_id": language_id,
                "source_code": source_code,
                "stdin": testcase.get("input"),
                "expected_output": testcase.get("output"),
                "redirect_stderr_to_stdout": True,
                "cpu_time_limit": cpu_time_limit,
                "memory_limit": problem.memory_limit_kb,
                "callback_url": self.callback_url(submission_id, index),
            })
        return payloads

    def dispatch_batch(self, payloads: list[dict]) -> list[str]:
        """Send one batch; returns one token per payload, in payload order."""
        url = f"{self.base_url}{BATCH_ENDPOINT}?base64_encoded=false"
        logger.info(f"Dispatching batch of {len(payloads)} testcases to judge")
        try:
            resp = self.session.post(
                url,
                json={"submissions": payloads},
                headers=self._headers(),
                timeout=settings.JUDGE0_TIMEOUT_SECONDS,
            )
            resp.raise_for_status()
            body = resp.json()
        except (requests.RequestException, ValueError) as e:
            raise JudgeDispatchError(f"Failed to create batch submission: {str(e)}") from e

        tokens = [item.get("token") for item in body] if isinstance(body, list) else []
        if len(tokens) != len(payloads) or not all(tokens):
            raise JudgeDispatchError(
                f"Judge token count mismatch: expected {len(payloads)}, got {len([t for t in tokens if t])}"
            )
        return tokens


def parse_callback(body: dict) -> dict:
    """Normalize a judge callback body into the stored testcase result shape.

    Accepts the engine's native form (``status: {id, description}``, ``time`` in
    seconds, ``memory`` in KB) as well as an already-normalized form
    (``status`` string, ``executionTime`` ms, ``memoryUsed`` KB). Numbers sent
    as strings are converted; anything unparseable is dropped to ``None``.
    """
    status = body.get("status")
    if isinstance(status, dict):
        status = status.get("description")

    execution_time = as_float(body.get("executionTime"))
    if execution_time is None:
        seconds = as_float(body.get("time"))
        execution_time = seconds * 1000 if seconds is not None else None

    memory_used = as_float(body.get("memoryUsed", body.get("memory")))

    output = body.get("output")
    if output is None:
        output = body.get("stdout") or body.get("compile_output") or body.get("stderr")

    return {
        "status": status or "",
        "executionTime": execution_time,
        "memoryUsed": memory_used,
        "output": output,
    }


judge_client = JudgeClient()
