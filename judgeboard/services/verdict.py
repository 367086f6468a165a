"""Turn per-testcase judge results into one submission verdict.

Precedence: empty -> UNKNOWN_ERROR, any compilation failure -> COMPILATION_ERROR,
all accepted -> ACCEPTED, otherwise the lowest-index non-accepted result decides.
"""

from dataclasses import dataclass
from typing import Iterable, Optional

from judgeboard.models.submission import SubmissionStatus

ACCEPTED = "Accepted"

# Judge-native status strings (lowercased) to submission statuses.
STATUS_MAP = {
    "wrong answer": SubmissionStatus.WRONG_ANSWER,
    "time limit exceeded": SubmissionStatus.TIME_LIMIT_EXCEEDED,
    "memory limit exceeded": SubmissionStatus.MEMORY_LIMIT_EXCEEDED,
    "runtime error (sigsegv)": SubmissionStatus.SIGSEGV,
    "runtime error (sigxfsz)": SubmissionStatus.SIGXFSZ,
    "runtime error (sigfpe)": SubmissionStatus.SIGFPE,
    "runtime error (sigabrt)": SubmissionStatus.SIGABRT,
    "runtime error (nzec)": SubmissionStatus.NZEC,
    "compilation error": SubmissionStatus.COMPILATION_ERROR,
}

# Status recorded for an index whose callback never arrived before the sweep.
MISSING_RESULT_STATUS = "Judge Timeout"


def as_float(value) -> Optional[float]:
    """``float(value)``, or None when absent or unparseable."""
    try:
        return float(value) if value is not None else None
    except (TypeError, ValueError):
        return None


@dataclass(frozen=True)
class TestcaseResult:
    __test__ = False
    index: int
    status: str
    execution_time: Optional[float] = None  # ms
    memory_used: Optional[float] = None  # KB
    output: Optional[str] = None
    token: Optional[str] = None

    @classmethod
    def from_dict(cls, data: dict) -> "TestcaseResult":
        return cls(
            index=int(data["index"]),
            status=data.get("status") or "",
            execution_time=as_float(data.get("executionTime")),
            memory_used=as_float(data.get("memoryUsed")),
            output=data.get("output"),
            token=data.get("token"),
        )

    def to_dict(self) -> dict:
        return {
            "index": self.index,
            "token": self.token,
            "status": self.status,
            "executionTime": self.execution_time,
            "memoryUsed": self.memory_used,
            "output": self.output,
        }

    @property
    def accepted(self) -> bool:
        return self.status == ACCEPTED


@dataclass(frozen=True)
class Verdict:
    status: SubmissionStatus
    average_runtime_ms: Optional[float]
    max_memory_kb: Optional[float]
    passed: int
    total: int


def map_status(native: Optional[str]) -> SubmissionStatus:
    """Map a judge-native status string; anything unrecognized is a runtime error."""
    return STATUS_MAP.get((native or "").strip().lower(), SubmissionStatus.RUNTIME_ERROR)


def determine_status(results: list) -> SubmissionStatus:
    if not results:
        return SubmissionStatus.UNKNOWN_ERROR

    # Compilation is normally reported on the first testcase, but position is not assumed.
    if any("compilation" in (r.status or "").lower() for r in results):
        return SubmissionStatus.COMPILATION_ERROR

    if all(r.accepted for r in results):
        return SubmissionStatus.ACCEPTED

    first_failed = next(r for r in results if not r.accepted)
    return map_status(first_failed.status)


def average_runtime(results: Iterable[TestcaseResult]) -> Optional[float]:
    # Every reported run counts, rejected ones included.
    runtimes = [r.execution_time for r in results if r.execution_time is not None]
    if not runtimes:
        return None
    return sum(runtimes) / len(runtimes)


def max_memory(results: Iterable[TestcaseResult]) -> Optional[float]:
    memories = [r.memory_used for r in results if r.memory_used is not None]
    if not memories:
        return None
    return max(memories)


def resolve(results: Iterable[TestcaseResult]) -> Verdict:
    ordered = sorted(results, key=lambda r: r.index)
    return Verdict(
        status=determine_status(ordered),
        average_runtime_ms=average_runtime(ordered),
        max_memory_kb=max_memory(ordered),
        passed=sum(1 for r in ordered if r.accepted),
        total=len(ordered),
    )


def truncate_output(output: Optional[str], max_length: int = 500) -> str:
    if not output:
        return ""
    if len(output) <= max_length:
        return output
    return output[:max_length] + "...(truncated)"
