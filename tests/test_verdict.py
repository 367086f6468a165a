import pytest

from judgeboard.models import SubmissionStatus
from judgeboard.services.verdict import (
    MISSING_RESULT_STATUS,
    TestcaseResult,
    map_status,
    resolve,
    truncate_output,
)


def _results(*statuses):
    return [TestcaseResult(index=i, status=s) for i, s in enumerate(statuses)]


def test_empty_results_are_unknown_error():
    verdict = resolve([])
    assert verdict.status == SubmissionStatus.UNKNOWN_ERROR
    assert verdict.average_runtime_ms is None
    assert verdict.max_memory_kb is None
    assert (verdict.passed, verdict.total) == (0, 0)


@pytest.mark.parametrize("statuses", [
    ("Accepted", "Compilation Error"),
    ("Compilation Error", "Accepted"),
    ("Wrong Answer", "compilation error"),
])
def test_compilation_error_wins_regardless_of_position(statuses):
    assert resolve(_results(*statuses)).status == SubmissionStatus.COMPILATION_ERROR


def test_all_accepted():
    verdict = resolve(_results("Accepted", "Accepted"))
    assert verdict.status == SubmissionStatus.ACCEPTED
    assert verdict.passed == 2


def test_first_failing_index_decides_not_severity():
    results = [
        TestcaseResult(index=2, status="Runtime Error (SIGSEGV)"),
        TestcaseResult(index=0, status="Accepted"),
        TestcaseResult(index=1, status="Wrong Answer"),
    ]
    verdict = resolve(results)
    assert verdict.status == SubmissionStatus.WRONG_ANSWER
    assert (verdict.passed, verdict.total) == (1, 3)


@pytest.mark.parametrize("native, expected", [
    ("Wrong Answer", SubmissionStatus.WRONG_ANSWER),
    ("Time Limit Exceeded", SubmissionStatus.TIME_LIMIT_EXCEEDED),
    ("Memory Limit Exceeded", SubmissionStatus.MEMORY_LIMIT_EXCEEDED),
    ("Runtime Error (SIGSEGV)", SubmissionStatus.SIGSEGV),
    ("Runtime Error (SIGXFSZ)", SubmissionStatus.SIGXFSZ),
    ("Runtime Error (SIGFPE)", SubmissionStatus.SIGFPE),
    ("Runtime Error (SIGABRT)", SubmissionStatus.SIGABRT),
    ("Runtime Error (NZEC)", SubmissionStatus.NZEC),
    ("Runtime Error (Other)", SubmissionStatus.RUNTIME_ERROR),
    ("Internal Error", SubmissionStatus.RUNTIME_ERROR),
    (MISSING_RESULT_STATUS, SubmissionStatus.RUNTIME_ERROR),
    (None, SubmissionStatus.RUNTIME_ERROR),
])
def test_native_status_mapping(native, expected):
    assert map_status(native) == expected


def test_metrics_skip_missing_values_and_include_rejected_runs():
    results = [
        TestcaseResult(index=0, status="Accepted", execution_time=10, memory_used=100),
        TestcaseResult(index=1, status="Wrong Answer", execution_time=20, memory_used=300),
        TestcaseResult(index=2, status="Accepted", execution_time=None, memory_used=None),
    ]
    verdict = resolve(results)
    assert verdict.average_runtime_ms == 15
    assert verdict.max_memory_kb == 300


def test_result_dict_uses_wire_field_names():
    result = TestcaseResult.from_dict({"index": "3", "status": "Accepted", "executionTime": 12.5, "memoryUsed": 2048})
    assert result.index == 3
    assert result.accepted
    assert result.to_dict()["executionTime"] == 12.5
    assert result.to_dict()["memoryUsed"] == 2048


def test_truncate_output():
    assert truncate_output(None) == ""
    assert truncate_output("short") == "short"
    assert truncate_output("x" * 10, max_length=4) == "xxxx...(truncated)"


def test_string_metrics_from_stored_results_are_coerced():
    results = [
        TestcaseResult.from_dict({"index": 0, "status": "Accepted", "executionTime": "10", "memoryUsed": "512"}),
        TestcaseResult.from_dict({"index": 1, "status": "Accepted", "executionTime": "slow", "memoryUsed": None}),
        TestcaseResult.from_dict({"index": 2, "status": "Accepted", "executionTime": 30}),
    ]

    verdict = resolve(results)

    assert results[0].execution_time == 10.0
    assert results[1].execution_time is None
    assert verdict.average_runtime_ms == 20
    assert verdict.max_memory_kb == 512.0
