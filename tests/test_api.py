from types import SimpleNamespace

import pytest
from fastapi.testclient import TestClient

from judgeboard.api import admin, callbacks, leaderboard, submissions
from judgeboard.core.keys import JudgeKeys, RankingKeys
from judgeboard.db.session import get_db
from judgeboard.main import app
from judgeboard.models import ContestParticipant
from judgeboard.services.judge_client import JudgeDispatchError
from judgeboard.services.leaderboard import LeaderboardService
from judgeboard.services.stream import SubmissionResultStream
from judgeboard.services.submissions import SubmissionRejected

ADMIN = {"X-User-Id": "1", "X-User-Role": "admin"}
USER = {"X-User-Id": "2", "X-User-Role": "user"}


@pytest.fixture
def client(session_factory):
    def override_get_db():
        db = session_factory()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_get_db
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def wired_correlator(monkeypatch, correlator):
    monkeypatch.setattr(callbacks, "correlator", correlator)
    return correlator


def test_callback_records_result(client, wired_correlator, redis_client):
    wired_correlator.init_tracking("s1", 2, 1)

    resp = client.put(
        "/submissions/judge0/callback/submit?sid=s1&tcid=0",
        json={"token": "tok-0", "status": {"id": 3, "description": "Accepted"}, "time": "0.004", "memory": 900},
    )

    assert resp.status_code == 204
    assert redis_client.hlen(JudgeKeys.results_by_index("s1")) == 1


@pytest.mark.parametrize("url, body", [
    ("/submissions/judge0/callback/submit", {"status": "Accepted"}),
    ("/submissions/judge0/callback/submit?sid=s1&tcid=0", ["not", "an", "object"]),
    ("/submissions/judge0/callback/submit?sid=unknown&tcid=0", {"status": "Accepted"}),
])
def test_callback_always_acknowledges(client, wired_correlator, url, body):
    assert client.put(url, json=body).status_code == 204


def test_callback_acknowledges_even_when_processing_fails(client, monkeypatch):
    def broken(*args):
        raise ConnectionError("redis down")
    monkeypatch.setattr(callbacks, "correlator", SimpleNamespace(on_result=broken))

    resp = client.put("/submissions/judge0/callback/submit?sid=s1&tcid=0", json={"status": "Accepted"})

    assert resp.status_code == 204


def test_create_submission_requires_identity(client):
    resp = client.post("/api/submissions", json={"problem_id": 1, "language_id": 71, "source_code": "x"})
    assert resp.status_code == 401


@pytest.mark.parametrize("error, status", [
    (JudgeDispatchError("judge offline"), 502),
    (SubmissionRejected("You must register for this contest first", status_code=403), 403),
])
def test_create_submission_error_mapping(client, monkeypatch, error, status):
    def submit(*args, **kwargs):
        raise error
    monkeypatch.setattr(submissions, "submission_service", SimpleNamespace(submit=submit))

    resp = client.post(
        "/api/submissions",
        json={"problem_id": 1, "language_id": 71, "source_code": "x", "contest_id": 7},
        headers=USER,
    )

    assert resp.status_code == status


def test_submission_results_visible_to_owner_only(client, make_problem, make_submission, db):
    make_problem()
    submission = make_submission("mine", user_id=2)
    submission.testcase_results = [{"index": 0, "status": "Accepted"}]
    db.commit()

    owner = client.get("/api/submissions/mine", headers=USER).json()
    other = client.get("/api/submissions/mine", headers={"X-User-Id": "3", "X-User-Role": "user"}).json()

    assert owner["testcase_results"] == [{"index": 0, "status": "Accepted"}]
    assert "testcase_results" not in other
    assert client.get("/api/submissions/missing", headers=USER).status_code == 404


def test_contest_leaderboard_hides_internal_fields_from_users(client, monkeypatch, redis_client, session_factory, db, make_user):
    make_user(1)
    db.add(ContestParticipant(contest_id=3, user_id=1, total_score=10.0, total_submissions=1, problem_scores={}))
    db.commit()
    redis_client.zadd(RankingKeys.contest_leaderboard(3), {"1": 10.0})
    monkeypatch.setattr(
        leaderboard, "leaderboard_service", LeaderboardService(redis_client=redis_client, session_factory=session_factory)
    )

    public = client.get("/api/contests/3/leaderboard", headers=USER).json()
    internal = client.get("/api/contests/3/leaderboard", headers=ADMIN).json()

    assert "totalSubmissions" not in public["data"][0]
    assert internal["data"][0]["totalSubmissions"] == 1


def test_unknown_ranking_board(client):
    assert client.get("/api/rankings/elo").status_code == 404


def test_admin_endpoints_require_capability(client, monkeypatch):
    queued = []

    def fake_task(name):
        def delay(*args):
            queued.append((name, args))
            return SimpleNamespace(id=f"task-{len(queued)}")
        return SimpleNamespace(delay=delay)

    monkeypatch.setattr(admin, "rebuild_rankings_task", fake_task("rebuild"))
    monkeypatch.setattr(admin, "close_contest_task", fake_task("close"))
    monkeypatch.setattr(admin, "rebuild_contest_leaderboard_task", fake_task("contest_rebuild"))

    assert client.post("/api/admin/rankings/rebuild", headers=USER).status_code == 403
    assert client.post("/api/admin/contests/7/close").status_code == 403

    resp = client.post("/api/admin/rankings/rebuild", headers=ADMIN)
    assert resp.status_code == 202
    assert resp.json() == {"task_id": "task-1", "status": "queued"}
    assert client.post("/api/admin/contests/7/close", headers=ADMIN).status_code == 202
    assert client.post("/api/admin/contests/7/leaderboard/rebuild", headers=ADMIN).status_code == 202
    assert queued == [("rebuild", ()), ("close", (7,)), ("contest_rebuild", (7,))]


@pytest.mark.parametrize("query", ["sid=s1&tcid=abc", "sid=s1&tcid=", "sid=s1&tcid=1.5"])
def test_callback_with_malformed_index_is_acknowledged(client, wired_correlator, redis_client, query):
    wired_correlator.init_tracking("s1", 2, 1)

    resp = client.put(f"/submissions/judge0/callback/submit?{query}", json={"token": "t", "status": "Accepted"})

    assert resp.status_code == 204
    assert redis_client.hlen(JudgeKeys.results_by_index("s1")) == 0


def test_callback_index_outside_batch_is_not_recorded(client, wired_correlator, redis_client):
    wired_correlator.init_tracking("s1", 2, 1)

    resp = client.put("/submissions/judge0/callback/submit?sid=s1&tcid=7", json={"token": "t", "status": "Accepted"})

    assert resp.status_code == 204
    assert redis_client.hlen(JudgeKeys.results_by_index("s1")) == 0


def test_run_endpoint_accepts_and_returns_run_id(client, monkeypatch):
    calls = []

    def run(db, **kwargs):
        calls.append(kwargs)
        return {"submission_id": "run-1", "mode": "run", "total_testcases": 1}
    monkeypatch.setattr(submissions, "submission_service", SimpleNamespace(run=run))

    resp = client.post(
        "/api/submissions/run",
        json={"problem_id": 1, "language_id": 71, "source_code": "x", "testcases": [{"input": "1 2", "output": "3"}]},
        headers=USER,
    )

    assert resp.status_code == 202
    assert resp.json() == {"submission_id": "run-1", "mode": "run", "total_testcases": 1}
    assert calls[0]["testcases"] == [{"input": "1 2", "output": "3"}]
    assert calls[0]["user_id"] == 2


def test_run_endpoint_maps_rejection(client, monkeypatch):
    def run(db, **kwargs):
        raise SubmissionRejected("Testcases are required to run code")
    monkeypatch.setattr(submissions, "submission_service", SimpleNamespace(run=run))

    resp = client.post("/api/submissions/run", json={"problem_id": 1, "language_id": 71, "source_code": "x"}, headers=USER)

    assert resp.status_code == 400


@pytest.fixture
def wired_results(monkeypatch, redis_client, correlator):
    results = SubmissionResultStream(redis_client=redis_client)
    monkeypatch.setattr(submissions, "submission_result_stream", results)
    monkeypatch.setattr(submissions, "correlator", correlator)
    return results


def _sse_events(body):
    return [line.removeprefix("event: ") for line in body.splitlines() if line.startswith("event: ")]


def test_stream_of_judged_submission_sends_result_at_once(client, wired_results, make_submission, db):
    submission = make_submission("done", user_id=2)
    submission.status = "ACCEPTED"
    submission.judged_at = submission.submitted_at
    db.commit()

    resp = client.get("/api/submissions/done/stream", headers=USER)

    assert resp.status_code == 200
    assert resp.headers["content-type"].startswith("text/event-stream")
    assert _sse_events(resp.text) == ["subscribed", "result"]
    assert '"status": "ACCEPTED"' in resp.text


def test_stream_of_finished_run_replays_cached_result(client, wired_results):
    wired_results.publish_result("run-9", {"mode": "run", "status": "ACCEPTED"})

    resp = client.get("/api/submissions/run-9/stream", headers=USER)

    assert _sse_events(resp.text) == ["subscribed", "result"]


def test_stream_of_unknown_submission(client, wired_results):
    assert client.get("/api/submissions/nothing/stream", headers=USER).status_code == 404
    assert client.get("/api/submissions/nothing/stream").status_code == 401
