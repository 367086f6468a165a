import json
from datetime import datetime, timedelta

import pytest

from judgeboard.core.events import SUBMISSION_JUDGED, SubmissionJudged
from judgeboard.core.keys import RankingKeys
from judgeboard.db.base import utcnow
from judgeboard.models import (
    Contest,
    ContestParticipant,
    ContestStatus,
    Problem,
    ProblemDifficulty,
    ProgressStatus,
    SubmissionStatus,
    User,
    UserProblemProgress,
)
from judgeboard.services.ranking import (
    contest_problem_score,
    decode_global_score,
    encode_global_score,
    register_ranking_listeners,
    to_epoch_seconds,
)


def _judged(submission_id, status, user_id=1, problem_id=1, contest_id=None, passed=3, total=3,
            submitted_at=None, judged_at=None):
    return SubmissionJudged(
        submission_id=submission_id,
        user_id=user_id,
        problem_id=problem_id,
        status=status,
        contest_id=contest_id,
        passed_testcases=passed,
        total_testcases=total,
        submitted_at=submitted_at or utcnow(),
        judged_at=judged_at or utcnow(),
    )


def test_encoding_prefers_higher_score_then_earlier_solve():
    early = datetime(2024, 1, 1, 12, 0, 0)
    late = early + timedelta(hours=1)

    assert encode_global_score(20, late) > encode_global_score(10, early)
    assert encode_global_score(10, early) > encode_global_score(10, late)
    assert decode_global_score(encode_global_score(30, early)) == (30, to_epoch_seconds(early))
    assert decode_global_score(encode_global_score(0, None)) == (0, None)


@pytest.mark.parametrize("elapsed, rate, expected", [
    (0, 0.5, 100.0),
    (60, 0.5, 75.0),
    (120, 0.5, 50.0),
    (60, 0, 100.0),
    (500, 2.0, 0.0),
])
def test_contest_problem_score_decay(elapsed, rate, expected):
    assert contest_problem_score(100, 3, 3, elapsed, 120, decay_rate=rate) == expected


def test_contest_problem_score_partial_credit():
    assert contest_problem_score(100, 1, 3, 0, 120, decay_rate=0) == 33.33
    assert contest_problem_score(100, 0, 0, 0, 120) == 0.0


def test_problem_stats_count_every_judged_submission(updater, make_problem, make_user, session_factory):
    make_problem()
    make_user(1)

    updater.on_submission_judged(_judged("a", SubmissionStatus.ACCEPTED.value))
    updater.on_submission_judged(_judged("b", SubmissionStatus.WRONG_ANSWER.value))

    db = session_factory()
    try:
        problem = db.get(Problem, 1)
        assert (problem.total_submissions, problem.total_accepted) == (2, 1)
        assert problem.acceptance_rate == 50.0
    finally:
        db.close()


def test_first_solve_is_credited_once(updater, redis_client, make_problem, make_user, session_factory):
    make_problem(difficulty=ProblemDifficulty.MEDIUM.value)
    make_user(1)

    updater.on_submission_judged(_judged("wa", SubmissionStatus.WRONG_ANSWER.value))
    first = utcnow()
    updater.on_submission_judged(_judged("ac1", SubmissionStatus.ACCEPTED.value, judged_at=first))
    updater.on_submission_judged(_judged("ac2", SubmissionStatus.ACCEPTED.value, judged_at=first + timedelta(minutes=5)))

    db = session_factory()
    try:
        user = db.get(User, 1)
        assert user.global_score == 20
        assert user.solved_medium == 1
        assert user.last_solve_at == first
        progress = db.query(UserProblemProgress).filter_by(user_id=1, problem_id=1).one()
        assert progress.status == ProgressStatus.SOLVED.value
        assert progress.attempts == 3
        expected = encode_global_score(user.global_score, user.last_solve_at)
    finally:
        db.close()

    assert redis_client.zscore(RankingKeys.PROBLEM_BASED, "1") == expected


def test_rejected_submission_leaves_global_board_untouched(updater, redis_client, make_problem, make_user, session_factory):
    make_problem()
    make_user(1)

    updater.on_submission_judged(_judged("wa", SubmissionStatus.WRONG_ANSWER.value))

    assert redis_client.zcard(RankingKeys.PROBLEM_BASED) == 0
    db = session_factory()
    try:
        progress = db.query(UserProblemProgress).filter_by(user_id=1, problem_id=1).one()
        assert progress.status == ProgressStatus.ATTEMPTED.value
    finally:
        db.close()


def test_contest_standing_keeps_best_score_and_first_accept(
    updater, redis_client, make_problem, make_user, running_contest, register, session_factory
):
    make_problem()
    make_user(1)
    register(7, 1)
    start = running_contest.start_time
    pubsub = redis_client.pubsub(ignore_subscribe_messages=True)
    pubsub.subscribe(RankingKeys.contest_channel(7))

    updater.on_submission_judged(_judged(
        "c1", SubmissionStatus.WRONG_ANSWER.value, contest_id=7, passed=1,
        submitted_at=start + timedelta(minutes=5),
    ))
    updater.on_submission_judged(_judged(
        "c2", SubmissionStatus.ACCEPTED.value, contest_id=7,
        submitted_at=start + timedelta(minutes=20),
    ))
    updater.on_submission_judged(_judged(
        "c3", SubmissionStatus.WRONG_ANSWER.value, contest_id=7, passed=2,
        submitted_at=start + timedelta(minutes=25),
    ))

    db = session_factory()
    try:
        participant = db.query(ContestParticipant).filter_by(contest_id=7, user_id=1).one()
        entry = participant.problem_scores["1"]
        assert entry["score"] == 100.0
        assert entry["submissions"] == 3
        assert entry["firstAcTime"] == 20 * 60 * 1000
        assert participant.total_score == 100.0
        assert participant.solved_count == 1
        assert participant.finish_time_ms == 20 * 60 * 1000
        assert participant.total_submissions == 3
        assert participant.last_submission_at == start + timedelta(minutes=25)
    finally:
        db.close()

    assert redis_client.zscore(RankingKeys.contest_leaderboard(7), "1") == 100.0

    messages = []
    for _ in range(3):
        message = pubsub.get_message(timeout=1)
        if message:
            messages.append(json.loads(message["data"]))
    assert [m["type"] for m in messages] == ["leaderboard_update"] * 3
    assert messages[0]["entry"]["totalScore"] == 33.33
    assert messages[-1]["entry"]["totalScore"] == 100.0
    pubsub.close()


def test_contest_submission_outside_window_is_ignored(
    updater, redis_client, make_problem, make_user, running_contest, register, session_factory
):
    make_problem()
    make_user(1)
    register(7, 1)

    updater.on_submission_judged(_judged(
        "late", SubmissionStatus.ACCEPTED.value, contest_id=7,
        submitted_at=running_contest.start_time + timedelta(minutes=121),
    ))

    assert redis_client.zcard(RankingKeys.contest_leaderboard(7)) == 0
    db = session_factory()
    try:
        participant = db.query(ContestParticipant).filter_by(contest_id=7, user_id=1).one()
        assert participant.total_submissions == 0
        # Global progress still counts
        assert db.get(User, 1).global_score == 10
    finally:
        db.close()


def test_in_window_submission_judged_after_contest_end_still_counts(
    updater, db, redis_client, make_problem, make_user, running_contest, register, session_factory
):
    make_problem()
    make_user(1)
    register(7, 1)
    submitted_at = running_contest.start_time + timedelta(minutes=119)
    db.query(Contest).filter_by(id=7).update({"status": ContestStatus.ENDED.value})
    db.commit()

    updater.on_submission_judged(_judged(
        "last-minute", SubmissionStatus.ACCEPTED.value, contest_id=7,
        submitted_at=submitted_at, judged_at=submitted_at + timedelta(minutes=3),
    ))

    assert redis_client.zscore(RankingKeys.contest_leaderboard(7), "1") is not None
    check = session_factory()
    try:
        assert check.query(ContestParticipant).filter_by(contest_id=7, user_id=1).one().total_submissions == 1
    finally:
        check.close()


def test_unregistered_user_is_skipped(updater, redis_client, make_problem, make_user, running_contest):
    make_problem()
    make_user(1)

    updater.on_submission_judged(_judged("c", SubmissionStatus.ACCEPTED.value, contest_id=7))

    assert redis_client.zcard(RankingKeys.contest_leaderboard(7)) == 0


def test_register_ranking_listeners_is_idempotent(bus, updater):
    register_ranking_listeners(bus=bus, updater=updater)
    register_ranking_listeners(bus=bus, updater=updater)

    assert bus.handlers(SUBMISSION_JUDGED) == [updater.on_submission_judged]


def test_end_to_end_from_finalization(
    bus, gate, correlator, updater, redis_client, make_problem, make_user, make_submission, session_factory
):
    register_ranking_listeners(bus=bus, updater=updater)
    make_problem(testcases=[{"input": "1", "output": "1"}])
    make_user(1)
    make_submission("e2e", total=1)
    correlator.init_tracking("e2e", 1, 1)

    correlator.on_result("e2e", "tok", 0, {"status": "Accepted", "executionTime": 3})

    assert redis_client.zcard(RankingKeys.PROBLEM_BASED) == 1
    db = session_factory()
    try:
        assert db.get(User, 1).global_score == 10
    finally:
        db.close()
