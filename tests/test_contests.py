import pytest

from judgeboard.core.keys import RankingKeys
from judgeboard.db.base import utcnow
from judgeboard.models import Contest, ContestParticipant, ContestStatus, Submission, SubmissionStatus, UserStatistics
from judgeboard.services.contests import ContestClosePending, ContestNotFound, ContestService, RatingChange
from judgeboard.services.rebuild import RankingRebuilder


class RankBonus:
    """Winner gains 50, everyone else loses 10."""

    def __init__(self):
        self.calls = []

    def calculate(self, contest_id, standings):
        self.calls.append((contest_id, standings))
        return [
            RatingChange(user_id=s.user_id, rating_after=s.rating_before + (50 if s.rank == 1 else -10))
            for s in standings
        ]


@pytest.fixture
def finished_contest(db, running_contest, register):
    register(7, 1, rating=1600.0, participated=3)
    register(7, 2)
    register(7, 3)
    participants = {p.user_id: p for p in db.query(ContestParticipant).filter_by(contest_id=7)}
    participants[1].total_score = 80.0
    participants[1].total_submissions = 2
    participants[1].last_submission_at = utcnow()
    participants[2].total_score = 100.0
    participants[2].total_submissions = 1
    participants[2].last_submission_at = utcnow()
    db.commit()
    return running_contest


def _service(redis_client, session_factory, stream, calculator=None):
    return ContestService(
        redis_client=redis_client,
        session_factory=session_factory,
        rebuilder=RankingRebuilder(redis_client=redis_client, session_factory=session_factory),
        stream=stream,
        rating_calculator=calculator,
    )


def test_close_contest_ranks_rates_and_ends_stream(finished_contest, redis_client, session_factory, stream):
    calculator = RankBonus()
    pubsub = redis_client.pubsub(ignore_subscribe_messages=True)
    pubsub.subscribe(RankingKeys.contest_channel(7))

    result = _service(redis_client, session_factory, stream, calculator).close_contest(7)

    assert result == {"contest_id": 7, "status": "closed", "ranked": 2, "rated": 2}
    contest_id, standings = calculator.calls[0]
    assert contest_id == 7
    assert [(s.user_id, s.rank, s.rating_before) for s in standings] == [(2, 1, 1500.0), (1, 2, 1600.0)]

    db = session_factory()
    try:
        assert db.get(Contest, 7).status == ContestStatus.ENDED.value
        winner = db.query(ContestParticipant).filter_by(contest_id=7, user_id=2).one()
        assert (winner.rating_before, winner.rating_after, winner.rating_delta) == (1500.0, 1550.0, 50.0)
        # No submissions: unranked and unrated
        idle = db.query(ContestParticipant).filter_by(contest_id=7, user_id=3).one()
        assert idle.rank is None and idle.rating_after is None
        stats = db.get(UserStatistics, 1)
        assert (stats.contest_rating, stats.contests_participated) == (1590.0, 4)
    finally:
        db.close()

    assert redis_client.zscore(RankingKeys.CONTEST_BASED, "2") == 1550.0
    message = pubsub.get_message(timeout=1)
    assert message and '"contest_ended"' in message["data"]
    pubsub.close()


def test_close_is_not_repeated(finished_contest, redis_client, session_factory, stream):
    calculator = RankBonus()
    service = _service(redis_client, session_factory, stream, calculator)

    service.close_contest(7)
    assert service.close_contest(7) == {"contest_id": 7, "status": "already_closed"}
    assert len(calculator.calls) == 1


def test_unrated_contest_keeps_ratings(finished_contest, db, redis_client, session_factory, stream):
    db.query(Contest).filter_by(id=7).update({"is_rated": False})
    db.commit()
    calculator = RankBonus()

    result = _service(redis_client, session_factory, stream, calculator).close_contest(7)

    assert result["rated"] == 0
    assert calculator.calls == []
    assert redis_client.zcard(RankingKeys.CONTEST_BASED) == 0


def test_default_calculator_leaves_ratings_unchanged(finished_contest, redis_client, session_factory, stream):
    _service(redis_client, session_factory, stream).close_contest(7)

    assert redis_client.zscore(RankingKeys.CONTEST_BASED, "1") == 1600.0
    assert redis_client.zscore(RankingKeys.CONTEST_BASED, "2") == 1500.0


def test_close_unknown_contest(redis_client, session_factory, stream):
    with pytest.raises(ContestNotFound):
        _service(redis_client, session_factory, stream).close_contest(404)


class FailingOnce:
    def __init__(self, inner, method):
        self.inner = inner
        self.method = method
        self.failed = False

    def __getattr__(self, name):
        attr = getattr(self.inner, name)
        if name != self.method:
            return attr

        def call(*args, **kwargs):
            if not self.failed:
                self.failed = True
                raise RuntimeError(f"{name} failed")
            return attr(*args, **kwargs)
        return call


def _status(session_factory, contest_id=7):
    db = session_factory()
    try:
        return db.get(Contest, contest_id).status
    finally:
        db.close()


def test_close_resumes_after_rebuild_failure(finished_contest, redis_client, session_factory, stream):
    calculator = RankBonus()
    service = _service(redis_client, session_factory, stream, calculator)
    service.rebuilder = FailingOnce(service.rebuilder, "rebuild_contest_leaderboard")

    with pytest.raises(RuntimeError):
        service.close_contest(7)
    assert _status(session_factory) == ContestStatus.CLOSING.value
    assert calculator.calls == []
    assert not redis_client.exists(RankingKeys.contest_close_lock(7))

    result = service.close_contest(7)

    assert result["status"] == "closed"
    assert result["rated"] == 2
    assert len(calculator.calls) == 1
    assert _status(session_factory) == ContestStatus.ENDED.value


def test_failed_rating_is_not_applied_twice(finished_contest, redis_client, session_factory, stream):
    calculator = RankBonus()
    service = _service(redis_client, session_factory, stream, calculator)
    service.rating_calculator = FailingOnce(calculator, "calculate")

    with pytest.raises(RuntimeError):
        service.close_contest(7)
    assert _status(session_factory) == ContestStatus.CLOSING.value
    assert redis_client.zcard(RankingKeys.CONTEST_BASED) == 0

    assert service.close_contest(7)["status"] == "closed"
    assert service.close_contest(7)["status"] == "already_closed"

    db = session_factory()
    try:
        stats = db.get(UserStatistics, 1)
        assert (stats.contest_rating, stats.contests_participated) == (1590.0, 4)
    finally:
        db.close()
    assert len(calculator.calls) == 1


def test_close_waits_for_submissions_still_judging(finished_contest, redis_client, session_factory, stream, make_submission):
    make_submission("late", user_id=1, contest_id=7)
    calculator = RankBonus()
    service = _service(redis_client, session_factory, stream, calculator)

    with pytest.raises(ContestClosePending) as exc:
        service.close_contest(7)
    assert exc.value.pending == 1
    assert _status(session_factory) == ContestStatus.CLOSING.value
    assert calculator.calls == []

    db = session_factory()
    try:
        db.query(Submission).filter_by(id="late").update(
            {"status": SubmissionStatus.ACCEPTED.value, "judged_at": utcnow()}
        )
        db.commit()
    finally:
        db.close()

    assert service.close_contest(7)["status"] == "closed"
    assert len(calculator.calls) == 1


def test_concurrent_close_backs_off(finished_contest, redis_client, session_factory, stream):
    redis_client.set(RankingKeys.contest_close_lock(7), "other-worker")

    result = _service(redis_client, session_factory, stream).close_contest(7)

    assert result == {"contest_id": 7, "status": "closing"}
    assert _status(session_factory) == ContestStatus.RUNNING.value
    assert redis_client.get(RankingKeys.contest_close_lock(7)) == "other-worker"
