from datetime import timedelta

import fakeredis
import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

import judgeboard.models  # noqa: F401  (populate metadata)
from judgeboard.core.events import SUBMISSION_JUDGED, EventBus
from judgeboard.db.base import Base, utcnow
from judgeboard.models import (
    Contest,
    ContestParticipant,
    ContestProblem,
    ContestStatus,
    Problem,
    ProblemDifficulty,
    Submission,
    SubmissionStatus,
    User,
    UserStatistics,
)
from judgeboard.services.correlator import CallbackCorrelator
from judgeboard.services.finalizer import FinalizationGate
from judgeboard.services.ranking import RankingUpdater
from judgeboard.services.stream import LeaderboardStream


@pytest.fixture
def redis_client():
    return fakeredis.FakeRedis(server=fakeredis.FakeServer(), decode_responses=True)


@pytest.fixture
def session_factory(tmp_path):
    engine = create_engine(
        f"sqlite:///{tmp_path / 'judgeboard.db'}",
        connect_args={"check_same_thread": False},
    )
    Base.metadata.create_all(bind=engine)
    factory = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    yield factory
    engine.dispose()


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def bus():
    return EventBus()


@pytest.fixture
def judged_events(bus):
    received = []
    bus.subscribe(SUBMISSION_JUDGED, received.append)
    return received


@pytest.fixture
def stream(redis_client):
    return LeaderboardStream(redis_client=redis_client)


@pytest.fixture
def gate(redis_client, session_factory, bus):
    return FinalizationGate(redis_client=redis_client, session_factory=session_factory, event_bus=bus)


@pytest.fixture
def correlator(redis_client, gate):
    return CallbackCorrelator(redis_client=redis_client, on_complete=gate.try_finalize)


@pytest.fixture
def updater(redis_client, session_factory, stream):
    return RankingUpdater(redis_client=redis_client, session_factory=session_factory, stream=stream)


@pytest.fixture
def make_problem(db):
    def _make(problem_id=1, difficulty=ProblemDifficulty.EASY.value, testcases=None):
        problem = Problem(
            id=problem_id,
            title=f"Problem {problem_id}",
            difficulty=difficulty,
            testcases=testcases if testcases is not None else [
                {"input": "1 2", "output": "3"},
                {"input": "2 2", "output": "4"},
                {"input": "5 5", "output": "10"},
            ],
        )
        db.add(problem)
        db.commit()
        return problem
    return _make


@pytest.fixture
def make_user(db):
    def _make(user_id, username=None, global_score=0, last_solve_at=None, is_active=True):
        user = User(
            id=user_id,
            username=username or f"user{user_id}",
            global_score=global_score,
            last_solve_at=last_solve_at,
            is_active=is_active,
        )
        db.add(user)
        db.commit()
        return user
    return _make


@pytest.fixture
def make_submission(db):
    def _make(submission_id, user_id=1, problem_id=1, contest_id=None, total=3,
              status=SubmissionStatus.RUNNING.value, submitted_at=None):
        submission = Submission(
            id=submission_id,
            user_id=user_id,
            problem_id=problem_id,
            contest_id=contest_id,
            language_id=71,
            source_code="print(sum(map(int, input().split())))",
            status=status,
            total_testcases=total,
            submitted_at=submitted_at or utcnow(),
        )
        db.add(submission)
        db.commit()
        return submission
    return _make


@pytest.fixture
def running_contest(db):
    """Contest 7 started 30 minutes ago (120 minutes long) with problem 1 worth 100 points."""
    contest = Contest(
        id=7,
        title="Weekly 7",
        start_time=utcnow() - timedelta(minutes=30),
        duration_minutes=120,
        status=ContestStatus.RUNNING.value,
        is_rated=True,
    )
    db.add(contest)
    db.add(ContestProblem(contest_id=7, problem_id=1, points=100.0, order_index=0))
    db.commit()
    return contest


@pytest.fixture
def register(db):
    def _register(contest_id, user_id, rating=None, participated=0):
        db.add(ContestParticipant(contest_id=contest_id, user_id=user_id, problem_scores={}))
        if rating is not None:
            db.add(UserStatistics(user_id=user_id, contest_rating=rating, contests_participated=participated))
        db.commit()
    return _register
