import enum
from datetime import timedelta

from sqlalchemy import Column, String, Float, DateTime, Integer, Boolean, JSON, UniqueConstraint
from judgeboard.db.base import Base


class ContestStatus(str, enum.Enum):
    SCHEDULED = "SCHEDULED"
    RUNNING = "RUNNING"
    CLOSING = "CLOSING"  # intake stopped, waiting on in-flight verdicts
    ENDED = "ENDED"


class Contest(Base):
    __tablename__ = "contests"

    id = Column(Integer, primary_key=True)
    title = Column(String, nullable=False)
    start_time = Column(DateTime, nullable=False)
    duration_minutes = Column(Integer, nullable=False)
    status = Column(String, default=ContestStatus.SCHEDULED.value, nullable=False)
    is_rated = Column(Boolean, default=True, nullable=False)

    @property
    def end_time(self):
        return self.start_time + timedelta(minutes=self.duration_minutes)

    def is_active_at(self, moment) -> bool:
        """Whether ``moment`` falls inside the contest window, whatever the status."""
        return self.start_time <= moment <= self.end_time


class ContestProblem(Base):
    __tablename__ = "contest_problems"

    id = Column(Integer, primary_key=True, autoincrement=True)
    contest_id = Column(Integer, index=True, nullable=False)
    problem_id = Column(Integer, nullable=False)
    points = Column(Float, default=100.0, nullable=False)
    order_index = Column(Integer, default=0, nullable=False)

    __table_args__ = (UniqueConstraint("contest_id", "problem_id", name="uq_contest_problem"),)


class ContestParticipant(Base):
    __tablename__ = "contest_participants"

    id = Column(Integer, primary_key=True, autoincrement=True)
    contest_id = Column(Integer, index=True, nullable=False)
    user_id = Column(Integer, index=True, nullable=False)

    total_score = Column(Float, default=0.0, nullable=False)
    # {problem_id: {"score", "submissions", "lastSubmitTime", "firstAcTime"}}
    problem_scores = Column(JSON, default=dict, nullable=False)
    solved_count = Column(Integer, default=0, nullable=False)
    finish_time_ms = Column(Integer, default=0, nullable=False)
    total_submissions = Column(Integer, default=0, nullable=False)
    last_submission_at = Column(DateTime, nullable=True)
    rank = Column(Integer, nullable=True)

    # Written by the rating collaborator once the contest closes
    rating_before = Column(Float, nullable=True)
    rating_after = Column(Float, nullable=True)
    rating_delta = Column(Float, nullable=True)

    __table_args__ = (UniqueConstraint("contest_id", "user_id", name="uq_contest_participant"),)
