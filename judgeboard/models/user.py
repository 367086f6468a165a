import enum

from sqlalchemy import Column, String, Float, DateTime, Integer, Boolean, UniqueConstraint
from judgeboard.db.base import Base


class ProgressStatus(str, enum.Enum):
    ATTEMPTED = "ATTEMPTED"
    SOLVED = "SOLVED"


class User(Base):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True)
    username = Column(String, unique=True, nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)

    global_score = Column(Integer, default=0, nullable=False)
    solved_easy = Column(Integer, default=0, nullable=False)
    solved_medium = Column(Integer, default=0, nullable=False)
    solved_hard = Column(Integer, default=0, nullable=False)
    last_solve_at = Column(DateTime, nullable=True)


class UserStatistics(Base):
    __tablename__ = "user_statistics"

    user_id = Column(Integer, primary_key=True)
    contest_rating = Column(Float, default=1500.0, nullable=False)
    contests_participated = Column(Integer, default=0, nullable=False)


class UserProblemProgress(Base):
    __tablename__ = "user_problem_progress"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, index=True, nullable=False)
    problem_id = Column(Integer, index=True, nullable=False)
    status = Column(String, default=ProgressStatus.ATTEMPTED.value, nullable=False)
    attempts = Column(Integer, default=0, nullable=False)
    solved_at = Column(DateTime, nullable=True)

    __table_args__ = (UniqueConstraint("user_id", "problem_id", name="uq_progress_user_problem"),)
