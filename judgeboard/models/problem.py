import enum

from sqlalchemy import Column, String, Float, Integer, JSON
from judgeboard.db.base import Base


class ProblemDifficulty(str, enum.Enum):
    EASY = "EASY"
    MEDIUM = "MEDIUM"
    HARD = "HARD"


class Problem(Base):
    __tablename__ = "problems"

    id = Column(Integer, primary_key=True)
    title = Column(String, nullable=False)
    difficulty = Column(String, default=ProblemDifficulty.EASY.value, nullable=False)
    time_limit_ms = Column(Integer, default=2000)
    memory_limit_kb = Column(Integer, default=262144)
    testcases = Column(JSON, nullable=True)  # [{"input": ..., "output": ...}]

    total_submissions = Column(Integer, default=0, nullable=False)
    total_accepted = Column(Integer, default=0, nullable=False)
    acceptance_rate = Column(Float, default=0.0, nullable=False)
