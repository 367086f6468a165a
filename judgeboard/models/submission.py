import enum

from sqlalchemy import Column, String, Float, DateTime, Integer, Text, JSON, Index
from judgeboard.db.base import Base, utcnow


class SubmissionStatus(str, enum.Enum):
    PENDING = "PENDING"
    RUNNING = "RUNNING"
    ACCEPTED = "ACCEPTED"
    WRONG_ANSWER = "WRONG_ANSWER"
    TIME_LIMIT_EXCEEDED = "TIME_LIMIT_EXCEEDED"
    MEMORY_LIMIT_EXCEEDED = "MEMORY_LIMIT_EXCEEDED"
    RUNTIME_ERROR = "RUNTIME_ERROR"
    COMPILATION_ERROR = "COMPILATION_ERROR"
    UNKNOWN_ERROR = "UNKNOWN_ERROR"
    SIGSEGV = "SIGSEGV"
    SIGXFSZ = "SIGXFSZ"
    SIGFPE = "SIGFPE"
    SIGABRT = "SIGABRT"
    NZEC = "NZEC"

    @property
    def is_terminal(self) -> bool:
        return self not in (SubmissionStatus.PENDING, SubmissionStatus.RUNNING)


JUDGING_STATUSES = (SubmissionStatus.PENDING.value, SubmissionStatus.RUNNING.value)


class Submission(Base):
    __tablename__ = "submissions"

    id = Column(String, primary_key=True, index=True)
    user_id = Column(Integer, index=True, nullable=False)
    problem_id = Column(Integer, index=True, nullable=False)
    contest_id = Column(Integer, index=True, nullable=True)
    language_id = Column(Integer, nullable=False)
    source_code = Column(Text, nullable=False)

    status = Column(String, default=SubmissionStatus.PENDING.value, nullable=False)
    testcase_results = Column(JSON, nullable=True)  # ordered by testcase index
    passed_testcases = Column(Integer, default=0)
    total_testcases = Column(Integer, default=0)
    runtime_ms = Column(Float, nullable=True)  # mean over reported results
    memory_kb = Column(Float, nullable=True)  # max over reported results
    submitted_at = Column(DateTime, default=utcnow, nullable=False)
    judged_at = Column(DateTime, nullable=True)

    __table_args__ = (
        Index("ix_submissions_status_submitted_at", "status", "submitted_at"),
    )
