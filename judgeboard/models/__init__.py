from judgeboard.models.submission import Submission, SubmissionStatus, JUDGING_STATUSES
from judgeboard.models.problem import Problem, ProblemDifficulty
from judgeboard.models.user import User, UserStatistics, UserProblemProgress, ProgressStatus
from judgeboard.models.contest import Contest, ContestProblem, ContestParticipant, ContestStatus

__all__ = [
    "Submission",
    "SubmissionStatus",
    "JUDGING_STATUSES",
    "Problem",
    "ProblemDifficulty",
    "User",
    "UserStatistics",
    "UserProblemProgress",
    "ProgressStatus",
    "Contest",
    "ContestProblem",
    "ContestParticipant",
    "ContestStatus",
]
