"""Redis key schema shared by every writer and reader.

Keys are colon-separated namespaces. The judge tracking group for one
submission lives under ``judge:sub:{id}:*`` and is deleted as a unit once the
submission is finalized.
"""


def _join(*parts) -> str:
    return ":".join(str(p) for p in parts)


class JudgeKeys:
    @staticmethod
    def meta(submission_id) -> str:
        return _join("judge:sub", submission_id, "meta")

    @staticmethod
    def results_by_index(submission_id) -> str:
        return _join("judge:sub", submission_id, "resultsI")

    @staticmethod
    def seen(submission_id) -> str:
        return _join("judge:sub", submission_id, "seen")

    @staticmethod
    def done_lock(submission_id) -> str:
        return _join("judge:sub", submission_id, "done:lock")

    @classmethod
    def group(cls, submission_id) -> list[str]:
        return [
            cls.meta(submission_id),
            cls.results_by_index(submission_id),
            cls.seen(submission_id),
            cls.done_lock(submission_id),
        ]


class RankingKeys:
    PROBLEM_BASED = "global:ranking:problem-based"
    CONTEST_BASED = "global:ranking:contest-based"
    REBUILD_LOCK = "lock:ranking:rebuild"

    @staticmethod
    def contest_leaderboard(contest_id) -> str:
        return _join("contest", contest_id, "leaderboard")

    @staticmethod
    def contest_leaderboard_page(contest_id, page: int, limit: int) -> str:
        return _join("contest", contest_id, "leaderboard", f"p{page}", f"l{limit}")

    @staticmethod
    def contest_leaderboard_page_pattern(contest_id) -> str:
        return _join("contest", contest_id, "leaderboard", "p*")

    @staticmethod
    def contest_channel(contest_id) -> str:
        return _join("contest", contest_id, "leaderboard", "events")

    @staticmethod
    def global_page(board: str, page: int, limit: int) -> str:
        return _join("global:ranking", board, "page", f"p{page}", f"l{limit}")

    @staticmethod
    def contest_close_lock(contest_id) -> str:
        return _join("lock:contest", contest_id, "close")


class SubmissionKeys:
    @staticmethod
    def result(submission_id) -> str:
        return _join("submission", submission_id, "result")

    @staticmethod
    def result_channel(submission_id) -> str:
        return _join("submission", submission_id, "result", "ready")
