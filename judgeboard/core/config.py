import os
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # Database configuration
    DATABASE_URL: str = os.getenv("DATABASE_URL", "sqlite:///./judgeboard.db")

    # Redis configuration (tracking keys, leaderboards, pub/sub)
    REDIS_URL: str = os.getenv("REDIS_URL", "redis://redis:6379/0")

    # Celery configuration
    CELERY_BROKER_URL: str = os.getenv("CELERY_BROKER_URL", "redis://redis:6379/1")
    CELERY_RESULT_BACKEND: str = os.getenv("CELERY_RESULT_BACKEND", "redis://redis:6379/1")

    # Judge engine
    JUDGE0_URL: str = os.getenv("JUDGE0_URL", "http://judge0:2358")
    JUDGE0_CALLBACK_URL: str = os.getenv("JUDGE0_CALLBACK_URL", "http://api:8000")
    JUDGE0_USE_CE: bool = os.getenv("JUDGE0_USE_CE", "false").lower() == "true"
    RAPIDAPI_KEY: str = os.getenv("RAPIDAPI_KEY", "")
    RAPIDAPI_HOST: str = os.getenv("RAPIDAPI_HOST", "")
    JUDGE0_TIMEOUT_SECONDS: float = float(os.getenv("JUDGE0_TIMEOUT_SECONDS", "15"))
    MAX_TESTCASES: int = int(os.getenv("MAX_TESTCASES", "10000"))

    # Judging lifecycle
    TRACKING_TTL_SECONDS: int = int(os.getenv("TRACKING_TTL_SECONDS", "3600"))
    FINALIZE_LOCK_TTL_SECONDS: int = int(os.getenv("FINALIZE_LOCK_TTL_SECONDS", "600"))
    JUDGING_TIMEOUT_SECONDS: int = int(os.getenv("JUDGING_TIMEOUT_SECONDS", "300"))
    STUCK_SWEEP_INTERVAL_SECONDS: int = int(os.getenv("STUCK_SWEEP_INTERVAL_SECONDS", "60"))
    OUTPUT_DISPLAY_LIMIT: int = int(os.getenv("OUTPUT_DISPLAY_LIMIT", "500"))

    # Rankings
    RANKING_REBUILD_HOUR: int = int(os.getenv("RANKING_REBUILD_HOUR", "3"))
    RANKING_REBUILD_BATCH_SIZE: int = int(os.getenv("RANKING_REBUILD_BATCH_SIZE", "1000"))
    RANKING_REBUILD_LOCK_TTL_SECONDS: int = int(os.getenv("RANKING_REBUILD_LOCK_TTL_SECONDS", "3600"))
    PROBLEM_WEIGHT_EASY: int = int(os.getenv("PROBLEM_WEIGHT_EASY", "10"))
    PROBLEM_WEIGHT_MEDIUM: int = int(os.getenv("PROBLEM_WEIGHT_MEDIUM", "20"))
    PROBLEM_WEIGHT_HARD: int = int(os.getenv("PROBLEM_WEIGHT_HARD", "30"))

    # Contests
    CONTEST_DECAY_RATE: float = float(os.getenv("CONTEST_DECAY_RATE", "0"))
    LEADERBOARD_CACHE_TTL_SECONDS: int = int(os.getenv("LEADERBOARD_CACHE_TTL_SECONDS", "30"))
    LEADERBOARD_HEARTBEAT_SECONDS: int = int(os.getenv("LEADERBOARD_HEARTBEAT_SECONDS", "30"))
    CONTEST_CLOSE_LOCK_TTL_SECONDS: int = int(os.getenv("CONTEST_CLOSE_LOCK_TTL_SECONDS", "900"))
    CONTEST_CLOSE_RETRY_SECONDS: int = int(os.getenv("CONTEST_CLOSE_RETRY_SECONDS", "30"))

    # Submission result push (SSE)
    SUBMISSION_RESULT_TTL_SECONDS: int = int(os.getenv("SUBMISSION_RESULT_TTL_SECONDS", "600"))

    class Config:
        # Let BaseSettings read from project .env if present (local dev).
        env_file = ".env"


settings = Settings()
