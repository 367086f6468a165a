import logging

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from judgeboard.core.config import settings
from judgeboard.db.base import Base

logger = logging.getLogger(__name__)


def _connect_args(url: str) -> dict:
    if url.startswith("postgresql"):
        return {"connect_timeout": 30}
    if url.startswith("sqlite"):
        # Sessions are handed across FastAPI's threadpool
        return {"check_same_thread": False}
    return {}


engine = create_engine(
    settings.DATABASE_URL,
    pool_pre_ping=True,
    connect_args=_connect_args(settings.DATABASE_URL),
)

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


def get_db():
    """FastAPI dependency yielding one session per request."""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def init_db() -> bool:
    """Create missing tables for submissions, users, problems and contests.

    Returns False when the database is unreachable so the API can still start;
    endpoints touching the database fail until it comes back.
    """
    import judgeboard.models  # noqa: F401  (populate metadata)
    try:
        Base.metadata.create_all(bind=engine)
    except Exception as e:
        logger.warning("init_db_create_all_failed", extra={"error": str(e)})
        return False
    return True
