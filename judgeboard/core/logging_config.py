import logging
import os
from pythonjsonlogger import jsonlogger

# HTTP fields default to placeholders so request and worker logs share one schema
REQUEST_DEFAULTS = {
    "request_id": "-",
    "method": "-",
    "path": "-",
    "status_code": 0,
    "duration_ms": 0,
}

# Judging/ranking context (high-cardinality; keep for search, not labels)
JUDGE_CONTEXT_KEYS = (
    "submission_id",
    "problem_id",
    "contest_id",
    "user_id",
    "token",
    "testcase_index",
    "task_name",
    "task_id",
    "stage",
)

NOISY_LOGGERS = ("uvicorn", "uvicorn.error", "uvicorn.access", "celery")


class ContextDefaultsFilter(logging.Filter):
    """Fill every context key the JSON format references.

    Records logged without ``extra`` would otherwise fail formatting, and
    Loki queries rely on the keys always being present.
    """

    def __init__(self, service_name: str) -> None:
        super().__init__()
        self.service_name = service_name

    def filter(self, record: logging.LogRecord) -> bool:  # type: ignore[override]
        for key, default in REQUEST_DEFAULTS.items():
            if not hasattr(record, key):
                setattr(record, key, default)
        for key in JUDGE_CONTEXT_KEYS:
            if not hasattr(record, key):
                setattr(record, key, None)
        if not hasattr(record, "service"):
            record.service = self.service_name
        return True


def _format_string() -> str:
    keys = list(REQUEST_DEFAULTS) + ["service"] + list(JUDGE_CONTEXT_KEYS)
    return "%(asctime)s %(levelname)s %(name)s %(message)s " + " ".join(f"{k}=%({k})s" for k in keys)


def setup_logging(service_name: str = None) -> None:
    """Route all logging to stdout as one JSON object per line.

    ``SERVICE_NAME`` distinguishes the API from Celery workers in aggregated logs.
    """
    level = os.getenv("LOG_LEVEL", "INFO").upper()
    service_name = service_name or os.getenv("SERVICE_NAME", "api")

    handler = logging.StreamHandler()
    handler.setFormatter(jsonlogger.JsonFormatter(
        _format_string(),
        rename_fields={"levelname": "level", "asctime": "time"},
    ))
    handler.addFilter(ContextDefaultsFilter(service_name))

    root = logging.getLogger()
    root.setLevel(level)
    root.handlers.clear()
    root.addHandler(handler)
    logging.captureWarnings(True)

    for name in NOISY_LOGGERS:
        lg = logging.getLogger(name)
        lg.handlers.clear()
        lg.propagate = True
    # SQL echo is far too verbose for INFO
    logging.getLogger("sqlalchemy.engine").setLevel(os.getenv("SQL_LOG_LEVEL", "WARNING").upper())
