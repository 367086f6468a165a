"""In-process event bus with explicit subscriber registration.

Handlers are plain callables registered per channel. ``publish`` calls every
handler in registration order; a failing handler is logged and does not stop
the rest.
"""

import logging
from collections import defaultdict
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Callable, Optional

logger = logging.getLogger(__name__)

SUBMISSION_JUDGED = "submission.judged"


@dataclass(frozen=True)
class SubmissionJudged:
    submission_id: str
    user_id: int
    problem_id: int
    status: str
    contest_id: Optional[int] = None
    passed_testcases: int = 0
    total_testcases: int = 0
    runtime_ms: Optional[float] = None
    memory_kb: Optional[float] = None
    submitted_at: Optional[datetime] = None
    judged_at: Optional[datetime] = None

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class EventBus:
    _handlers: dict = field(default_factory=lambda: defaultdict(list))

    def subscribe(self, channel: str, handler: Callable) -> None:
        self._handlers[channel].append(handler)

    def unsubscribe(self, channel: str, handler: Callable) -> None:
        if handler in self._handlers.get(channel, []):
            self._handlers[channel].remove(handler)

    def handlers(self, channel: str) -> list:
        return list(self._handlers.get(channel, []))

    def publish(self, channel: str, event) -> int:
        """Deliver ``event`` to every handler; returns how many succeeded."""
        delivered = 0
        for handler in self.handlers(channel):
            try:
                handler(event)
                delivered += 1
            except Exception as e:
                logger.exception(
                    f"Event handler {getattr(handler, '__qualname__', handler)} failed on {channel}: {str(e)}",
                    extra={"submission_id": getattr(event, "submission_id", None)},
                )
        return delivered


event_bus = EventBus()
