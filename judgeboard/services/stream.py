"""Push leaderboard changes and submission results over Redis pub/sub.

Delivery is best effort: nothing is replayed, so a client that missed messages
reconciles by reading the paginated leaderboard or the submission itself. A
finished submission result is also kept under a short-lived key so a client
that subscribes late still receives it.
"""

import json
import logging
import time
from typing import Callable, Iterator, Optional

from starlette.concurrency import run_in_threadpool

from judgeboard.core.config import settings
from judgeboard.core.keys import RankingKeys, SubmissionKeys
from judgeboard.core.metrics import STREAM_SUBSCRIBERS
from judgeboard.core.redis_client import get_redis

logger = logging.getLogger(__name__)

_EXHAUSTED = object()


def format_sse(data, event: Optional[str] = None) -> str:
    lines = []
    if event:
        lines.append(f"event: {event}")
    lines.append(f"data: {json.dumps(data, default=str)}")
    return "\n".join(lines) + "\n\n"


async def relay_until_disconnected(request, frames: Iterator[Optional[str]]):
    """Drive a blocking frame generator from the event loop.

    ``None`` frames are idle ticks: nothing is sent, but the client connection
    is checked, so the generator is closed (and unsubscribes) soon after the
    client goes away instead of at its next real message.
    """
    try:
        while True:
            frame = await run_in_threadpool(next, frames, _EXHAUSTED)
            if frame is _EXHAUSTED:
                return
            if await request.is_disconnected():
                logger.debug("stream_client_disconnected", extra={"path": request.url.path})
                return
            if frame is not None:
                yield frame
    finally:
        frames.close()


class PubSubStream:
    stream_name = "stream"

    def __init__(self, redis_client=None):
        self._redis = redis_client

    @property
    def redis(self):
        if self._redis is None:
            self._redis = get_redis()
        return self._redis

    def _publish(self, channel: str, message: dict, log_extra: dict) -> int:
        try:
            return self.redis.publish(channel, json.dumps(message, default=str))
        except Exception as e:
            logger.warning(f"Publish to {channel} failed: {str(e)}", extra=log_extra)
            return 0

    def _listen(
        self,
        channel: str,
        opening: Callable[[], list],
        handle: Callable[[dict], tuple],
        heartbeat_seconds: Optional[float],
        poll_seconds: float,
        yield_idle: bool,
        log_extra: dict,
    ) -> Iterator[Optional[str]]:
        """Relay one channel as SSE frames with periodic ping frames.

        ``opening`` runs once the subscription is live and returns
        ``(frame, done)`` pairs; ``handle`` maps each decoded message to one.
        A ``done`` frame ends the stream.
        """
        heartbeat = heartbeat_seconds or settings.LEADERBOARD_HEARTBEAT_SECONDS
        pubsub = self.redis.pubsub(ignore_subscribe_messages=True)
        pubsub.subscribe(channel)
        STREAM_SUBSCRIBERS.labels(stream=self.stream_name).inc()
        logger.info(f"{self.stream_name}_stream_opened", extra=log_extra)
        try:
            for frame, done in opening():
                yield frame
                if done:
                    return
            last_sent = time.monotonic()
            while True:
                message = pubsub.get_message(timeout=poll_seconds)
                if message and message.get("type") == "message":
                    frame, done = handle(json.loads(message["data"]))
                    yield frame
                    if done:
                        return
                    last_sent = time.monotonic()
                elif time.monotonic() - last_sent >= heartbeat:
                    yield format_sse({"timestamp": int(time.time() * 1000)}, event="ping")
                    last_sent = time.monotonic()
                elif yield_idle:
                    yield None
        finally:
            STREAM_SUBSCRIBERS.labels(stream=self.stream_name).dec()
            try:
                pubsub.unsubscribe()
                pubsub.close()
            except Exception as e:
                logger.debug("stream_close_failed", extra={**log_extra, "error": str(e)})
            logger.info(f"{self.stream_name}_stream_closed", extra=log_extra)


class LeaderboardStream(PubSubStream):
    stream_name = "leaderboard"

    def publish(self, contest_id: int, entry: dict) -> int:
        """Publish one participant update; returns the number of receivers."""
        message = {
            "type": "leaderboard_update",
            "contestId": contest_id,
            "entry": entry,
            "timestamp": int(time.time() * 1000),
        }
        receivers = self._publish(RankingKeys.contest_channel(contest_id), message, {"contest_id": contest_id})
        logger.debug("leaderboard_update_published", extra={"contest_id": contest_id, "user_id": entry.get("userId")})
        return receivers

    def publish_end(self, contest_id: int) -> int:
        """Tell open streams the contest is over so they can close."""
        return self._publish(
            RankingKeys.contest_channel(contest_id),
            {"type": "contest_ended", "contestId": contest_id},
            {"contest_id": contest_id},
        )

    def events(
        self,
        contest_id: int,
        heartbeat_seconds: Optional[float] = None,
        poll_seconds: float = 1.0,
        yield_idle: bool = False,
    ) -> Iterator[Optional[str]]:
        """Server-Sent Events for one contest until it ends."""
        def handle(data):
            if data.get("type") == "contest_ended":
                return format_sse(data, event="end"), True
            return format_sse(data, event="leaderboard_update"), False

        return self._listen(
            RankingKeys.contest_channel(contest_id),
            lambda: [(format_sse({"contestId": contest_id}, event="subscribed"), False)],
            handle,
            heartbeat_seconds,
            poll_seconds,
            yield_idle,
            {"contest_id": contest_id},
        )


class SubmissionResultStream(PubSubStream):
    stream_name = "submission"

    def publish_result(self, submission_id: str, payload: dict) -> int:
        """Store the finished result briefly and push it to waiting clients."""
        log_extra = {"submission_id": submission_id}
        message = {"type": "result", "submissionId": submission_id, "payload": payload}
        try:
            self.redis.set(
                SubmissionKeys.result(submission_id),
                json.dumps(message, default=str),
                ex=settings.SUBMISSION_RESULT_TTL_SECONDS,
            )
        except Exception as e:
            logger.warning(f"Result cache write failed: {str(e)}", extra=log_extra)
        return self._publish(SubmissionKeys.result_channel(submission_id), message, log_extra)

    def cached_result(self, submission_id: str) -> Optional[dict]:
        raw = self.redis.get(SubmissionKeys.result(submission_id))
        return json.loads(raw) if raw else None

    def events(
        self,
        submission_id: str,
        initial: Optional[dict] = None,
        heartbeat_seconds: Optional[float] = None,
        poll_seconds: float = 1.0,
        yield_idle: bool = False,
    ) -> Iterator[Optional[str]]:
        """Server-Sent Events ending with the submission's single ``result`` frame."""
        def opening():
            frames = [(format_sse({"submissionId": submission_id}, event="subscribed"), False)]
            # Checked after subscribing so a result published in between is not lost
            ready = initial or self.cached_result(submission_id)
            if ready:
                frames.append((format_sse(ready, event="result"), True))
            return frames

        return self._listen(
            SubmissionKeys.result_channel(submission_id),
            opening,
            lambda data: (format_sse(data, event="result"), True),
            heartbeat_seconds,
            poll_seconds,
            yield_idle,
            {"submission_id": submission_id},
        )


leaderboard_stream = LeaderboardStream()
submission_result_stream = SubmissionResultStream()
