"""
Progress notifier.

Publish/subscribe channel keyed by job id. Subscribers receive status and
progress events in publish order until the job reaches a terminal status,
after which their stream closes.
"""

import asyncio
import hmac
import logging
import time
from collections import OrderedDict
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Iterable, Protocol

from .errors import AuthorizationError
from .models import JobStatus

logger = logging.getLogger(__name__)


class ProgressEventType(Enum):
    STATUS_CHANGED = "status_changed"
    PROGRESS_UPDATED = "progress_updated"


@dataclass(frozen=True)
class ProgressEvent:
    """A status or progress update for one job."""
    type: ProgressEventType
    job_id: str
    status: str
    progress: dict[str, Any]
    error_code: str | None = None
    timestamp: float = field(default_factory=time.time)

    @property
    def is_terminal(self) -> bool:
        return JobStatus(self.status).is_terminal

    def to_dict(self) -> dict[str, Any]:
        data = {
            "type": self.type.value,
            "jobId": self.job_id,
            "status": self.status,
            "progress": self.progress,
            "timestamp": self.timestamp,
        }
        if self.error_code:
            data["errorCode"] = self.error_code
        return data


class Authorizer(Protocol):
    def authorize(self, caller: str | None, job_id: str) -> bool:
        ...


class TokenAuthorizer:
    """
    Accepts callers presenting one of the configured tokens.

    With no tokens configured any non-empty caller identity is accepted.
    """

    def __init__(self, tokens: Iterable[str] = ()):
        self.tokens = {t for t in tokens if t}

    def authorize(self, caller: str | None, job_id: str) -> bool:
        if not caller:
            return False
        if not self.tokens:
            return True
        return any(hmac.compare_digest(caller.encode(), token.encode()) for token in self.tokens)


_CLOSED = object()


class Subscription:
    """Async iterator over one subscriber's events."""

    def __init__(self, job_id: str, notifier: "ProgressNotifier | None" = None):
        self.job_id = job_id
        self._queue: asyncio.Queue = asyncio.Queue()
        self._notifier = notifier
        self.closed = False

    def _put(self, event: ProgressEvent) -> None:
        if not self.closed:
            self._queue.put_nowait(event)

    def _close(self) -> None:
        if not self.closed:
            self.closed = True
            self._queue.put_nowait(_CLOSED)

    def close(self) -> None:
        """Stop receiving events."""
        if self._notifier is not None:
            self._notifier._remove(self)
        self._close()

    def __aiter__(self) -> "Subscription":
        return self

    async def __anext__(self) -> ProgressEvent:
        item = await self._queue.get()
        if item is _CLOSED:
            raise StopAsyncIteration
        return item


class ProgressNotifier:
    """
    Fan-out of job events to authorized subscribers.

    The latest event of every unfinished job is kept for late subscribers.
    Final events are kept only for the max_finished most recently finished
    jobs; older ones are re-seeded from the queue through remember().
    """

    def __init__(self, authorizer: Authorizer | None = None, max_finished: int = 1000):
        self.authorizer = authorizer or TokenAuthorizer()
        self.max_finished = max_finished
        self._subscribers: dict[str, list[Subscription]] = {}
        self._last_event: dict[str, ProgressEvent] = {}
        self._finished: OrderedDict[str, ProgressEvent] = OrderedDict()
        self._published = 0

    def _store(self, job_id: str, event: ProgressEvent) -> None:
        if event.type is ProgressEventType.STATUS_CHANGED and event.is_terminal:
            self._last_event.pop(job_id, None)
            self._finished[job_id] = event
            self._finished.move_to_end(job_id)
            while len(self._finished) > self.max_finished:
                self._finished.popitem(last=False)
        else:
            self._last_event[job_id] = event

    def _latest(self, job_id: str) -> ProgressEvent | None:
        return self._finished.get(job_id) or self._last_event.get(job_id)

    def publish(self, job_id: str, event: ProgressEvent) -> None:
        """Deliver an event to every current subscriber of job_id."""
        self._published += 1
        self._store(job_id, event)
        self._log(event)

        subscribers = self._subscribers.get(job_id, [])
        for subscription in list(subscribers):
            subscription._put(event)

        if event.type is ProgressEventType.STATUS_CHANGED and event.is_terminal:
            for subscription in self._subscribers.pop(job_id, []):
                subscription._close()

    def subscribe(self, job_id: str, caller: str | None) -> Subscription:
        """
        Subscribe to a job's events.

        The latest event already published for the job, if any, is delivered
        first. If the job is already terminal the stream yields that event and
        closes.

        Raises:
            AuthorizationError: caller is not allowed to observe job_id
        """
        if not self.authorizer.authorize(caller, job_id):
            logger.warning(f"[PROGRESS] Rejected subscription to {job_id}")
            raise AuthorizationError(f"Not authorized to subscribe to {job_id}")

        subscription = Subscription(job_id, self)
        last = self._latest(job_id)
        if last is not None:
            subscription._put(last)
            if last.type is ProgressEventType.STATUS_CHANGED and last.is_terminal:
                subscription._close()
                return subscription

        self._subscribers.setdefault(job_id, []).append(subscription)
        return subscription

    def _remove(self, subscription: Subscription) -> None:
        subscribers = self._subscribers.get(subscription.job_id)
        if subscribers and subscription in subscribers:
            subscribers.remove(subscription)
            if not subscribers:
                del self._subscribers[subscription.job_id]

    def remember(self, job_id: str, event: ProgressEvent) -> None:
        """Seed the latest event for a job nothing has been published for yet."""
        if self._latest(job_id) is None:
            self._store(job_id, event)

    def subscriber_count(self, job_id: str) -> int:
        return len(self._subscribers.get(job_id, []))

    def close(self) -> None:
        """Close every open subscription."""
        for subscriptions in self._subscribers.values():
            for subscription in subscriptions:
                subscription._close()
        self._subscribers.clear()

    def get_stats(self) -> dict[str, Any]:
        return {
            "published": self._published,
            "jobs_with_subscribers": len(self._subscribers),
            "subscribers": sum(len(s) for s in self._subscribers.values()),
            "active_jobs": len(self._last_event),
            "finished_jobs": len(self._finished),
        }

    def _log(self, event: ProgressEvent) -> None:
        if event.type is ProgressEventType.STATUS_CHANGED:
            if event.error_code:
                logger.info(f"[PROGRESS] {event.job_id} -> {event.status} ({event.error_code})")
            else:
                logger.info(f"[PROGRESS] {event.job_id} -> {event.status}")
        else:
            logger.debug(f"[PROGRESS] {event.job_id} at {event.progress.get('percentage', 0):.0f}%")
