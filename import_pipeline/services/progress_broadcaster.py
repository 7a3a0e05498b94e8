"""
Push job progress to subscribers over server-sent events.

Job events arrive on worker threads; each subscription owns an
asyncio.Queue bound to the event loop that created it, and events are
handed over with call_soon_threadsafe.
"""
import asyncio
import itertools
import json
import threading
from typing import Any, AsyncIterator, Callable, Dict, List, Optional

import structlog

from import_pipeline.models.job import JobEvent, JobEventType, JobStatus, utcnow

logger = structlog.get_logger(__name__)

HEARTBEAT_SECONDS = 30.0
COMPLETED_GRACE_SECONDS = 5.0
FAILED_GRACE_SECONDS = 10.0

_CLOSE = object()

StatusLookup = Callable[[str], Optional[Dict[str, Any]]]


def format_sse(message: Dict[str, Any]) -> str:
    """Render a message as one SSE frame."""
    lines = []
    if message.get("id") is not None:
        lines.append(f"id: {message['id']}")
    lines.append(f"event: {message['event']}")
    lines.append(f"data: {json.dumps(message.get('data', {}), default=str)}")
    return "\n".join(lines) + "\n\n"


class Subscription:
    """One subscriber's channel for one job."""

    _ids = itertools.count(1)

    def __init__(self, job_id: str, loop: asyncio.AbstractEventLoop):
        self.id = next(self._ids)
        self.job_id = job_id
        self.loop = loop
        self.queue: asyncio.Queue = asyncio.Queue()
        self.closed = False
        self._sequence = itertools.count(1)
        self._close_scheduled = False

    def push(self, event: str, data: Dict[str, Any]) -> None:
        """Thread-safe enqueue of one message."""
        if self.closed:
            return
        message = {"id": next(self._sequence), "event": event, "data": data}
        try:
            self.loop.call_soon_threadsafe(self.queue.put_nowait, message)
        except RuntimeError:
            # Subscriber's loop has already shut down
            self.closed = True

    def close_later(self, delay: float) -> None:
        """Send a close message after delay seconds and end the stream."""
        if self.closed or self._close_scheduled:
            return
        self._close_scheduled = True

        def schedule():
            if delay <= 0:
                self._finish()
            else:
                self.loop.call_later(delay, self._finish)

        try:
            self.loop.call_soon_threadsafe(schedule)
        except RuntimeError:
            self.closed = True

    def _finish(self) -> None:
        if self.closed:
            return
        self.queue.put_nowait({"id": next(self._sequence), "event": "close", "data": {"job_id": self.job_id}})
        self.queue.put_nowait(_CLOSE)

    async def messages(self, heartbeat_seconds: float = HEARTBEAT_SECONDS) -> AsyncIterator[Dict[str, Any]]:
        """Yield messages until closed, with a heartbeat on idle channels."""
        while not self.closed:
            try:
                message = await asyncio.wait_for(self.queue.get(), timeout=heartbeat_seconds)
            except asyncio.TimeoutError:
                yield {"id": None, "event": "heartbeat", "data": {"timestamp": utcnow().isoformat()}}
                continue
            if message is _CLOSE:
                self.closed = True
                break
            yield message


class ProgressBroadcaster:
    """
    Fan job events out to per-job subscriptions.

    Args:
        status_lookup: Returns a job's current status dict (or None) for the
            snapshot sent on subscribe
        heartbeat_seconds: Idle interval between heartbeats
        completed_grace_seconds: Delay before closing after completion
        failed_grace_seconds: Delay before closing after failure
    """

    def __init__(
        self,
        status_lookup: StatusLookup,
        heartbeat_seconds: float = HEARTBEAT_SECONDS,
        completed_grace_seconds: float = COMPLETED_GRACE_SECONDS,
        failed_grace_seconds: float = FAILED_GRACE_SECONDS,
    ):
        self.status_lookup = status_lookup
        self.heartbeat_seconds = heartbeat_seconds
        self.completed_grace_seconds = completed_grace_seconds
        self.failed_grace_seconds = failed_grace_seconds
        self._subscriptions: Dict[str, List[Subscription]] = {}
        self._lock = threading.Lock()

    def subscribe(self, job_id: str) -> Subscription:
        """
        Open a channel for a job. Must be called from a running event loop.

        The first messages are ``connected`` and a ``status`` snapshot. A job
        that has already finished gets its closing schedule immediately.
        """
        subscription = Subscription(job_id, asyncio.get_running_loop())
        with self._lock:
            self._subscriptions.setdefault(job_id, []).append(subscription)

        subscription.push("connected", {"job_id": job_id, "timestamp": utcnow().isoformat()})
        snapshot = self.status_lookup(job_id)
        if snapshot is not None:
            subscription.push("status", snapshot)
            status = JobStatus(snapshot["status"])
            if status.is_terminal:
                subscription.close_later(self._grace_for(status))

        logger.debug("sse_subscribed", job_id=job_id, connections=self.job_connection_count(job_id))
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        subscription.closed = True
        with self._lock:
            subs = self._subscriptions.get(subscription.job_id, [])
            if subscription in subs:
                subs.remove(subscription)
            if not subs:
                self._subscriptions.pop(subscription.job_id, None)
        logger.debug("sse_unsubscribed", job_id=subscription.job_id)

    def handle_event(self, event: JobEvent) -> None:
        """JobQueue listener. Safe to call from any thread."""
        with self._lock:
            subs = list(self._subscriptions.get(event.job_id, []))
        if not subs:
            return

        name = "progress" if event.type == JobEventType.PROGRESS else "status"
        data = dict(event.snapshot, event=event.type.value)
        for sub in subs:
            sub.push(name, data)
            if event.status.is_terminal:
                sub.close_later(self._grace_for(event.status))

    def connection_count(self) -> int:
        with self._lock:
            return sum(len(subs) for subs in self._subscriptions.values())

    def job_connection_count(self, job_id: str) -> int:
        with self._lock:
            return len(self._subscriptions.get(job_id, []))

    def _grace_for(self, status: JobStatus) -> float:
        if status == JobStatus.COMPLETED:
            return self.completed_grace_seconds
        if status == JobStatus.FAILED:
            return self.failed_grace_seconds
        return 0.0
