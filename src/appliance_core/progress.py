from __future__ import annotations

import asyncio
import json
import time
from typing import AsyncIterator, Dict, Optional, Set

from .log import get_logger
from .messages import ProgressEvent

logger = get_logger("progress")


class ProgressBroadcaster:
    """In-process fan-out of progress events, addressed by application id.

    Each subscriber owns an unbounded queue; publishing never blocks.
    """

    def __init__(
        self,
        final_delay_seconds: float = 1.0,
        timeout_seconds: float = 30 * 60,
        heartbeat_seconds: float = 5.0,
    ) -> None:
        self._final_delay = final_delay_seconds
        self._timeout = timeout_seconds
        self._heartbeat = heartbeat_seconds
        self._subscribers: Dict[str, Set[asyncio.Queue[ProgressEvent]]] = {}
        self._last: Dict[str, ProgressEvent] = {}

    def subscribe(self, app_id: str) -> asyncio.Queue[ProgressEvent]:
        queue: asyncio.Queue[ProgressEvent] = asyncio.Queue()
        self._subscribers.setdefault(app_id, set()).add(queue)
        return queue

    def unsubscribe(self, app_id: str, queue: asyncio.Queue[ProgressEvent]) -> None:
        queues = self._subscribers.get(app_id)
        if not queues:
            return
        queues.discard(queue)
        if not queues:
            del self._subscribers[app_id]

    def subscriber_count(self, app_id: str) -> int:
        return len(self._subscribers.get(app_id, ()))

    def publish(self, event: ProgressEvent) -> int:
        """Deliver `event` to every current subscriber of its app id; returns how many got it."""
        self._last[event.app_id] = event
        queues = list(self._subscribers.get(event.app_id, ()))
        for queue in queues:
            queue.put_nowait(event)
        logger.debug("progress_published", app_id=event.app_id, progress=event.progress, stage=event.stage)
        return len(queues)

    def last(self, app_id: str) -> Optional[ProgressEvent]:
        return self._last.get(app_id)

    def forget(self, app_id: str) -> None:
        self._last.pop(app_id, None)

    async def stream(self, app_id: str, initial: Optional[ProgressEvent] = None) -> AsyncIterator[str]:
        """Server-sent-event frames for `app_id`.

        Ends `final_delay_seconds` after a final event (progress 100 or a terminal stage such as
        "completed"), or when the timeout elapses. A client disconnect cancels
        the consuming task, which detaches the subscription in `finally`.
        """
        queue = self.subscribe(app_id)
        deadline = time.monotonic() + self._timeout
        try:
            if initial is not None:
                yield _frame(initial)
                if initial.is_final:
                    await asyncio.sleep(self._final_delay)
                    return
            while True:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    logger.info("progress_stream_timeout", app_id=app_id)
                    return
                try:
                    event = await asyncio.wait_for(queue.get(), timeout=min(self._heartbeat, remaining))
                except asyncio.TimeoutError:
                    yield ": heartbeat\n\n"
                    continue

                yield _frame(event)
                if event.is_final:
                    await asyncio.sleep(self._final_delay)
                    return
        finally:
            self.unsubscribe(app_id, queue)


def _frame(event: ProgressEvent) -> str:
    return f"data: {json.dumps(event.to_dict(), ensure_ascii=False)}\n\n"
