from __future__ import annotations

import logging
import queue
import threading
from typing import Any, AsyncIterator, Optional

from fastapi.concurrency import run_in_threadpool

from .llm import decode_frames

logger = logging.getLogger("orchestrator.relay")

_END = object()


class StreamRelay:
    """
    Relays text deltas from an open upstream response to an async consumer.

    A producer thread reads line-delimited frames from the upstream and puts the
    decoded text on a bounded queue; the consumer drains the queue into the
    outbound response. Closing the relay stops the producer and closes the
    upstream response.
    """

    def __init__(self, response: Any, max_pending: int = 64, poll_interval: float = 0.1) -> None:
        self._response = response
        self._queue: "queue.Queue[Any]" = queue.Queue(maxsize=max_pending)
        self._closed = threading.Event()
        self._poll_interval = poll_interval
        self._producer: Optional[threading.Thread] = None

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    def start(self) -> None:
        if self._producer is not None:
            return
        self._producer = threading.Thread(target=self._pump, name="stream-relay", daemon=True)
        self._producer.start()

    def close(self) -> None:
        if self._closed.is_set():
            return
        self._closed.set()
        self._close_upstream()

    def _close_upstream(self) -> None:
        try:
            self._response.close()
        except Exception:  # pragma: no cover - best effort on teardown
            logger.debug("Error while closing upstream response.", exc_info=True)

    def _pump(self) -> None:
        forwarded = 0
        try:
            for delta in decode_frames(self._response.iter_lines()):
                if not self._offer(delta):
                    break
                forwarded += 1
        except Exception:
            if not self._closed.is_set():
                logger.warning("Upstream stream failed after %d chunks.", forwarded, exc_info=True)
        finally:
            self._close_upstream()
            self._offer(_END)
            logger.debug("Producer finished after %d chunks.", forwarded)

    def _offer(self, item: Any) -> bool:
        while not self._closed.is_set():
            try:
                self._queue.put(item, timeout=self._poll_interval)
                return True
            except queue.Full:
                continue
        return False

    def _next(self) -> Any:
        while True:
            try:
                return self._queue.get(timeout=self._poll_interval)
            except queue.Empty:
                if self._closed.is_set():
                    return _END

    async def stream(self) -> AsyncIterator[str]:
        self.start()
        try:
            while True:
                item = await run_in_threadpool(self._next)
                if item is _END:
                    break
                yield item
        finally:
            # Runs on completion, upstream failure and client disconnect alike.
            self.close()
