from __future__ import annotations

import logging
import queue
import threading
from typing import Optional

from .errors import ChannelClosed
from .models import ScrapeOutcome

logger = logging.getLogger(__name__)


class ScrapeChannel:
    """Many-producer, single-consumer queue between target loops and the writer.

    ``maxsize`` of 0 makes the channel unbounded. When bounded, ``overflow``
    decides what a full channel does to a producer: ``"block"`` waits for
    room (backpressure), ``"drop"`` discards the outcome.

    Closing enqueues an end-of-stream marker behind everything already sent.
    Outcomes sent after that are refused with ChannelClosed.
    """

    def __init__(self, maxsize: int = 0, overflow: str = "block", poll_interval: float = 0.1) -> None:
        if overflow not in ("block", "drop"):
            raise ValueError(f"unknown overflow policy: {overflow!r}")
        self._queue: queue.Queue[Optional[ScrapeOutcome]] = queue.Queue(maxsize=maxsize)
        self._overflow = overflow
        self._poll_interval = poll_interval
        # Guards the closed flag and every enqueue, so nothing lands after
        # the end-of-stream marker.
        self._lock = threading.Lock()
        self._not_full = threading.Condition(self._lock)
        self._closed = False
        self._dropped = 0

    def send(self, outcome: ScrapeOutcome, abort: Optional[threading.Event] = None) -> bool:
        """Enqueue an outcome.

        Returns False when the outcome was dropped (full channel with the
        ``drop`` policy, or ``abort`` set while waiting for room). Raises
        ChannelClosed once the channel has been closed; such a late outcome
        is counted as dropped.
        """
        with self._not_full:
            while True:
                if self._closed:
                    self._dropped += 1
                    logger.warning("channel closed, dropped late outcome of target %s", outcome.target_id)
                    raise ChannelClosed(outcome.target_id)
                try:
                    self._queue.put_nowait(outcome)
                    return True
                except queue.Full:
                    pass
                if self._overflow == "drop":
                    self._dropped += 1
                    logger.warning("channel full, dropped outcome of target %s", outcome.target_id)
                    return False
                if abort is not None and abort.is_set():
                    return False
                self._not_full.wait(self._poll_interval)

    def receive(self) -> Optional[ScrapeOutcome]:
        """Block for the next outcome; None marks the end of the stream."""
        item = self._queue.get()
        with self._not_full:
            self._not_full.notify()
        return item

    def close(self) -> None:
        """Refuse further outcomes and enqueue the end-of-stream marker.

        Blocks while a bounded channel is full, until the consumer makes room.
        """
        with self._lock:
            if self._closed:
                return
            self._closed = True
        # No producer can enqueue any more, so the marker is the last item.
        self._queue.put(None)

    @property
    def closed(self) -> bool:
        with self._lock:
            return self._closed

    @property
    def dropped(self) -> int:
        with self._lock:
            return self._dropped

    def qsize(self) -> int:
        return self._queue.qsize()
