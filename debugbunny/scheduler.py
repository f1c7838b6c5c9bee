from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Callable, Iterable, List

from .channel import ScrapeChannel
from .config import validate_targets
from .models import ScrapeTarget
from .runner import ActionRunner
from .target_loop import TargetLoop

logger = logging.getLogger(__name__)


@dataclass
class ScrapeHandle:
    """The running side of a scheduled target set."""

    loops: List[TargetLoop] = field(default_factory=list)
    stopped: bool = False

    @property
    def targets(self) -> List[ScrapeTarget]:
        return [loop.target for loop in self.loops]

    def loop(self, target_id: str) -> TargetLoop:
        for loop in self.loops:
            if loop.target.id == target_id:
                return loop
        raise KeyError(target_id)


class Scheduler:
    """Runs one TargetLoop per scrape target, all feeding one channel.

    Loops share nothing but the channel. Each gets its own ActionRunner
    (and therefore its own HTTP session) from ``runner_factory``.
    """

    def __init__(
        self,
        channel: ScrapeChannel,
        runner_factory: Callable[[], ActionRunner] = ActionRunner,
        cancel_wait: float = 5.0,
    ) -> None:
        self._channel = channel
        self._runner_factory = runner_factory
        self._cancel_wait = cancel_wait

    def start(self, targets: Iterable[ScrapeTarget]) -> ScrapeHandle:
        """Validate ``targets`` and start scraping them.

        Raises ConfigValidationError before any loop is started.
        """
        resolved = validate_targets(targets)
        handle = ScrapeHandle(
            loops=[TargetLoop(t, self._runner_factory(), self._channel) for t in resolved]
        )
        for loop in handle.loops:
            loop.start()
        logger.info("scheduler started %d target loop(s)", len(handle.loops))
        return handle

    def stop(self, handle: ScrapeHandle, grace: float = 5.0) -> bool:
        """Stop every loop, cancelling the ones still busy after ``grace`` seconds.

        Returns True when all loops have reached the stopped state.
        """
        for loop in handle.loops:
            loop.stop()

        deadline = time.monotonic() + grace
        for loop in handle.loops:
            loop.join(max(0.0, deadline - time.monotonic()))

        stragglers = [loop for loop in handle.loops if loop.is_alive()]
        if stragglers:
            logger.warning(
                "grace period of %.1fs elapsed, cancelling %d target(s): %s",
                grace,
                len(stragglers),
                ", ".join(loop.target.id for loop in stragglers),
            )
            for loop in stragglers:
                loop.cancel()
            for loop in stragglers:
                loop.join(self._cancel_wait)

        handle.stopped = True
        alive = [loop.target.id for loop in handle.loops if loop.is_alive()]
        if alive:
            logger.error("target loop(s) did not stop: %s", ", ".join(alive))
            return False
        logger.info("scheduler stopped")
        return True

    def scrape_now(self, handle: ScrapeHandle) -> None:
        """Request an unscheduled scrape of every target."""
        if handle.stopped:
            return
        for loop in handle.loops:
            loop.trigger()
