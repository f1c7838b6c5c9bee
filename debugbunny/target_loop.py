from __future__ import annotations

import logging
import math
import threading
import time
from dataclasses import replace
from typing import Optional

from .channel import ScrapeChannel
from .errors import ActionCancelled, ChannelClosed
from .models import DEFAULT_TIMEOUT_SECS, ScrapeTarget
from .runner import ActionRunner

logger = logging.getLogger(__name__)

IDLE = "idle"
RUNNING = "running"
STOPPED = "stopped"


def next_slot(anchor: float, interval: float, now: float) -> float:
    """First point of the schedule ``anchor + k * interval`` strictly after ``now``.

    Slots that were missed while an action overran are skipped rather than
    caught up.
    """
    if now < anchor:
        return anchor + interval
    return anchor + interval * (math.floor((now - anchor) / interval) + 1)


class TargetLoop:
    """Drives one scrape target on its own thread.

    Ticks follow a fixed start-to-start schedule. The same target never has
    two invocations in flight: a tick that overruns its interval pushes the
    next one to the following free slot. Every outcome goes to the channel,
    tagged with the target configuration that produced it.
    """

    def __init__(self, target: ScrapeTarget, runner: ActionRunner, channel: ScrapeChannel) -> None:
        self._target = target
        self._runner = runner
        self._channel = channel

        self._stop = threading.Event()
        self._cancel = threading.Event()
        self._triggered = threading.Event()
        self._wakeup = threading.Event()

        self._state = IDLE
        self._ticks = 0
        self._thread = threading.Thread(target=self._run, name=f"target-{target.id}", daemon=True)

    @property
    def target(self) -> ScrapeTarget:
        return self._target

    @property
    def state(self) -> str:
        return self._state

    @property
    def ticks(self) -> int:
        return self._ticks

    def start(self) -> None:
        self._thread.start()

    def stop(self) -> None:
        """Finish the current tick, if any, and do not start another one."""
        self._stop.set()
        self._wakeup.set()

    def cancel(self) -> None:
        """Stop and abort the action currently in flight."""
        self._cancel.set()
        self.stop()

    def trigger(self) -> None:
        """Scrape as soon as the loop is idle and restart the schedule from there."""
        self._triggered.set()
        self._wakeup.set()

    def join(self, timeout: Optional[float] = None) -> bool:
        """Wait for the loop thread; returns True once it has stopped."""
        if self._thread.ident is None:
            return True
        self._thread.join(timeout)
        return not self._thread.is_alive()

    def is_alive(self) -> bool:
        return self._thread.is_alive()

    def _run(self) -> None:
        target = self._target
        timeout = target.timeout or DEFAULT_TIMEOUT_SECS
        described = replace(target, timeout=timeout).describe()
        slot = time.monotonic()
        logger.debug("target %s: loop started (interval=%.3fs timeout=%.3fs)", target.id, target.interval, timeout)
        try:
            while not self._stop.is_set():
                delay = slot - time.monotonic()
                if delay > 0 and self._wakeup.wait(delay):
                    self._wakeup.clear()
                if self._stop.is_set():
                    break

                unscheduled = self._triggered.is_set()
                if unscheduled:
                    self._triggered.clear()
                elif time.monotonic() < slot:
                    continue

                started = time.monotonic()
                self._state = RUNNING
                try:
                    outcome = self._runner.run(target.action, timeout, target_id=target.id, cancel=self._cancel)
                except ActionCancelled:
                    logger.info("target %s: action cancelled during shutdown", target.id)
                    break
                finally:
                    self._state = IDLE
                self._ticks += 1
                outcome = replace(outcome, target=described)

                anchor = started if unscheduled else slot
                slot = next_slot(anchor, target.interval, time.monotonic())

                try:
                    self._channel.send(outcome, abort=self._cancel)
                except ChannelClosed:
                    logger.info("target %s: channel closed, stopping", target.id)
                    break
        except Exception:  # noqa: BLE001
            logger.exception("target %s: loop crashed", target.id)
        finally:
            self._state = STOPPED
            self._runner.close()
            logger.debug("target %s: loop stopped after %d ticks", target.id, self._ticks)
