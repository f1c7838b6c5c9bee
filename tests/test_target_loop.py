"""Tests for the TargetLoop class and its schedule arithmetic."""

import threading
import time
import unittest

from debugbunny.channel import ScrapeChannel
from debugbunny.errors import ActionCancelled
from debugbunny.models import SUCCESS, CommandAction, ScrapeOutcome, ScrapeTarget
from debugbunny.target_loop import STOPPED, TargetLoop, next_slot


class FakeRunner:
    """Runner double that sleeps for ``duration`` and records call times."""

    def __init__(self, duration: float = 0.0):
        self.duration = duration
        self.starts = []
        self.active = 0
        self.max_active = 0
        self.closed = False
        self._lock = threading.Lock()

    def run(self, action, deadline, target_id="", cancel=None):
        with self._lock:
            self.active += 1
            self.max_active = max(self.max_active, self.active)
        self.starts.append(time.monotonic())
        try:
            if cancel is not None and cancel.wait(self.duration):
                raise ActionCancelled(target_id)
            if cancel is None:
                time.sleep(self.duration)
        finally:
            with self._lock:
                self.active -= 1
        return ScrapeOutcome(
            target_id=target_id,
            kind="command",
            started_at=time.time(),
            duration_ms=int(self.duration * 1000),
            outcome=SUCCESS,
            payload=b"ok",
        )

    def close(self):
        self.closed = True


def _target(interval=0.1, timeout=0.05):
    return ScrapeTarget(id="t", interval=interval, timeout=timeout, action=CommandAction("true"))


def _drain(channel):
    items = []
    while channel.qsize():
        items.append(channel.receive())
    return items


class TestNextSlot(unittest.TestCase):
    """Verify the fixed start-to-start schedule."""

    def test_next_slot_after_short_action(self):
        """A short action keeps the next tick one interval after the anchor."""
        self.assertAlmostEqual(next_slot(10.0, 1.0, 10.3), 11.0)

    def test_overrun_skips_missed_slots(self):
        """An overrun lands on the first free slot without catching up."""
        self.assertAlmostEqual(next_slot(10.0, 1.0, 12.5), 13.0)

    def test_exact_boundary_moves_to_following_slot(self):
        """A slot that is exactly now is already considered taken."""
        self.assertAlmostEqual(next_slot(10.0, 1.0, 11.0), 12.0)


class TestTargetLoop(unittest.TestCase):
    """Verify tick cadence, overlap protection, triggering and stopping."""

    def test_ticks_are_spaced_by_interval(self):
        """Fast actions tick at the configured interval."""
        runner = FakeRunner(duration=0.01)
        channel = ScrapeChannel()
        loop = TargetLoop(_target(interval=0.1), runner, channel)
        loop.start()
        time.sleep(0.55)
        loop.stop()
        self.assertTrue(loop.join(1.0))

        self.assertGreaterEqual(len(runner.starts), 5)
        gaps = [b - a for a, b in zip(runner.starts, runner.starts[1:])]
        for gap in gaps:
            self.assertAlmostEqual(gap, 0.1, delta=0.04)
        self.assertEqual(len(_drain(channel)), len(runner.starts))

    def test_outcomes_carry_target_configuration(self):
        """Each forwarded outcome says which interval, timeout and action produced it."""
        channel = ScrapeChannel()
        loop = TargetLoop(_target(interval=0.1, timeout=0.05), FakeRunner(), channel)
        loop.start()
        time.sleep(0.05)
        loop.stop()
        self.assertTrue(loop.join(1.0))

        outcome = _drain(channel)[0]
        self.assertEqual(
            outcome.target,
            {"interval": 0.1, "timeout": 0.05, "action": {"kind": "command", "path": "true", "args": []}},
        )

    def test_default_timeout_is_reported(self):
        """A target without a timeout reports the default it ran with."""
        channel = ScrapeChannel()
        target = ScrapeTarget(id="t", interval=5.0, action=CommandAction("true"))
        loop = TargetLoop(target, FakeRunner(), channel)
        loop.start()
        time.sleep(0.05)
        loop.stop()
        self.assertTrue(loop.join(1.0))
        self.assertEqual(_drain(channel)[0].target["timeout"], 2.0)

    def test_slow_action_never_overlaps(self):
        """An action longer than the interval delays the next tick."""
        runner = FakeRunner(duration=0.15)
        channel = ScrapeChannel()
        loop = TargetLoop(_target(interval=0.1), runner, channel)
        loop.start()
        time.sleep(0.7)
        loop.stop()
        self.assertTrue(loop.join(1.0))

        self.assertEqual(runner.max_active, 1)
        gaps = [b - a for a, b in zip(runner.starts, runner.starts[1:])]
        for gap in gaps:
            self.assertGreaterEqual(gap, 0.15)
            self.assertLess(gap, 0.3)

    def test_stop_prevents_new_ticks_and_closes_runner(self):
        """After stop() no tick starts and the loop ends in the stopped state."""
        runner = FakeRunner()
        loop = TargetLoop(_target(interval=0.05), runner, ScrapeChannel())
        loop.start()
        time.sleep(0.12)
        loop.stop()
        self.assertTrue(loop.join(1.0))
        count = len(runner.starts)
        time.sleep(0.15)
        self.assertEqual(len(runner.starts), count)
        self.assertEqual(loop.state, STOPPED)
        self.assertTrue(runner.closed)

    def test_trigger_runs_out_of_schedule(self):
        """trigger() scrapes immediately instead of waiting for the interval."""
        runner = FakeRunner()
        loop = TargetLoop(_target(interval=5.0, timeout=1.0), runner, ScrapeChannel())
        loop.start()
        time.sleep(0.1)
        self.assertEqual(len(runner.starts), 1)
        loop.trigger()
        time.sleep(0.1)
        loop.stop()
        loop.join(1.0)
        self.assertEqual(len(runner.starts), 2)

    def test_cancel_interrupts_running_action(self):
        """cancel() aborts an in-flight action and stops the loop."""
        runner = FakeRunner(duration=10.0)
        channel = ScrapeChannel()
        loop = TargetLoop(_target(interval=20.0, timeout=10.0), runner, channel)
        loop.start()
        time.sleep(0.1)
        loop.cancel()
        self.assertTrue(loop.join(1.0))
        self.assertEqual(channel.qsize(), 0)

    def test_closed_channel_stops_loop(self):
        """A loop whose channel was closed stops after its next tick."""
        channel = ScrapeChannel()
        channel.close()
        loop = TargetLoop(_target(interval=0.05), FakeRunner(), channel)
        loop.start()
        self.assertTrue(loop.join(1.0))
        self.assertEqual(loop.ticks, 1)


if __name__ == "__main__":
    unittest.main()
