from __future__ import annotations

import logging
import signal
import threading
from typing import BinaryIO, Callable, Iterable, Optional

from .channel import ScrapeChannel
from .compression import ZSTD
from .config import Config, validate_targets
from .errors import SinkError
from .models import ScrapeTarget
from .runner import ActionRunner
from .scheduler import ScrapeHandle, Scheduler
from .writer import CompressingWriter

logger = logging.getLogger(__name__)


class DebugBunny:
    """Starts and stops the scrape pipeline as a whole.

    Startup order is writer first, then target loops. Shutdown reverses it:
    loops are stopped (and cancelled after the grace period), then the channel
    is closed, and the writer drains whatever was already queued before the
    sink is closed. A loop that ignores cancellation cannot reach the sink:
    the closed channel refuses its outcome.
    """

    def __init__(
        self,
        targets: Iterable[ScrapeTarget],
        sink: BinaryIO,
        channel_size: int = 0,
        overflow: str = "block",
        compression: str = ZSTD,
        chunk_size: Optional[int] = None,
        grace_period: float = 5.0,
        close_sink: bool = False,
        drain_timeout: Optional[float] = None,
        runner_factory: Callable[[], ActionRunner] = ActionRunner,
        cancel_wait: float = 5.0,
    ) -> None:
        self._targets = validate_targets(targets)
        self._sink = sink
        self._close_sink = close_sink
        self._grace_period = grace_period
        self._drain_timeout = drain_timeout

        self._channel = ScrapeChannel(maxsize=channel_size, overflow=overflow)
        self._writer = CompressingWriter(
            sink,
            compression=compression,
            chunk_size=chunk_size,
            on_sink_error=self._sink_failed,
            on_sink_ok=self._sink_recovered,
        )
        self._scheduler = Scheduler(self._channel, runner_factory=runner_factory, cancel_wait=cancel_wait)

        self._handle: Optional[ScrapeHandle] = None
        self._lock = threading.Lock()
        self._degraded = threading.Event()
        self._shutdown_requested = threading.Event()
        self._stopped = False

    @classmethod
    def from_config(cls, config: Config, sink: BinaryIO, close_sink: bool = False) -> "DebugBunny":
        return cls(
            config.targets,
            sink,
            channel_size=config.channel_size,
            overflow=config.overflow,
            compression=config.compression,
            chunk_size=config.chunk_size,
            grace_period=config.grace_period,
            close_sink=close_sink,
        )

    @property
    def targets(self) -> list[ScrapeTarget]:
        return list(self._targets)

    @property
    def running(self) -> bool:
        return self._handle is not None and not self._stopped

    @property
    def degraded(self) -> bool:
        """True while the sink is rejecting writes."""
        return self._degraded.is_set()

    @property
    def dropped(self) -> int:
        """Outcomes that never reached the sink: refused by the channel or the writer."""
        return self._writer.dropped + self._channel.dropped

    @property
    def writer(self) -> CompressingWriter:
        return self._writer

    def start(self) -> "DebugBunny":
        with self._lock:
            if self._handle is not None:
                raise RuntimeError("already started")
            self._writer.consume(self._channel)
            self._handle = self._scheduler.start(self._targets)
        return self

    def scrape_now(self) -> None:
        """Scrape every target once, out of schedule."""
        if self._handle is not None:
            self._scheduler.scrape_now(self._handle)

    def request_shutdown(self) -> None:
        self._shutdown_requested.set()

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Block until a shutdown is requested; False if ``timeout`` elapsed first."""
        return self._shutdown_requested.wait(timeout)

    def stop(self, grace: Optional[float] = None) -> bool:
        """Stop scraping and flush. Returns True if every loop stopped cleanly."""
        with self._lock:
            if self._stopped:
                return True
            self._stopped = True
            self._shutdown_requested.set()
            grace = self._grace_period if grace is None else grace

            clean = True
            if self._handle is not None:
                clean = self._scheduler.stop(self._handle, grace)
            if not clean:
                # The writer still needs its end marker; the closed channel
                # refuses whatever the stuck loops send later.
                logger.error("closing the channel with target loop(s) still running, their late outcomes are dropped")
            self._channel.close()
            if not self._writer.join(timeout=self._drain_timeout):
                logger.error("writer did not drain in time, %d outcome(s) left", self._channel.qsize())
                clean = False

            if self._close_sink:
                try:
                    self._sink.close()
                except OSError as exc:
                    logger.error("closing sink failed: %s", exc)
            logger.info(
                "debugbunny stopped: %d record(s) written, %d dropped",
                self._writer.written,
                self.dropped,
            )
            return clean

    def install_signal_handlers(self) -> None:
        """Map SIGTERM/SIGINT to a shutdown request and SIGUSR1 to ``scrape_now``.

        Must be called from the main thread.
        """
        def _shutdown(signum, _frame):
            logger.info("received %s, shutting down", signal.Signals(signum).name)
            self.request_shutdown()

        signal.signal(signal.SIGTERM, _shutdown)
        signal.signal(signal.SIGINT, _shutdown)
        if hasattr(signal, "SIGUSR1"):
            signal.signal(signal.SIGUSR1, lambda _s, _f: self.scrape_now())

    def __enter__(self) -> "DebugBunny":
        return self.start()

    def __exit__(self, exc_type, exc, tb) -> None:
        self.stop()

    def _sink_failed(self, exc: SinkError) -> None:
        if not self._degraded.is_set():
            logger.warning("entering degraded mode, scrape results are dropped: %s", exc)
        self._degraded.set()

    def _sink_recovered(self) -> None:
        if self._degraded.is_set():
            logger.info("sink recovered, leaving degraded mode")
        self._degraded.clear()
