from __future__ import annotations

import base64
import hashlib
import json
import logging
import threading
from typing import Any, BinaryIO, Callable, Dict, List, Optional

import zstandard

from .channel import ScrapeChannel
from .compression import DEFAULT_ZSTD_LEVEL, NONE, ZSTD, compress
from .encoder import encode
from .errors import EncodingError, SinkError
from .models import SUCCESS, LogRecord

logger = logging.getLogger(__name__)

# A base64-encoded chunk of this size plus its metadata fits a 4096 byte
# journald message: 2922 * 4 / 3 == 3896.
JOURNALD_CHUNK_SIZE = 2922


class CompressingWriter:
    """Writes log records as JSON lines to an append-only binary sink.

    Success payloads are compressed into an independent frame and embedded as
    base64. With ``chunk_size`` set, larger payloads are split over
    continuation lines that immediately follow their record.

    ``consume`` drains a ScrapeChannel on a background thread, one record at
    a time. A failing sink drops the record and reports through
    ``on_sink_error``; the first successful write afterwards reports through
    ``on_sink_ok``.
    """

    def __init__(
        self,
        sink: BinaryIO,
        compression: str = ZSTD,
        level: int = DEFAULT_ZSTD_LEVEL,
        chunk_size: Optional[int] = None,
        on_sink_error: Optional[Callable[[SinkError], None]] = None,
        on_sink_ok: Optional[Callable[[], None]] = None,
    ) -> None:
        if compression not in (ZSTD, NONE):
            raise ValueError(f"unsupported compression: {compression!r}")
        if chunk_size is not None and chunk_size <= 0:
            raise ValueError("chunk_size must be positive")
        self._sink = sink
        self._compression = compression
        self._level = level
        self._chunk_size = chunk_size
        self._on_sink_error = on_sink_error
        self._on_sink_ok = on_sink_ok
        self._thread: Optional[threading.Thread] = None
        self._failing = False
        self.written = 0
        self.dropped = 0

    def write(self, record: LogRecord) -> None:
        """Frame ``record`` and append it to the sink. Raises SinkError."""
        try:
            data = b"".join(self.frame(record))
        except (TypeError, ValueError, zstandard.ZstdError) as exc:
            raise EncodingError(f"cannot frame record of {record.target_id!r}: {exc}") from exc
        try:
            self._sink.write(data)
            self._sink.flush()
        except (OSError, ValueError) as exc:
            raise SinkError(f"{type(exc).__name__}: {exc}") from exc

    def frame(self, record: LogRecord) -> List[bytes]:
        """Render ``record`` as one line, plus its chunk lines if it is split."""
        line: Dict[str, Any] = {
            "target_id": record.target_id,
            "timestamp": record.timestamp,
            "outcome": record.outcome,
            "kind": record.kind,
            "duration_ms": record.duration_ms,
        }
        if record.error is not None:
            line["error"] = record.error
        if record.meta:
            line["meta"] = record.meta
        if record.target:
            line["target"] = record.target

        if record.outcome != SUCCESS or record.payload is None:
            return [_dump(line)]

        compressed = compress(record.payload, self._compression, self._level)
        digest = hashlib.sha256(compressed).hexdigest()
        line["compression"] = self._compression
        line["uncompressed_size"] = len(record.payload)
        line["payload_sha256"] = digest

        if self._chunk_size is None or len(compressed) <= self._chunk_size:
            line["payload"] = _b64(compressed)
            return [_dump(line)]

        pieces = [compressed[i:i + self._chunk_size] for i in range(0, len(compressed), self._chunk_size)]
        line["chunks"] = len(pieces)
        lines = [_dump(line)]
        total = len(compressed)
        for idx, piece in enumerate(pieces):
            lines.append(_dump({
                "chunk_of": digest,
                "remaining": total - idx * self._chunk_size,
                "data": _b64(piece),
            }))
        return lines

    def consume(self, channel: ScrapeChannel) -> threading.Thread:
        """Start draining ``channel`` until it is closed."""
        if self._thread is not None:
            raise RuntimeError("writer is already consuming")
        self._thread = threading.Thread(target=self._drain, args=(channel,), name="debugbunny-writer", daemon=True)
        self._thread.start()
        return self._thread

    def join(self, timeout: Optional[float] = None) -> bool:
        if self._thread is None:
            return True
        self._thread.join(timeout)
        return not self._thread.is_alive()

    def _drain(self, channel: ScrapeChannel) -> None:
        while True:
            outcome = channel.receive()
            if outcome is None:
                break
            try:
                self.write(encode(outcome))
            except EncodingError as exc:
                self.dropped += 1
                logger.error("dropping outcome of target %s: %s", outcome.target_id, exc)
                continue
            except SinkError as exc:
                self.dropped += 1
                if not self._failing:
                    self._failing = True
                    logger.error("sink write failed, dropping records until it recovers: %s", exc)
                self._notify(self._on_sink_error, exc)
                continue
            except Exception:  # noqa: BLE001
                # The writer must outlive any single record.
                self.dropped += 1
                logger.exception("dropping outcome of target %s", getattr(outcome, "target_id", "?"))
                continue

            self.written += 1
            if self._failing:
                self._failing = False
                logger.warning("sink recovered after dropping %d record(s)", self.dropped)
                self._notify(self._on_sink_ok)
        logger.debug("writer drained: %d written, %d dropped", self.written, self.dropped)

    @staticmethod
    def _notify(callback: Optional[Callable[..., None]], *args: Any) -> None:
        if callback is None:
            return
        try:
            callback(*args)
        except Exception:  # noqa: BLE001
            logger.exception("sink state callback failed")


def _b64(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


def _dump(obj: Dict[str, Any]) -> bytes:
    return (json.dumps(obj, ensure_ascii=False, separators=(",", ":")) + "\n").encode("utf-8")
