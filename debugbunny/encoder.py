from __future__ import annotations

import datetime as _dt

from .errors import EncodingError
from .models import OUTCOMES, SUCCESS, LogRecord, ScrapeOutcome


def encode(outcome: ScrapeOutcome) -> LogRecord:
    """Turn an outcome into a log record without touching the payload bytes.

    Timeouts and failures never carry a payload; their error description is
    kept (or derived from the outcome kind when the runner gave none).
    """
    if outcome.outcome not in OUTCOMES:
        raise EncodingError(f"unknown outcome {outcome.outcome!r} for target {outcome.target_id!r}")
    if not outcome.target_id:
        raise EncodingError("outcome has no target id")

    try:
        timestamp = _format_timestamp(outcome.started_at)
    except (OverflowError, OSError, ValueError, TypeError) as exc:
        raise EncodingError(f"invalid start time {outcome.started_at!r}: {exc}") from exc

    if outcome.outcome == SUCCESS:
        if not isinstance(outcome.payload, (bytes, bytearray, memoryview)):
            raise EncodingError(f"success outcome of {outcome.target_id!r} has no payload")
        payload = bytes(outcome.payload)
        error = None
    else:
        payload = None
        error = outcome.error or outcome.outcome

    return LogRecord(
        target_id=outcome.target_id,
        timestamp=timestamp,
        outcome=outcome.outcome,
        kind=outcome.kind,
        duration_ms=max(0, int(outcome.duration_ms)),
        payload=payload,
        meta=dict(outcome.meta),
        error=error,
        target=dict(outcome.target),
    )


def _format_timestamp(epoch_secs: float) -> str:
    when = _dt.datetime.fromtimestamp(epoch_secs, tz=_dt.timezone.utc)
    return when.isoformat(timespec="milliseconds")
