from __future__ import annotations

import base64
import binascii
import hashlib
import json
import logging
from typing import Any, Dict, Iterable, Iterator, Optional, Union

import zstandard

from .compression import decompress
from .errors import DecodeError

logger = logging.getLogger(__name__)

_RECORD_KEYS = ("target_id", "timestamp", "outcome")


def read_records(lines: Iterable[Union[bytes, str]]) -> Iterator[Dict[str, Any]]:
    """Yield the records of a log stream with their payload decompressed.

    Each yielded dict holds the record's fields with ``payload`` replaced by
    the original bytes under ``body`` (None for timeouts and failures).
    Command records additionally get ``stdout`` and ``stderr`` split out of
    the body.
    Lines that are not debugbunny records, such as unrelated journal
    entries, are skipped. Chunked payloads are reassembled and checked
    against ``payload_sha256``.
    """
    pending: Optional[Dict[str, Any]] = None
    parts: list[bytes] = []

    for lineno, raw in enumerate(lines, start=1):
        obj = _parse(raw, lineno)
        if obj is None:
            continue

        if "chunk_of" in obj:
            if pending is None or obj["chunk_of"] != pending.get("payload_sha256"):
                logger.warning("line %d: chunk without a matching record, skipped", lineno)
                continue
            parts.append(_b64decode(obj.get("data", ""), lineno))
            if len(parts) == pending["chunks"]:
                yield _finish(pending, b"".join(parts))
                pending, parts = None, []
            continue

        if pending is not None:
            raise DecodeError(
                f"line {lineno}: record of {pending['target_id']!r} is missing "
                f"{pending['chunks'] - len(parts)} chunk(s)"
            )

        if "chunks" in obj:
            pending, parts = obj, []
            continue

        compressed = _b64decode(obj["payload"], lineno) if "payload" in obj else None
        yield _finish(obj, compressed)

    if pending is not None:
        raise DecodeError(f"stream ended inside the chunks of {pending['target_id']!r}")


def _parse(raw: Union[bytes, str], lineno: int) -> Optional[Dict[str, Any]]:
    if isinstance(raw, bytes):
        raw = raw.decode("utf-8", errors="replace")
    raw = raw.strip()
    if not raw:
        return None
    try:
        obj = json.loads(raw)
    except json.JSONDecodeError:
        logger.debug("line %d: not json, skipped", lineno)
        return None
    if not isinstance(obj, dict):
        return None
    if "chunk_of" in obj or all(k in obj for k in _RECORD_KEYS):
        return obj
    return None


def _b64decode(value: str, lineno: int) -> bytes:
    try:
        return base64.b64decode(value, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise DecodeError(f"line {lineno}: invalid base64 payload: {exc}") from exc


def _finish(obj: Dict[str, Any], compressed: Optional[bytes]) -> Dict[str, Any]:
    record = {k: v for k, v in obj.items() if k not in ("payload", "chunks")}
    if compressed is None:
        record["body"] = None
        return record

    expected = obj.get("payload_sha256")
    if expected is not None and hashlib.sha256(compressed).hexdigest() != expected:
        raise DecodeError(f"payload of {obj['target_id']!r} does not match its sha256")
    try:
        record["body"] = decompress(compressed, obj.get("compression", "none"))
    except (zstandard.ZstdError, ValueError) as exc:
        raise DecodeError(f"cannot decompress payload of {obj['target_id']!r}: {exc}") from exc

    meta = obj.get("meta") or {}
    if obj.get("kind") == "command" and "stdout_size" in meta:
        body = record["body"]
        split = meta["stdout_size"]
        if not isinstance(split, int) or not 0 <= split <= len(body):
            raise DecodeError(f"stdout_size of {obj['target_id']!r} does not fit its payload")
        record["stdout"], record["stderr"] = body[:split], body[split:]
    return record
