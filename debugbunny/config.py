from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field, replace
from typing import Any, Dict, Iterable, List, Optional
from urllib.parse import urlsplit

from .errors import ConfigValidationError
from .models import DEFAULT_TIMEOUT_SECS, Action, CommandAction, HttpAction, ScrapeTarget

logger = logging.getLogger(__name__)

OVERFLOW_POLICIES = ("block", "drop")
COMPRESSIONS = ("zstd", "none")

_DURATION_RE = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*(ms|s|m|h)?\s*$")
_UNITS = {"ms": 0.001, "s": 1.0, "m": 60.0, "h": 3600.0, None: 1.0}


@dataclass(frozen=True)
class Config:
    targets: List[ScrapeTarget] = field(default_factory=list)
    channel_size: int = 0
    overflow: str = "block"
    compression: str = "zstd"
    grace_period: float = 5.0
    chunk_size: Optional[int] = None


def parse_duration(value: Any) -> float:
    """Convert ``30``, ``"30s"``, ``"250ms"``, ``"2m"`` or ``"1h"`` to seconds."""
    if isinstance(value, bool):
        raise ConfigValidationError(f"invalid duration: {value!r}")
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        match = _DURATION_RE.match(value)
        if match:
            return float(match.group(1)) * _UNITS[match.group(2)]
    raise ConfigValidationError(f"invalid duration: {value!r}")


def action_from_dict(raw: Dict[str, Any]) -> Action:
    kind = raw.get("kind")
    if kind == "http":
        if "url" not in raw:
            raise ConfigValidationError("http action requires 'url'")
        return HttpAction(
            url=raw["url"],
            headers=dict(raw.get("headers") or {}),
            method=str(raw.get("method") or "GET").upper(),
            impersonate=raw.get("impersonate"),
        )
    if kind == "command":
        if "path" not in raw:
            raise ConfigValidationError("command action requires 'path'")
        return CommandAction(path=raw["path"], args=tuple(str(a) for a in raw.get("args") or ()))
    raise ConfigValidationError(f"unknown action kind: {kind!r}")


def target_from_dict(raw: Dict[str, Any]) -> ScrapeTarget:
    for key in ("id", "interval", "action"):
        if key not in raw:
            raise ConfigValidationError(f"scrape target is missing '{key}'")
    timeout = raw.get("timeout")
    return ScrapeTarget(
        id=str(raw["id"]),
        interval=parse_duration(raw["interval"]),
        timeout=None if timeout is None else parse_duration(timeout),
        action=action_from_dict(raw["action"]),
    )


def config_from_dict(raw: Dict[str, Any]) -> Config:
    targets = [target_from_dict(t) for t in raw.get("targets") or []]
    overflow = raw.get("overflow", "block")
    if overflow not in OVERFLOW_POLICIES:
        raise ConfigValidationError(f"overflow must be one of {OVERFLOW_POLICIES}, got {overflow!r}")
    compression = raw.get("compression", "zstd")
    if compression not in COMPRESSIONS:
        raise ConfigValidationError(f"compression must be one of {COMPRESSIONS}, got {compression!r}")
    channel_size = int(raw.get("channel_size", 0))
    if channel_size < 0:
        raise ConfigValidationError("channel_size must be >= 0")
    chunk_size = raw.get("chunk_size")
    if chunk_size is not None and int(chunk_size) <= 0:
        raise ConfigValidationError("chunk_size must be positive")
    return Config(
        targets=validate_targets(targets),
        channel_size=channel_size,
        overflow=overflow,
        compression=compression,
        grace_period=parse_duration(raw.get("grace_period", 5.0)),
        chunk_size=None if chunk_size is None else int(chunk_size),
    )


def load_config(path: str) -> Config:
    with open(path, "r", encoding="utf-8") as f:
        try:
            raw = json.load(f)
        except json.JSONDecodeError as exc:
            raise ConfigValidationError(f"{path}: {exc}") from exc
    if not isinstance(raw, dict):
        raise ConfigValidationError(f"{path}: top-level value must be an object")
    return config_from_dict(raw)


def validate_targets(targets: Iterable[ScrapeTarget]) -> List[ScrapeTarget]:
    """Check a target set and return it with every timeout resolved.

    A missing timeout defaults to two seconds and a timeout longer than the
    interval is clamped to the interval.
    """
    seen: set[str] = set()
    resolved: List[ScrapeTarget] = []
    for target in targets:
        if not target.id:
            raise ConfigValidationError("scrape target id must not be empty")
        if target.id in seen:
            raise ConfigValidationError(f"duplicate scrape target id: {target.id!r}")
        seen.add(target.id)

        if target.interval <= 0:
            raise ConfigValidationError(f"{target.id}: interval must be positive")
        timeout = DEFAULT_TIMEOUT_SECS if target.timeout is None else target.timeout
        if timeout <= 0:
            raise ConfigValidationError(f"{target.id}: timeout must be positive")
        if timeout > target.interval:
            logger.warning(
                "target %s: timeout %.3fs exceeds interval %.3fs, clamping",
                target.id,
                timeout,
                target.interval,
            )
            timeout = target.interval

        _validate_action(target.id, target.action)
        resolved.append(replace(target, timeout=timeout))
    return resolved


def _validate_action(target_id: str, action: Action) -> None:
    if isinstance(action, HttpAction):
        parts = urlsplit(action.url)
        if parts.scheme not in ("http", "https") or not parts.netloc:
            raise ConfigValidationError(f"{target_id}: not a valid http(s) url: {action.url!r}")
        if not action.method:
            raise ConfigValidationError(f"{target_id}: http method must not be empty")
    elif isinstance(action, CommandAction):
        if not action.path:
            raise ConfigValidationError(f"{target_id}: command path must not be empty")
    else:
        raise ConfigValidationError(f"{target_id}: unsupported action {type(action).__name__}")
