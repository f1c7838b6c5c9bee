from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, ClassVar, Dict, Optional, Tuple, Union

SUCCESS = "success"
TIMEOUT = "timeout"
FAILURE = "failure"

OUTCOMES = (SUCCESS, TIMEOUT, FAILURE)

DEFAULT_TIMEOUT_SECS = 2.0


@dataclass(frozen=True)
class HttpAction:
    kind: ClassVar[str] = "http"

    url: str
    headers: Dict[str, str] = field(default_factory=dict)
    method: str = "GET"
    impersonate: Optional[str] = None

    def describe(self) -> Dict[str, Any]:
        # Header values often hold credentials; only their names are logged.
        info: Dict[str, Any] = {"kind": self.kind, "method": self.method, "url": self.url}
        if self.headers:
            info["headers"] = sorted(self.headers)
        if self.impersonate:
            info["impersonate"] = self.impersonate
        return info


@dataclass(frozen=True)
class CommandAction:
    kind: ClassVar[str] = "command"

    path: str
    args: Tuple[str, ...] = ()

    @property
    def argv(self) -> list[str]:
        return [self.path, *self.args]

    def describe(self) -> Dict[str, Any]:
        return {"kind": self.kind, "path": self.path, "args": list(self.args)}


Action = Union[HttpAction, CommandAction]


@dataclass(frozen=True)
class ScrapeTarget:
    """A named action that is scraped every ``interval`` seconds.

    ``timeout`` bounds a single invocation. It is resolved against the
    interval when the target set is validated, see
    :func:`debugbunny.config.validate_targets`.
    """

    id: str
    interval: float
    action: Action
    timeout: Optional[float] = None

    def describe(self) -> Dict[str, Any]:
        """The configuration every log record of this target carries."""
        return {"interval": self.interval, "timeout": self.timeout, "action": self.action.describe()}


@dataclass(frozen=True)
class ScrapeOutcome:
    target_id: str
    kind: str
    started_at: float
    duration_ms: int
    outcome: str
    payload: Optional[bytes] = None
    meta: Dict[str, Any] = field(default_factory=dict)
    error: Optional[str] = None
    target: Dict[str, Any] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return self.outcome == SUCCESS


@dataclass(frozen=True)
class LogRecord:
    target_id: str
    timestamp: str
    outcome: str
    kind: str
    duration_ms: int
    payload: Optional[bytes] = None
    meta: Dict[str, Any] = field(default_factory=dict)
    error: Optional[str] = None
    target: Dict[str, Any] = field(default_factory=dict)
