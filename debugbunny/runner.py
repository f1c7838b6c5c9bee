from __future__ import annotations

import logging
import os
import signal
import socket
import subprocess
import threading
import time
from typing import Any, Dict, Optional, Tuple

import requests
from curl_cffi import requests as curl_requests

from .errors import ActionCancelled, ActionFailure, ActionTimeout
from .models import FAILURE, SUCCESS, TIMEOUT, Action, CommandAction, HttpAction, ScrapeOutcome

logger = logging.getLogger(__name__)

Result = Tuple[bytes, Dict[str, Any]]


class ActionRunner:
    """Executes a single action under a deadline and reports a ScrapeOutcome.

    - Any HTTP response (whatever its status) and any process exit (whatever
      its code) is a success. Only the lack of a result is a failure.
    - The deadline covers the whole invocation, including reading the body or
      collecting the process output.
    - Exactly one connection or child process is used per call and it is
      released on every exit path.
    - Nothing is retried; the next tick is the retry.
    - A command's payload is its stdout followed by its stderr, both as raw
      bytes; ``stdout_size`` and ``stderr_size`` in the metadata split them.

    A runner owns a ``requests.Session`` and is meant to be used by a single
    thread; the scheduler builds one per target loop.
    """

    def __init__(
        self,
        session: Optional[requests.Session] = None,
        poll_interval: float = 0.05,
        read_size: int = 16 * 1024,
    ) -> None:
        self._session = session or requests.Session()
        self._poll_interval = poll_interval
        self._read_size = read_size

    def run(
        self,
        action: Action,
        deadline: float,
        target_id: str = "",
        cancel: Optional[threading.Event] = None,
    ) -> ScrapeOutcome:
        """Run ``action`` for at most ``deadline`` seconds.

        Raises ActionCancelled when ``cancel`` is set while the action is in
        flight; no outcome exists for such an invocation.
        """
        if deadline <= 0:
            raise ValueError("deadline must be positive")
        if not isinstance(action, (HttpAction, CommandAction)):
            raise TypeError(f"unsupported action: {type(action).__name__}")

        started_at = time.time()
        start = time.monotonic()
        expires_at = start + deadline

        def outcome(
            kind: str,
            payload: Optional[bytes] = None,
            meta: Optional[Dict[str, Any]] = None,
            error: Optional[str] = None,
        ) -> ScrapeOutcome:
            return ScrapeOutcome(
                target_id=target_id,
                kind=action.kind,
                started_at=started_at,
                duration_ms=int((time.monotonic() - start) * 1000),
                outcome=kind,
                payload=payload,
                meta=meta or {},
                error=error,
            )

        try:
            if isinstance(action, HttpAction):
                payload, meta = self._fetch(action, expires_at, cancel)
            else:
                payload, meta = self._execute(action, expires_at, cancel)
        except ActionCancelled:
            raise
        except ActionTimeout:
            return outcome(TIMEOUT, error=f"deadline of {deadline:.3f}s exceeded")
        except ActionFailure as exc:
            return outcome(FAILURE, error=str(exc))
        except Exception as exc:  # noqa: BLE001
            return outcome(FAILURE, error=f"{type(exc).__name__}: {exc}")
        return outcome(SUCCESS, payload=payload, meta=meta)

    def close(self) -> None:
        self._session.close()

    # HTTP

    def _fetch(self, action: HttpAction, expires_at: float, cancel: Optional[threading.Event]) -> Result:
        if action.impersonate:
            return self._fetch_impersonated(action, expires_at)

        remaining = _remaining(expires_at)
        # One connection per invocation; nothing is kept alive between ticks.
        headers = {"Connection": "close", **action.headers}
        try:
            response = self._session.request(
                action.method,
                action.url,
                headers=headers,
                timeout=(remaining, remaining),
                stream=True,
            )
        except requests.Timeout as exc:
            raise ActionTimeout(str(exc)) from exc
        except requests.RequestException as exc:
            if _expired(expires_at):
                raise ActionTimeout(str(exc)) from exc
            raise ActionFailure(f"{type(exc).__name__}: {exc}") from exc

        with response, _Watchdog(_connection_socket(response), expires_at, cancel, self._poll_interval) as watchdog:
            body = bytearray()
            try:
                for chunk in response.iter_content(chunk_size=self._read_size):
                    body.extend(chunk)
                    watchdog.check(action.url)
            except (ActionCancelled, ActionTimeout):
                raise
            except requests.RequestException as exc:
                watchdog.check(str(exc))
                # requests reports read timeouts on the body as ConnectionError.
                if isinstance(exc, requests.Timeout):
                    raise ActionTimeout(str(exc)) from exc
                raise ActionFailure(f"{type(exc).__name__}: {exc}") from exc
            except Exception as exc:
                # urllib3 errors that requests does not wrap.
                watchdog.check(f"{type(exc).__name__}: {exc}")
                raise
            # A shut down socket ends a read-until-close body without an error.
            watchdog.check(action.url)

            meta = {
                "status": response.status_code,
                "reason": response.reason,
                "headers": dict(response.headers),
            }
        return bytes(body), meta

    def _fetch_impersonated(self, action: HttpAction, expires_at: float) -> Result:
        with curl_requests.Session() as session:
            try:
                response = session.request(
                    method=action.method,
                    url=action.url,
                    headers=action.headers or None,
                    impersonate=action.impersonate,
                    timeout=_remaining(expires_at),
                )
            except Exception as exc:  # noqa: BLE001
                if _expired(expires_at):
                    raise ActionTimeout(str(exc)) from exc
                raise ActionFailure(f"{type(exc).__name__}: {exc}") from exc
            meta = {
                "status": response.status_code,
                "reason": response.reason,
                "headers": dict(response.headers),
            }
            return response.content, meta

    # Commands

    def _execute(self, action: CommandAction, expires_at: float, cancel: Optional[threading.Event]) -> Result:
        try:
            proc = subprocess.Popen(
                action.argv,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                start_new_session=True,
            )
        except OSError as exc:
            raise ActionFailure(f"cannot spawn {action.path!r}: {exc}") from exc

        try:
            while True:
                remaining = expires_at - time.monotonic()
                if remaining <= 0:
                    raise ActionTimeout(action.path)
                step = remaining if cancel is None else min(remaining, self._poll_interval)
                try:
                    stdout, stderr = proc.communicate(timeout=step)
                    break
                except subprocess.TimeoutExpired:
                    if cancel is not None and cancel.is_set():
                        raise ActionCancelled(action.path)
        finally:
            if proc.returncode is None:
                _kill_process_group(proc)
                proc.communicate()

        # Both streams travel in the payload; the sizes split them again.
        meta = {
            "exit_code": proc.returncode,
            "stdout_size": len(stdout),
            "stderr_size": len(stderr),
        }
        return stdout + stderr, meta


def _remaining(expires_at: float) -> float:
    remaining = expires_at - time.monotonic()
    if remaining <= 0:
        raise ActionTimeout("deadline expired before the request was sent")
    return remaining


def _expired(expires_at: float) -> bool:
    return time.monotonic() >= expires_at


def _connection_socket(response: requests.Response) -> Optional[socket.socket]:
    # Streamed responses keep their urllib3 connection until the body is read.
    connection = getattr(response.raw, "connection", None)
    return getattr(connection, "sock", None)


class _Watchdog:
    """Bounds a blocking body read by the deadline and the cancel event.

    A helper thread shuts the socket down once ``expires_at`` passes or
    ``cancel`` is set, which wakes a read that is stuck waiting for more
    bytes. ``check`` then turns that into ActionTimeout or ActionCancelled.
    """

    def __init__(
        self,
        sock: Optional[socket.socket],
        expires_at: float,
        cancel: Optional[threading.Event],
        poll_interval: float,
    ) -> None:
        self._sock = sock
        self._expires_at = expires_at
        self._cancel = cancel
        self._poll_interval = poll_interval
        self._done = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def __enter__(self) -> "_Watchdog":
        if self._sock is not None:
            self._thread = threading.Thread(target=self._watch, name="debugbunny-watchdog", daemon=True)
            self._thread.start()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self._done.set()
        if self._thread is not None:
            self._thread.join()

    def check(self, context: str) -> None:
        if self._cancel is not None and self._cancel.is_set():
            raise ActionCancelled(context)
        if _expired(self._expires_at):
            raise ActionTimeout(context)

    def _watch(self) -> None:
        while True:
            remaining = self._expires_at - time.monotonic()
            if remaining <= 0 or (self._cancel is not None and self._cancel.is_set()):
                break
            step = remaining if self._cancel is None else min(remaining, self._poll_interval)
            if self._done.wait(step):
                return
        try:
            self._sock.shutdown(socket.SHUT_RDWR)
        except OSError:
            # Already closed by the peer or by the response itself.
            return
        logger.debug("aborted a response read past its deadline or on cancel")


def _kill_process_group(proc: subprocess.Popen) -> None:
    if hasattr(os, "killpg"):
        try:
            os.killpg(proc.pid, signal.SIGKILL)
        except ProcessLookupError:
            pass
    else:
        proc.kill()
    logger.debug("killed process group of pid %d", proc.pid)
