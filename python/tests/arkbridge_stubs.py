"""Test doubles shared by the arkbridge tests."""

from __future__ import annotations

import threading
import time
from typing import Any, Callable, Dict, List, Optional, Tuple

from arkbridge.protocol import reply_tag_for
from arkbridge.transport import TransportError


def wait_until(predicate: Callable[[], Any], timeout: float = 2.0, interval: float = 0.01) -> Any:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        value = predicate()
        if value:
            return value
        time.sleep(interval)
    return predicate()


class RecordingChannel:
    """Stands in for ``CommChannel``; records every outbound command."""

    def __init__(self) -> None:
        self.sent: List[Tuple[str, Dict[str, Any]]] = []
        self.opened: List[Tuple[str, str]] = []
        self.closed: List[str] = []
        self.log_levels: List[str] = []
        self.fail_with: Optional[Exception] = None
        self._cond = threading.Condition()

    def comm_msg(self, comm_id: str, data: Dict[str, Any]) -> None:
        if self.fail_with is not None:
            raise self.fail_with
        with self._cond:
            self.sent.append((comm_id, data))
            self._cond.notify_all()

    def comm_open(self, comm_id: str, target_name: str, data: Any = None) -> None:
        self.opened.append((comm_id, target_name))

    def comm_close(self, comm_id: str, data: Any = None) -> None:
        self.closed.append(comm_id)

    def reload_log_level(self, level: str) -> None:
        self.log_levels.append(level)

    def requests(self, method: Optional[str] = None) -> List[Dict[str, Any]]:
        with self._cond:
            return [data for _, data in self.sent if method is None or data.get("method") == method]

    def wait_for(self, count: int, method: Optional[str] = None, timeout: float = 2.0) -> List[Dict[str, Any]]:
        deadline = time.monotonic() + timeout
        with self._cond:
            while True:
                found = [data for _, data in self.sent if method is None or data.get("method") == method]
                remaining = deadline - time.monotonic()
                if len(found) >= count or remaining <= 0:
                    return found
                self._cond.wait(remaining)


class AutoReplyChannel(RecordingChannel):
    """Answers every request synchronously through ``engine.handle_message``.

    ``handler(method, params)`` returns the result; raising ``KernelFault``
    turns into an ``error`` reply. With ``legacy=True`` replies carry only
    the reply discriminant instead of echoing the request id.
    """

    def __init__(self, handler: Callable[[str, Dict[str, Any]], Any], *, legacy: bool = False) -> None:
        super().__init__()
        self.handler = handler
        self.legacy = legacy
        self.engine = None

    def comm_msg(self, comm_id: str, data: Dict[str, Any]) -> None:
        super().comm_msg(comm_id, data)
        method = data["method"]
        try:
            reply: Dict[str, Any] = {"result": self.handler(method, data.get("params") or {})}
        except KernelFault as exc:
            reply = {"error": {"code": exc.code, "message": str(exc)}}
        if self.legacy:
            reply["method"] = reply_tag_for(method)
        else:
            reply.update(jsonrpc="2.0", id=data["id"])
        self.engine.handle_message(comm_id, reply)


class KernelFault(Exception):
    def __init__(self, message: str, code: int = -32000) -> None:
        super().__init__(message)
        self.code = code


class BrokenChannel(RecordingChannel):
    def __init__(self) -> None:
        super().__init__()
        self.fail_with = TransportError("sidecar not running")


class FakeTimer:
    """Drop-in for ``threading.Timer`` that only fires when told to."""

    def __init__(self, interval: float, function: Callable[..., Any], args: Any = None, kwargs: Any = None) -> None:
        self.interval = interval
        self.function = function
        self.args = tuple(args or ())
        self.kwargs = dict(kwargs or {})
        self.daemon = False
        self.started = False
        self.cancelled = False

    def start(self) -> None:
        self.started = True

    def cancel(self) -> None:
        self.cancelled = True

    def fire(self) -> None:
        self.function(*self.args, **self.kwargs)


class TimerFactory:
    def __init__(self) -> None:
        self.timers: List[FakeTimer] = []

    def __call__(self, interval: float, function: Callable[..., Any], args: Any = None, kwargs: Any = None) -> FakeTimer:
        timer = FakeTimer(interval, function, args=args, kwargs=kwargs)
        self.timers.append(timer)
        return timer

    @property
    def live(self) -> List[FakeTimer]:
        return [timer for timer in self.timers if not timer.cancelled]


class ManualSpawn:
    """Collects worker targets instead of starting threads."""

    def __init__(self) -> None:
        self.targets: List[Tuple[Callable[[], None], str]] = []

    def __call__(self, target: Callable[[], None], name: str) -> None:
        self.targets.append((target, name))

    def run_all(self) -> None:
        while self.targets:
            target, _ = self.targets.pop(0)
            target()


def inline_spawn(target: Callable[[], None], name: str) -> None:
    target()
