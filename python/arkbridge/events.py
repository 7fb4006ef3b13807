"""Typed sidecar events and the fan-out event bus."""

from __future__ import annotations

import logging
import threading
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Callable, Deque, Dict, List, Optional, Tuple

from .protocol import EventRecord, Feed


logger = logging.getLogger(__name__)

EventHandler = Callable[["BaseEvent"], None]


def _as_dict(value: Any) -> Dict[str, Any]:
    return value if isinstance(value, dict) else {}


def _to_int(value: Any) -> Optional[int]:
    try:
        if value is None:
            return None
        return int(value)
    except (TypeError, ValueError):
        return None


_CAPABILITY_BY_TAG = {
    "ui_comm_open": "ui",
    "help_comm_open": "help",
    "variables_comm_open": "variables",
    "data_explorer_comm_open": "data_explorer",
}


def parse_event(record: EventRecord) -> BaseEvent:
    """Convert an ``EventRecord`` into its typed dataclass."""

    tag = record.event
    feed = record.feed
    common = dict(event=tag, feed=feed, comm_id=record.comm_id, data=record.data)

    if feed is Feed.COMM_OPEN:
        target = record.raw.get("target_name")
        return CommOpenEvent(
            **common,
            target_name=str(target) if target is not None else None,
            capability=_CAPABILITY_BY_TAG.get(tag),
        )
    if feed is Feed.COMM_MESSAGE:
        return CommMessageEvent(**common, message=_as_dict(record.data))
    if feed is Feed.COMM_CLOSE:
        return CommCloseEvent(**common)
    if tag == "error":
        return SidecarErrorEvent(**common, message=record.message or "unknown error")
    if tag == "kernel_status":
        return KernelStatusEvent(**common, status=record.status or "unknown")
    if tag == "show_html_file":
        params = _as_dict(_as_dict(record.data).get("params"))
        return ShowHtmlFileEvent(
            **common,
            params=params,
            path=str(params.get("path") or ""),
            title=str(params.get("title") or ""),
            destination=str(params.get("destination") or "viewer"),
            height=_to_int(params.get("height")) or 0,
        )
    if tag == "show_help":
        params = _as_dict(_as_dict(record.data).get("params"))
        return ShowHelpEvent(
            **common,
            params=params,
            content=str(params.get("content") or ""),
            kind=str(params.get("kind") or "html"),
            focus=bool(params.get("focus", False)),
        )
    if tag in {"display_data", "update_display_data"}:
        payload = record.data if isinstance(record.data, str) else ""
        return PlotDataEvent(**common, payload=payload, display_id=record.display_id)
    if tag == "lsp_port":
        return LspPortEvent(**common, port=_to_int(record.raw.get("port")))
    if tag == "httpgd_url":
        return UrlEvent(**common, url=record.url or "")
    return BaseEvent(**common)


@dataclass
class BaseEvent:
    event: str
    feed: Feed
    comm_id: Optional[str] = None
    data: Any = None


@dataclass
class CommOpenEvent(BaseEvent):
    target_name: Optional[str] = None
    # None for kernel-initiated comms (plots), otherwise the capability area.
    capability: Optional[str] = None


@dataclass
class CommMessageEvent(BaseEvent):
    message: Dict[str, Any] = field(default_factory=dict)


@dataclass
class CommCloseEvent(BaseEvent):
    pass


@dataclass
class SidecarErrorEvent(BaseEvent):
    message: str = ""


@dataclass
class KernelStatusEvent(BaseEvent):
    status: str = "unknown"


@dataclass
class ShowHtmlFileEvent(BaseEvent):
    params: Dict[str, Any] = field(default_factory=dict)
    path: str = ""
    title: str = ""
    destination: str = "viewer"
    height: int = 0


@dataclass
class ShowHelpEvent(BaseEvent):
    params: Dict[str, Any] = field(default_factory=dict)
    content: str = ""
    kind: str = "html"
    focus: bool = False


@dataclass
class PlotDataEvent(BaseEvent):
    payload: str = ""
    base64_data: str = ""
    mime_type: str = "image/png"
    display_id: Optional[str] = None


@dataclass
class LspPortEvent(BaseEvent):
    port: Optional[int] = None


@dataclass
class UrlEvent(BaseEvent):
    url: str = ""


@dataclass
class EventSubscription:
    """Filtered, queued delivery of bus events to one handler.

    ``queue_size=0`` makes the queue unbounded; bounded queues drop the
    oldest event when full.
    """

    feeds: Optional[List[Feed]] = None
    categories: Optional[List[str]] = None
    comm_id: Optional[str] = None
    queue_size: int = 256
    handler: EventHandler = lambda event: None
    _queue: Deque[Tuple[int, BaseEvent]] = field(init=False, default_factory=deque)
    _queue_lock: threading.Lock = field(init=False, default_factory=threading.Lock)
    _dispatch_lock: threading.Lock = field(init=False, default_factory=threading.Lock)
    dropped: int = field(init=False, default=0)

    def matches(self, event: BaseEvent) -> bool:
        feed_ok = not self.feeds or event.feed in self.feeds
        cat_ok = not self.categories or event.event in self.categories
        comm_ok = self.comm_id is None or event.comm_id == self.comm_id
        return feed_ok and cat_ok and comm_ok

    def push(self, event: BaseEvent, seq: int = 0) -> None:
        with self._queue_lock:
            if self.queue_size > 0 and len(self._queue) >= self.queue_size:
                # Drop oldest event to keep bus responsive
                self._queue.popleft()
                self.dropped += 1
            self._queue.append((seq, event))

    def _head_seq(self) -> Optional[int]:
        with self._queue_lock:
            return self._queue[0][0] if self._queue else None

    def _pop(self) -> Optional[BaseEvent]:
        with self._queue_lock:
            return self._queue.popleft()[1] if self._queue else None

    def _deliver(self, event: BaseEvent) -> None:
        try:
            self.handler(event)
        except Exception:
            logger.exception("event handler failed for %s", event.event)

    def dispatch(self) -> None:
        with self._dispatch_lock:
            while True:
                event = self._pop()
                if event is None:
                    break
                self._deliver(event)


class EventBus:
    """Fan-out filtered events to subscribers."""

    def __init__(self) -> None:
        self._subs: Dict[int, EventSubscription] = {}
        self._lock = threading.Lock()
        self._next_token = 1
        self._seq = 0
        self._pump_lock = threading.RLock()
        self._worker: Optional[threading.Thread] = None
        self._stop_event = threading.Event()
        self._wakeup = threading.Event()
        self._interval = 0.01

    def subscribe(self, sub: EventSubscription) -> int:
        with self._lock:
            token = self._next_token
            self._next_token += 1
            self._subs[token] = sub
            return token

    def on(
        self,
        handler: EventHandler,
        *,
        feeds: Optional[List[Feed]] = None,
        categories: Optional[List[str]] = None,
        comm_id: Optional[str] = None,
        queue_size: int = 256,
    ) -> int:
        """Shorthand for ``subscribe(EventSubscription(...))``."""
        return self.subscribe(
            EventSubscription(
                feeds=feeds,
                categories=categories,
                comm_id=comm_id,
                queue_size=queue_size,
                handler=handler,
            )
        )

    def unsubscribe(self, token: int) -> None:
        with self._lock:
            self._subs.pop(token, None)

    def publish(self, event: BaseEvent) -> None:
        """Queue ``event`` for every matching subscriber; never runs handlers."""
        with self._lock:
            self._seq += 1
            for sub in self._subs.values():
                if sub.matches(event):
                    sub.push(event, self._seq)
        self._wakeup.set()

    def pump(self) -> None:
        """Dispatch queued events across all subscriptions in publish order."""
        with self._pump_lock:
            while True:
                with self._lock:
                    subscriptions = list(self._subs.values())
                next_sub: Optional[EventSubscription] = None
                next_seq: Optional[int] = None
                for sub in subscriptions:
                    seq = sub._head_seq()
                    if seq is not None and (next_seq is None or seq < next_seq):
                        next_sub, next_seq = sub, seq
                if next_sub is None:
                    return
                event = next_sub._pop()
                if event is not None:
                    next_sub._deliver(event)

    def start(self, interval: float = 0.01) -> None:
        """Start background dispatcher that pumps the bus."""

        self._interval = interval
        if self._worker and self._worker.is_alive():
            return
        self._stop_event.clear()
        self._worker = threading.Thread(target=self._run, name="arkbridge-events", daemon=True)
        self._worker.start()

    def stop(self) -> None:
        self._stop_event.set()
        self._wakeup.set()
        worker = self._worker
        if worker and worker.is_alive() and worker is not threading.current_thread():
            worker.join(timeout=0.5)
        self._worker = None

    @property
    def running(self) -> bool:
        return bool(self._worker and self._worker.is_alive())

    def _run(self) -> None:
        while not self._stop_event.is_set():
            self._wakeup.wait(self._interval)
            self._wakeup.clear()
            self.pump()
        self.pump()
