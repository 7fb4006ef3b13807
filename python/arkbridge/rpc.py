"""Request/reply correlation on top of comm messages.

Every call gets a fresh request id and is indexed twice:

    * by request id, for peers that echo ``id`` on replies;
    * in a FIFO queue keyed by ``(comm_id, reply_tag)``, for peers that only
      echo a reply discriminant such as ``GetStateReply``.

Both indexes hold the same ``PendingRequest`` objects. Any resolution path
removes the request from both, and a request settles at most once, so a
late or duplicate reply can never resolve it twice.
"""

from __future__ import annotations

import logging
import threading
from collections import deque
from concurrent.futures import Future
from dataclasses import dataclass, field
from typing import Any, Callable, Deque, Dict, List, Optional, Tuple

from .events import CommCloseEvent, CommMessageEvent, EventBus
from .protocol import (
    Feed,
    ProtocolError,
    is_reply_message,
    is_reply_tag,
    new_request_id,
    reply_tag_for,
    rpc_envelope,
)
from .transport import CommChannel, TransportError


logger = logging.getLogger(__name__)


class RpcError(RuntimeError):
    """The kernel answered a request with an ``error`` payload."""

    def __init__(self, method: str, message: str, *, code: Optional[int] = None, data: Any = None) -> None:
        super().__init__(f"{method} failed: {message}")
        self.method = method
        self.message = message
        self.code = code
        self.data = data

    @classmethod
    def from_payload(cls, method: str, error: Any) -> "RpcError":
        if isinstance(error, dict):
            code = error.get("code")
            return cls(
                method,
                str(error.get("message") or "unknown error"),
                code=code if isinstance(code, int) else None,
                data=error.get("data"),
            )
        return cls(method, str(error))


class RequestCancelled(RuntimeError):
    """A pending request was abandoned on the host side."""


class RequestSuperseded(RequestCancelled):
    """A newer request for the same subject replaced this one."""


class CommDisposed(RequestCancelled):
    """The comm owning the request was closed or disposed."""


class RpcTimeout(RequestCancelled):
    """No reply arrived within the request timeout."""


@dataclass
class CommEvent:
    """A comm message that is not a reply (``schema_update``, ``refresh``...)."""

    comm_id: str
    method: str
    params: Any = None
    message: Dict[str, Any] = field(default_factory=dict)


CommEventHandler = Callable[[CommEvent], None]


@dataclass(eq=False)
class PendingRequest:
    request_id: str
    comm_id: str
    method: str
    reply_tag: Optional[str]
    future: Future = field(default_factory=Future, repr=False)
    settled: bool = field(default=False, repr=False)
    _engine: Optional["RpcEngine"] = field(default=None, repr=False)

    @property
    def done(self) -> bool:
        return self.future.done()

    def result(self, timeout: Optional[float] = None) -> Any:
        return self.future.result(timeout=timeout)

    def add_done_callback(self, callback: Callable[[Future], None]) -> None:
        self.future.add_done_callback(callback)

    def cancel(self, exc: Optional[BaseException] = None) -> bool:
        """Reject this request locally; the kernel is not told."""
        error = exc or RequestCancelled(f"{self.method} cancelled")
        if self._engine is None:
            if self.future.done():
                return False
            self.future.set_exception(error)
            return True
        return self._engine.reject(self, error)


class RpcEngine:
    """Turns comm messages into awaitable request/response calls."""

    def __init__(self, channel: CommChannel, *, default_timeout: Optional[float] = None) -> None:
        self.channel = channel
        self.default_timeout = default_timeout
        self._lock = threading.Lock()
        self._by_id: Dict[str, PendingRequest] = {}
        self._by_reply: Dict[Tuple[str, str], Deque[PendingRequest]] = {}
        self._listeners: Dict[str, List[CommEventHandler]] = {}
        self._tokens: List[int] = []
        self._bus: Optional[EventBus] = None
        self.protocol_faults = 0

    # ------------------------------------------------------------------
    # Wiring
    # ------------------------------------------------------------------
    def attach(self, bus: EventBus) -> None:
        """Consume comm messages and comm closes from ``bus``."""
        self.detach()
        self._bus = bus
        self._tokens = [
            bus.on(self._on_comm_message, feeds=[Feed.COMM_MESSAGE], queue_size=0),
            bus.on(self._on_comm_close, feeds=[Feed.COMM_CLOSE], queue_size=0),
        ]

    def detach(self) -> None:
        bus = self._bus
        if bus is not None:
            for token in self._tokens:
                bus.unsubscribe(token)
        self._tokens = []
        self._bus = None

    def add_comm_listener(self, comm_id: str, handler: CommEventHandler) -> None:
        with self._lock:
            self._listeners.setdefault(comm_id, []).append(handler)

    def remove_comm_listener(self, comm_id: str, handler: Optional[CommEventHandler] = None) -> None:
        with self._lock:
            if handler is None:
                self._listeners.pop(comm_id, None)
                return
            handlers = self._listeners.get(comm_id)
            if handlers and handler in handlers:
                handlers.remove(handler)
            if not handlers:
                self._listeners.pop(comm_id, None)

    # ------------------------------------------------------------------
    # Calls
    # ------------------------------------------------------------------
    def request(
        self,
        comm_id: str,
        method: str,
        params: Optional[Dict[str, Any]] = None,
        *,
        timeout: Optional[float] = None,
    ) -> PendingRequest:
        """Send ``method`` on ``comm_id`` and return its pending request."""
        pending = PendingRequest(
            request_id=new_request_id(),
            comm_id=comm_id,
            method=method,
            reply_tag=reply_tag_for(method),
            _engine=self,
        )
        with self._lock:
            self._by_id[pending.request_id] = pending
            if pending.reply_tag:
                key = (comm_id, pending.reply_tag)
                self._by_reply.setdefault(key, deque()).append(pending)
        pending.future.add_done_callback(lambda _f, p=pending: self._forget(p))
        logger.debug("sending RPC %s (%s) on comm %s", method, pending.request_id, comm_id)
        try:
            self.channel.comm_msg(comm_id, rpc_envelope(pending.request_id, method, params))
        except TransportError as exc:
            self._settle(pending, exc=exc)
            return pending
        except Exception as exc:
            self._settle(pending, exc=exc)
            raise
        timeout = self.default_timeout if timeout is None else timeout
        if timeout is not None and timeout > 0:
            self._arm_timeout(pending, timeout)
        return pending

    def call(
        self,
        comm_id: str,
        method: str,
        params: Optional[Dict[str, Any]] = None,
        *,
        timeout: Optional[float] = None,
    ) -> Any:
        """Blocking form of :meth:`request`."""
        return self.request(comm_id, method, params, timeout=timeout).result()

    def reject(self, pending: PendingRequest, exc: BaseException) -> bool:
        return self._settle(pending, exc=exc)

    def dispose_comm(self, comm_id: str, reason: str = "comm disposed") -> int:
        """Reject every request still pending on ``comm_id``."""
        with self._lock:
            victims = [p for p in self._by_id.values() if p.comm_id == comm_id]
            for queue_key, queue in self._by_reply.items():
                if queue_key[0] == comm_id:
                    victims.extend(p for p in queue if p not in victims)
        count = 0
        for pending in victims:
            if self._settle(pending, exc=CommDisposed(f"{pending.method} on comm {comm_id}: {reason}")):
                count += 1
        if count:
            logger.debug("rejected %d pending request(s) on disposed comm %s", count, comm_id)
        return count

    def fail_all(self, exc: BaseException) -> int:
        """Reject every pending request on every comm."""
        with self._lock:
            victims = list(self._by_id.values())
            for queue in self._by_reply.values():
                victims.extend(p for p in queue if p not in victims)
        count = sum(1 for pending in victims if self._settle(pending, exc=exc))
        if count:
            logger.warning("rejected %d pending request(s): %s", count, exc)
        return count

    def pending_count(self, comm_id: Optional[str] = None) -> int:
        with self._lock:
            if comm_id is None:
                return len(self._by_id)
            return sum(1 for p in self._by_id.values() if p.comm_id == comm_id)

    # ------------------------------------------------------------------
    # Inbound
    # ------------------------------------------------------------------
    def handle_message(self, comm_id: str, message: Any) -> Optional[PendingRequest]:
        """Route one inbound comm message; returns the request it settled."""
        if not isinstance(message, dict):
            logger.warning("dropping non-object comm message on %s", comm_id)
            return None
        if not is_reply_message(message):
            self._emit_comm_event(comm_id, message)
            return None
        try:
            pending = self._match(comm_id, message)
        except ProtocolError as exc:
            self.protocol_faults += 1
            logger.warning("dropping reply on comm %s: %s", comm_id, exc)
            return None
        error = message.get("error")
        if error is not None:
            logger.debug("RPC %s (%s) failed: %s", pending.method, pending.request_id, error)
            self._settle(pending, exc=RpcError.from_payload(pending.method, error))
        else:
            self._settle(pending, result=message.get("result"))
        return pending

    def match_reply(self, comm_id: str, message: Dict[str, Any]) -> PendingRequest:
        """Find and unindex the request ``message`` answers, or raise ``ProtocolError``."""
        return self._match(comm_id, message)

    def _match(self, comm_id: str, message: Dict[str, Any]) -> PendingRequest:
        with self._lock:
            request_id = message.get("id")
            if request_id is not None:
                pending = self._by_id.get(str(request_id))
                if pending is None or pending.comm_id != comm_id:
                    # Never fall back to FIFO here: the id names a request we
                    # no longer track (cancelled, superseded or timed out).
                    raise ProtocolError(f"reply for unknown request id {request_id!r}")
                self._unindex(pending)
                return pending
            tag = message.get("method")
            if is_reply_tag(tag):
                queue = self._by_reply.get((comm_id, tag))
                if not queue:
                    raise ProtocolError(f"unexpected {tag!r} with no pending request")
                pending = queue[0]
                self._unindex(pending)
                return pending
            outstanding = sum(1 for p in self._by_id.values() if p.comm_id == comm_id)
        if outstanding:
            raise ProtocolError(
                f"ambiguous reply: no request id and no reply discriminant "
                f"({outstanding} request(s) pending)"
            )
        raise ProtocolError("reply with no pending request")

    def _on_comm_message(self, event: CommMessageEvent) -> None:
        if event.comm_id:
            self.handle_message(event.comm_id, event.data)

    def _on_comm_close(self, event: CommCloseEvent) -> None:
        if event.comm_id:
            self.dispose_comm(event.comm_id, reason="comm closed by kernel")

    def _emit_comm_event(self, comm_id: str, message: Dict[str, Any]) -> None:
        method = message.get("method")
        if not isinstance(method, str) or not method:
            logger.warning("dropping comm message without method on %s", comm_id)
            return
        event = CommEvent(comm_id=comm_id, method=method, params=message.get("params"), message=message)
        with self._lock:
            handlers = list(self._listeners.get(comm_id, ()))
        if not handlers:
            logger.debug("no listener for %s on comm %s", method, comm_id)
            return
        for handler in handlers:
            try:
                handler(event)
            except Exception:
                logger.exception("comm event handler failed for %s", method)

    # ------------------------------------------------------------------
    # Bookkeeping
    # ------------------------------------------------------------------
    def _unindex(self, pending: PendingRequest) -> None:
        self._by_id.pop(pending.request_id, None)
        if pending.reply_tag:
            key = (pending.comm_id, pending.reply_tag)
            queue = self._by_reply.get(key)
            if queue is not None:
                try:
                    queue.remove(pending)
                except ValueError:
                    pass
                if not queue:
                    del self._by_reply[key]

    def _settle(
        self,
        pending: PendingRequest,
        *,
        result: Any = None,
        exc: Optional[BaseException] = None,
    ) -> bool:
        with self._lock:
            if pending.settled:
                return False
            pending.settled = True
            self._unindex(pending)
        future = pending.future
        if not future.set_running_or_notify_cancel():
            # Cancelled directly through the future.
            return False
        if exc is not None:
            future.set_exception(exc)
        else:
            future.set_result(result)
        return True

    def _forget(self, pending: PendingRequest) -> None:
        # Covers future.cancel() called by a consumer.
        with self._lock:
            pending.settled = True
            self._unindex(pending)

    def _arm_timeout(self, pending: PendingRequest, timeout: float) -> None:
        def expire() -> None:
            if self._settle(pending, exc=RpcTimeout(f"{pending.method} timed out after {timeout:.1f}s")):
                logger.warning("RPC %s on comm %s timed out", pending.method, pending.comm_id)

        timer = threading.Timer(timeout, expire)
        timer.daemon = True
        pending.future.add_done_callback(lambda _f: timer.cancel())
        timer.start()
