"""Variables comm client."""

from __future__ import annotations

import logging
from concurrent.futures import Future
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Sequence

from .events import CommOpenEvent, EventBus
from .protocol import Feed
from .rpc import CommEvent, PendingRequest, RequestCancelled, RpcEngine


logger = logging.getLogger(__name__)


@dataclass
class VariablesUpdate:
    """``refresh`` (full list), ``update`` (delta) or ``inspect`` (children)."""

    method: str
    params: Dict[str, Any] = field(default_factory=dict)

    @property
    def variables(self) -> List[Dict[str, Any]]:
        key = "children" if self.method == "inspect" else "variables"
        return list(self.params.get(key) or [])


UpdateListener = Callable[[VariablesUpdate], None]


class VariablesClient:
    def __init__(self, engine: RpcEngine, *, timeout: Optional[float] = None, auto_refresh: bool = True) -> None:
        self.engine = engine
        self.timeout = timeout
        self.auto_refresh = auto_refresh
        self._comm_id: Optional[str] = None
        self._listeners: List[UpdateListener] = []
        self._token: Optional[int] = None
        self._bus: Optional[EventBus] = None

    @property
    def comm_id(self) -> Optional[str]:
        return self._comm_id

    def attach(self, bus: EventBus) -> None:
        self.detach()
        self._bus = bus
        self._token = bus.on(
            self._on_comm_open,
            feeds=[Feed.COMM_OPEN],
            categories=["variables_comm_open"],
            queue_size=0,
        )

    def detach(self) -> None:
        if self._bus is not None and self._token is not None:
            self._bus.unsubscribe(self._token)
        self._bus = None
        self._token = None

    def add_listener(self, listener: UpdateListener) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: UpdateListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def bind(self, comm_id: str) -> None:
        """Make ``comm_id`` the current variables comm."""
        if comm_id == self._comm_id:
            return
        self.unbind()
        self._comm_id = comm_id
        self.engine.add_comm_listener(comm_id, self._on_comm_event)
        logger.debug("variables comm bound to %s", comm_id)

    def unbind(self) -> None:
        comm_id = self._comm_id
        if comm_id is None:
            return
        self._comm_id = None
        self.engine.remove_comm_listener(comm_id, self._on_comm_event)
        self.engine.dispose_comm(comm_id, reason="variables comm replaced")

    # ------------------------------------------------------------------
    # Requests; each returns None when no variables comm is open.
    # ------------------------------------------------------------------
    def refresh(self) -> Optional[PendingRequest]:
        pending = self._request("list")
        if pending is not None:
            pending.add_done_callback(lambda future: self._deliver(future, "refresh"))
        return pending

    def inspect(self, path: Sequence[str]) -> Optional[PendingRequest]:
        pending = self._request("inspect", {"path": list(path)})
        if pending is not None:
            pending.add_done_callback(lambda future: self._deliver(future, "inspect"))
        return pending

    def view(self, path: Sequence[str]) -> Optional[PendingRequest]:
        return self._request("view", {"path": list(path)})

    def clear(self, include_hidden_objects: bool = False) -> Optional[PendingRequest]:
        return self._request("clear", {"include_hidden_objects": include_hidden_objects})

    def delete(self, names: Sequence[str]) -> Optional[PendingRequest]:
        return self._request("delete", {"names": list(names)})

    def clipboard_format(self, path: Sequence[str], fmt: str = "text/plain") -> Optional[PendingRequest]:
        return self._request("clipboard_format", {"path": list(path), "format": fmt})

    def _request(self, method: str, params: Optional[Dict[str, Any]] = None) -> Optional[PendingRequest]:
        comm_id = self._comm_id
        if comm_id is None:
            logger.debug("no variables comm open; skipping %s", method)
            return None
        return self.engine.request(comm_id, method, params, timeout=self.timeout)

    # ------------------------------------------------------------------
    # Inbound
    # ------------------------------------------------------------------
    def _deliver(self, future: Future, method: str) -> None:
        if future.cancelled():
            return
        exc = future.exception()
        if exc is not None:
            if not isinstance(exc, RequestCancelled):
                logger.warning("variables %s failed: %s", method, exc)
            return
        result = future.result()
        if isinstance(result, dict):
            self._notify(VariablesUpdate(method=method, params=result))

    def _notify(self, update: VariablesUpdate) -> None:
        for listener in list(self._listeners):
            try:
                listener(update)
            except Exception:
                logger.exception("variables listener failed for %s", update.method)

    def _on_comm_event(self, event: CommEvent) -> None:
        if event.method in ("refresh", "update"):
            params = event.params if isinstance(event.params, dict) else {}
            self._notify(VariablesUpdate(method=event.method, params=params))
        else:
            logger.debug("ignoring variables event %s", event.method)

    def _on_comm_open(self, event: CommOpenEvent) -> None:
        if not event.comm_id:
            return
        self.bind(event.comm_id)
        if self.auto_refresh:
            self.refresh()
