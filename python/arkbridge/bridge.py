"""Kernel bridge built on top of the sidecar transport."""

from __future__ import annotations

import logging
import subprocess
import threading
import uuid
from typing import Any, Callable, Dict, List, Optional

from .config import BridgeConfig
from .data_explorer import DataExplorerSession, RowRangeFetcher
from .events import BaseEvent, CommOpenEvent, EventBus, KernelStatusEvent, LspPortEvent, UrlEvent
from .logparse import normalize_ark_log_level
from .plots import PlotRenderScheduler
from .protocol import VARIABLES_COMM_TARGET, Feed
from .router import EventRouter
from .rpc import RpcEngine
from .transport import CommChannel, ProcessSupervisor, TransportError
from .variables import VariablesClient


logger = logging.getLogger(__name__)


class KernelBridge:
    """Sidecar lifecycle, event plumbing and comm clients behind one object."""

    def __init__(
        self,
        config: Optional[BridgeConfig] = None,
        *,
        popen: Callable[..., subprocess.Popen] = subprocess.Popen,
        timer_factory: Callable[..., Any] = threading.Timer,
    ) -> None:
        self.config = config or BridgeConfig()
        self.bus = EventBus()
        self.router = EventRouter(self.bus, debug=self.config.debug)
        self.supervisor = ProcessSupervisor(self.config, on_records=self.router.route_all, popen=popen)
        self.channel = CommChannel(self.supervisor.stdin)
        self.engine = RpcEngine(self.channel, default_timeout=self.config.rpc_timeout)
        self.plots = PlotRenderScheduler(self.engine, self.config, timer_factory=timer_factory)
        self.variables = VariablesClient(self.engine, timeout=self.config.rpc_timeout)

        self.kernel_status = "unknown"
        self.lsp_port: Optional[int] = None
        self.httpgd_url: Optional[str] = None
        self._lock = threading.Lock()
        self._data_explorer_comms: List[str] = []
        self._sessions: Dict[str, DataExplorerSession] = {}
        self._fetchers: Dict[str, RowRangeFetcher] = {}
        self._tokens: List[int] = []

        self.engine.attach(self.bus)
        self.plots.attach(self.bus)
        self.variables.attach(self.bus)
        self._tokens.append(
            self.bus.on(self._on_out_of_band, feeds=[Feed.OUT_OF_BAND], queue_size=0)
        )
        self._tokens.append(
            self.bus.on(
                self._on_data_explorer_open,
                feeds=[Feed.COMM_OPEN],
                categories=["data_explorer_comm_open"],
                queue_size=0,
            )
        )
        self._tokens.append(self.bus.on(self._on_comm_close, feeds=[Feed.COMM_CLOSE], queue_size=0))
        self.supervisor.register_on_exit(self._on_sidecar_exit)
        self.channel.register_on_fault(self._on_transport_fault)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    def __enter__(self) -> "KernelBridge":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    @property
    def is_running(self) -> bool:
        return self.supervisor.is_running

    def start(self) -> None:
        """Start the event dispatcher thread."""
        self.bus.start(self.config.dispatch_interval)

    def attach(self, connection_file: str) -> None:
        """Run a sidecar for ``connection_file`` (no-op if already attached)."""
        self.start()
        self.supervisor.attach(connection_file)

    def stop(self) -> None:
        self.supervisor.stop()

    def close(self) -> None:
        self.stop()
        with self._lock:
            fetchers = list(self._fetchers.values())
            sessions = list(self._sessions.values())
            self._fetchers.clear()
            self._sessions.clear()
        for fetcher in fetchers:
            fetcher.close()
        for session in sessions:
            session.dispose()
        self.plots.dispose()
        self.variables.detach()
        self.engine.detach()
        for token in self._tokens:
            self.bus.unsubscribe(token)
        self._tokens = []
        self.bus.stop()

    def on(self, handler: Callable[[BaseEvent], None], **filters: Any) -> int:
        """Subscribe to bus events; see ``EventBus.on`` for filters."""
        filters.setdefault("queue_size", self.config.event_queue_size)
        return self.bus.on(handler, **filters)

    def off(self, token: int) -> None:
        self.bus.unsubscribe(token)

    def reload_log_level(self, level: str) -> None:
        level = normalize_ark_log_level(level)
        self.config.ark_log_level = level
        self.channel.reload_log_level(level)

    # ------------------------------------------------------------------
    # Comm clients
    # ------------------------------------------------------------------
    def ensure_variables_comm_open(self) -> str:
        """Return the current variables comm id, opening one if needed."""
        with self._lock:
            comm_id = self.variables.comm_id
            if comm_id is not None:
                return comm_id
            comm_id = uuid.uuid4().hex
            self.channel.comm_open(comm_id, VARIABLES_COMM_TARGET)
            self.variables.bind(comm_id)
        logger.info("opened variables comm %s", comm_id)
        return comm_id

    @property
    def data_explorer_comms(self) -> List[str]:
        with self._lock:
            return list(self._data_explorer_comms)

    def open_data_explorer(self, comm_id: Optional[str] = None) -> DataExplorerSession:
        """Session for ``comm_id`` (default: the most recently opened table)."""
        with self._lock:
            if comm_id is None:
                if not self._data_explorer_comms:
                    raise LookupError("no data explorer comm is open")
                comm_id = self._data_explorer_comms[-1]
            session = self._sessions.get(comm_id)
            if session is None:
                session = DataExplorerSession(self.engine, comm_id, timeout=self.config.rpc_timeout)
                self._sessions[comm_id] = session
        return session

    def row_fetcher(self, comm_id: Optional[str] = None) -> RowRangeFetcher:
        """The table's shared fetcher; it is closed when the comm goes away."""
        session = self.open_data_explorer(comm_id)
        with self._lock:
            fetcher = self._fetchers.get(session.comm_id)
            if fetcher is None:
                fetcher = RowRangeFetcher(session)
                self._fetchers[session.comm_id] = fetcher
        return fetcher

    # ------------------------------------------------------------------
    # Event handlers
    # ------------------------------------------------------------------
    def _on_out_of_band(self, event: BaseEvent) -> None:
        if isinstance(event, KernelStatusEvent):
            self.kernel_status = event.status
            logger.debug("kernel status: %s", event.status)
        elif isinstance(event, LspPortEvent) and event.port is not None:
            self.lsp_port = event.port
            logger.info("kernel LSP listening on port %s", event.port)
        elif isinstance(event, UrlEvent) and event.url:
            self.httpgd_url = event.url

    def _on_data_explorer_open(self, event: CommOpenEvent) -> None:
        if not event.comm_id:
            return
        with self._lock:
            if event.comm_id not in self._data_explorer_comms:
                self._data_explorer_comms.append(event.comm_id)
        logger.info("data explorer comm %s opened", event.comm_id)

    def _on_comm_close(self, event: BaseEvent) -> None:
        comm_id = event.comm_id
        with self._lock:
            if comm_id in self._data_explorer_comms:
                self._data_explorer_comms.remove(comm_id)
            session = self._sessions.pop(comm_id, None) if comm_id else None
            fetcher = self._fetchers.pop(comm_id, None) if comm_id else None
        if fetcher is not None:
            fetcher.close()
        if session is not None:
            session.dispose()
        if comm_id and comm_id == self.variables.comm_id:
            self.variables.unbind()

    def _on_sidecar_exit(self, code: Optional[int], stopped_by_host: bool) -> None:
        reason = "sidecar stopped" if stopped_by_host else f"sidecar exited (code {code})"
        self.engine.fail_all(TransportError(reason))
        self.kernel_status = "exited"
        with self._lock:
            self._data_explorer_comms.clear()
            fetchers = list(self._fetchers.values())
            sessions = list(self._sessions.values())
            self._fetchers.clear()
            self._sessions.clear()
        for fetcher in fetchers:
            fetcher.close()
        for session in sessions:
            session.dispose()
        for plot_id in self.plots.plot_ids:
            if self.plots.is_dynamic(plot_id):
                self.plots.dispose_plot(plot_id)
        self.variables.unbind()

    def _on_transport_fault(self, error: TransportError) -> None:
        self.engine.fail_all(error)
