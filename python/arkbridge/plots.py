"""Plot render scheduling.

Each dynamic plot comm owns one render slot. A new render request for a
plot rejects the render already running for it with ``RequestSuperseded``
and drops the engine's pending request, so a late ``RenderReply`` for the
old geometry is ignored. Geometry notifications go through a per-plot
debouncer unless the change was user initiated.
"""

from __future__ import annotations

import logging
import threading
import uuid
from concurrent.futures import Future
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

from .coalesce import CoalescingSlot, Debouncer, Spawn
from .config import BridgeConfig
from .events import CommCloseEvent, CommOpenEvent, EventBus, PlotDataEvent
from .protocol import PLOT_COMM_TARGET, Feed
from .rpc import CommDisposed, CommEvent, PendingRequest, RequestSuperseded, RpcEngine


logger = logging.getLogger(__name__)

MIME_TYPES = {"png": "image/png", "svg": "image/svg+xml"}


def render_format(renderer: Optional[str]) -> str:
    """Map a host renderer id onto the two formats the kernel renders."""
    return "svg" if renderer in ("svg", "svgp") else "png"


@dataclass(frozen=True)
class PlotGeometry:
    width: int
    height: int
    pixel_ratio: float = 1.0

    def __post_init__(self) -> None:
        if self.width <= 0 or self.height <= 0:
            raise ValueError(f"plot size must be positive, got {self.width}x{self.height}")
        if self.pixel_ratio <= 0:
            raise ValueError(f"pixel ratio must be positive, got {self.pixel_ratio}")


@dataclass
class RenderResult:
    plot_id: str
    data: str
    mime_type: str
    geometry: Optional[PlotGeometry] = None
    static: bool = False

    @property
    def data_uri(self) -> str:
        return f"data:{self.mime_type};base64,{self.data}"


@dataclass(eq=False)
class _RenderJob:
    geometry: PlotGeometry
    fmt: str
    pending: Optional[PendingRequest] = None
    superseded: bool = False


@dataclass(eq=False)
class _PlotState:
    plot_id: str
    dynamic: bool
    geometry: Optional[PlotGeometry] = None
    fmt: str = "png"
    slot: Optional[CoalescingSlot] = None
    debouncer: Optional[Debouncer] = None
    last_result: Optional[RenderResult] = None


RenderListener = Callable[[RenderResult], None]


class PlotRenderScheduler:
    """At most one render in flight per plot, with debounced re-rendering."""

    def __init__(
        self,
        engine: RpcEngine,
        config: Optional[BridgeConfig] = None,
        *,
        timer_factory: Callable[..., Any] = threading.Timer,
        spawn: Optional[Spawn] = None,
    ) -> None:
        self.engine = engine
        self.config = config or BridgeConfig()
        self._timer_factory = timer_factory
        self._spawn = spawn
        self._lock = threading.Lock()
        self._plots: Dict[str, _PlotState] = {}
        self._listeners: List[RenderListener] = []
        self._tokens: List[int] = []
        self._bus: Optional[EventBus] = None

    # ------------------------------------------------------------------
    # Wiring
    # ------------------------------------------------------------------
    def attach(self, bus: EventBus) -> None:
        self.detach()
        self._bus = bus
        self._tokens = [
            bus.on(self._on_comm_open, feeds=[Feed.COMM_OPEN], categories=["comm_open"], queue_size=0),
            bus.on(self._on_comm_close, feeds=[Feed.COMM_CLOSE], queue_size=0),
            bus.on(
                self._on_plot_data,
                feeds=[Feed.OUT_OF_BAND],
                categories=["display_data", "update_display_data"],
                queue_size=0,
            ),
        ]

    def detach(self) -> None:
        bus = self._bus
        if bus is not None:
            for token in self._tokens:
                bus.unsubscribe(token)
        self._tokens = []
        self._bus = None

    def add_listener(self, listener: RenderListener) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: RenderListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    # ------------------------------------------------------------------
    # Plot registry
    # ------------------------------------------------------------------
    @property
    def plot_ids(self) -> List[str]:
        with self._lock:
            return list(self._plots)

    def is_dynamic(self, plot_id: str) -> bool:
        with self._lock:
            state = self._plots.get(plot_id)
            return bool(state and state.dynamic)

    def last_result(self, plot_id: str) -> Optional[RenderResult]:
        with self._lock:
            state = self._plots.get(plot_id)
            return state.last_result if state else None

    def add_plot(self, plot_id: str) -> None:
        """Register a kernel plot comm that can be rendered on demand."""
        with self._lock:
            if plot_id in self._plots:
                return
            state = _PlotState(plot_id=plot_id, dynamic=True, fmt=self.config.default_plot_format)
            state.slot = CoalescingSlot(
                lambda job, pid=plot_id: self._render(pid, job),
                name=f"arkbridge-render-{plot_id[:8]}",
                supersede_in_flight=True,
                on_supersede=self._abandon,
                on_result=lambda job, result, pid=plot_id: self._publish(pid, result),
                on_error=lambda job, exc, pid=plot_id: logger.warning("render of plot %s failed: %s", pid, exc),
                spawn=self._spawn,
            )
            state.debouncer = Debouncer(
                self.config.render_debounce_s,
                lambda pid=plot_id: self._render_current(pid),
                timer_factory=self._timer_factory,
            )
            self._plots[plot_id] = state
        self.engine.add_comm_listener(plot_id, self._on_plot_event)
        logger.info("plot %s registered", plot_id)

    def add_static_plot(self, data: str, mime_type: str = "image/png", plot_id: Optional[str] = None) -> RenderResult:
        """Register a pre-rendered image; static plots are never re-rendered."""
        plot_id = plot_id or f"static-{uuid.uuid4().hex[:12]}"
        result = RenderResult(plot_id=plot_id, data=data, mime_type=mime_type, static=True)
        with self._lock:
            state = self._plots.get(plot_id)
            if state is not None and state.dynamic:
                raise ValueError(f"plot {plot_id} is a dynamic plot")
            if state is None:
                state = _PlotState(plot_id=plot_id, dynamic=False)
                self._plots[plot_id] = state
            state.last_result = result
        self._notify(result)
        return result

    def dispose_plot(self, plot_id: str) -> bool:
        with self._lock:
            state = self._plots.pop(plot_id, None)
        if state is None:
            return False
        if state.debouncer is not None:
            state.debouncer.cancel()
        if state.slot is not None:
            state.slot.close(CommDisposed(f"plot {plot_id} closed"))
        if state.dynamic:
            self.engine.remove_comm_listener(plot_id, self._on_plot_event)
            self.engine.dispose_comm(plot_id, reason="plot closed")
        logger.info("plot %s removed", plot_id)
        return True

    def close_plot(self, plot_id: str) -> bool:
        """Close a plot from the host side and tell the kernel."""
        dynamic = self.is_dynamic(plot_id)
        removed = self.dispose_plot(plot_id)
        if removed and dynamic:
            self.engine.channel.comm_close(plot_id)
        return removed

    def dispose(self) -> None:
        for plot_id in self.plot_ids:
            self.dispose_plot(plot_id)
        self.detach()

    # ------------------------------------------------------------------
    # Rendering
    # ------------------------------------------------------------------
    def request_render(
        self,
        plot_id: str,
        geometry: Optional[PlotGeometry] = None,
        fmt: Optional[str] = None,
    ) -> Future:
        """Render ``plot_id`` now, superseding any render in flight for it."""
        with self._lock:
            state = self._plots.get(plot_id)
            if state is None:
                raise KeyError(f"unknown plot {plot_id}")
            if not state.dynamic or state.slot is None:
                raise ValueError(f"plot {plot_id} is static and cannot be rendered")
            if geometry is not None:
                state.geometry = geometry
            if fmt is not None:
                state.fmt = fmt
            job = _RenderJob(geometry=state.geometry or self.default_geometry(), fmt=render_format(state.fmt))
            slot = state.slot
            debouncer = state.debouncer
        if debouncer is not None:
            debouncer.cancel()
        return slot.submit(job)

    def notify_geometry(self, plot_id: str, geometry: PlotGeometry, *, user_initiated: bool = False) -> None:
        """Record a size or zoom change; renders after the quiet period."""
        with self._lock:
            state = self._plots.get(plot_id)
            if state is None or not state.dynamic or state.debouncer is None:
                logger.debug("ignoring geometry change for non-dynamic plot %s", plot_id)
                return
            state.geometry = geometry
            debouncer = state.debouncer
        if user_initiated:
            debouncer.cancel()
            self._render_current(plot_id)
        else:
            debouncer.trigger()

    def default_geometry(self) -> PlotGeometry:
        return PlotGeometry(
            width=self.config.default_plot_width,
            height=self.config.default_plot_height,
            pixel_ratio=self.config.default_pixel_ratio,
        )

    def _render_current(self, plot_id: str) -> Optional[Future]:
        try:
            return self.request_render(plot_id)
        except (KeyError, ValueError) as exc:
            logger.debug("skipping render: %s", exc)
            return None

    def _render(self, plot_id: str, job: _RenderJob) -> RenderResult:
        if job.superseded:
            raise RequestSuperseded(f"render of plot {plot_id} superseded")
        params = {
            "size": {"width": job.geometry.width, "height": job.geometry.height},
            "pixel_ratio": job.geometry.pixel_ratio,
            "format": job.fmt,
        }
        pending = self.engine.request(plot_id, "render", params)
        job.pending = pending
        if job.superseded:
            pending.cancel(RequestSuperseded(f"render of plot {plot_id} superseded"))
        reply = pending.result()
        if not isinstance(reply, dict) or not reply.get("data"):
            raise ValueError(f"invalid render reply for plot {plot_id}: missing data")
        return RenderResult(
            plot_id=plot_id,
            data=str(reply["data"]),
            mime_type=str(reply.get("mime_type") or MIME_TYPES[job.fmt]),
            geometry=job.geometry,
        )

    @staticmethod
    def _abandon(job: _RenderJob) -> None:
        job.superseded = True
        pending = job.pending
        if pending is not None:
            pending.cancel(RequestSuperseded(f"{pending.method} superseded"))

    def _publish(self, plot_id: str, result: RenderResult) -> None:
        with self._lock:
            state = self._plots.get(plot_id)
            if state is None:
                return
            state.last_result = result
        logger.debug("plot %s rendered (%s)", plot_id, result.mime_type)
        self._notify(result)

    def _notify(self, result: RenderResult) -> None:
        for listener in list(self._listeners):
            try:
                listener(result)
            except Exception:
                logger.exception("render listener failed for plot %s", result.plot_id)

    # ------------------------------------------------------------------
    # Bus handlers
    # ------------------------------------------------------------------
    def _on_comm_open(self, event: CommOpenEvent) -> None:
        if event.capability is not None or event.target_name not in (None, PLOT_COMM_TARGET):
            return
        plot_id = event.comm_id
        if not plot_id:
            return
        self.add_plot(plot_id)
        if self.config.auto_render_plots:
            self._render_current(plot_id)

    def _on_comm_close(self, event: CommCloseEvent) -> None:
        if event.comm_id:
            self.dispose_plot(event.comm_id)

    def _on_plot_data(self, event: PlotDataEvent) -> None:
        if event.base64_data:
            self.add_static_plot(event.base64_data, event.mime_type, plot_id=event.display_id)

    def _on_plot_event(self, event: CommEvent) -> None:
        if event.method == "update":
            logger.debug("plot %s changed; re-rendering", event.comm_id)
            self._render_current(event.comm_id)
        else:
            logger.debug("ignoring plot event %s on %s", event.method, event.comm_id)
