"""
arkbridge - Kernel sidecar bridge for host front-ends.

This package runs the kernel sidecar process and turns its line-delimited
JSON stream into typed events and request/reply calls.  Each module is
implemented in its own file to keep responsibilities clear:

    protocol.py       → wire vocabulary, command encoding, reply table
    framer.py         → byte chunks to event records
    events.py         → typed events and the fan-out event bus
    router.py         → record classification and plot payload handling
    transport.py      → sidecar process supervision and the comm channel
    rpc.py            → request/reply correlation over comm messages
    coalesce.py       → latest-wins work slots and debounce timers
    plots.py          → per-plot render scheduling
    data_explorer.py  → data explorer calls and the row-range fetcher
    variables.py      → variables comm client
    bridge.py         → everything above wired behind ``KernelBridge``

Use ``python/ark_bridge.py`` or the ``ark-bridge`` console script for the CLI.
"""

from .protocol import Feed, ProtocolError  # noqa: F401
from .config import BridgeConfig  # noqa: F401
from .framer import LineFramer  # noqa: F401
from .events import (  # noqa: F401
    BaseEvent,
    CommCloseEvent,
    CommMessageEvent,
    CommOpenEvent,
    EventBus,
    EventSubscription,
    KernelStatusEvent,
    PlotDataEvent,
    SidecarErrorEvent,
    parse_event,
)
from .router import EventRouter  # noqa: F401
from .transport import CommChannel, ProcessSupervisor, TransportError  # noqa: F401
from .rpc import (  # noqa: F401
    CommDisposed,
    CommEvent,
    PendingRequest,
    RequestCancelled,
    RequestSuperseded,
    RpcEngine,
    RpcError,
    RpcTimeout,
)
from .coalesce import CoalescingSlot, Debouncer  # noqa: F401
from .plots import PlotGeometry, PlotRenderScheduler, RenderResult  # noqa: F401
from .data_explorer import DataExplorerSession, RowBlock, RowRange, RowRangeFetcher  # noqa: F401
from .variables import VariablesClient, VariablesUpdate  # noqa: F401
from .bridge import KernelBridge  # noqa: F401

__all__ = [
    "Feed",
    "ProtocolError",
    "BridgeConfig",
    "LineFramer",
    "BaseEvent",
    "CommOpenEvent",
    "CommMessageEvent",
    "CommCloseEvent",
    "KernelStatusEvent",
    "PlotDataEvent",
    "SidecarErrorEvent",
    "EventBus",
    "EventSubscription",
    "parse_event",
    "EventRouter",
    "CommChannel",
    "ProcessSupervisor",
    "TransportError",
    "RpcEngine",
    "PendingRequest",
    "CommEvent",
    "RpcError",
    "RequestCancelled",
    "RequestSuperseded",
    "CommDisposed",
    "RpcTimeout",
    "CoalescingSlot",
    "Debouncer",
    "PlotGeometry",
    "PlotRenderScheduler",
    "RenderResult",
    "DataExplorerSession",
    "RowRange",
    "RowBlock",
    "RowRangeFetcher",
    "VariablesClient",
    "VariablesUpdate",
    "KernelBridge",
]

__version__ = "0.1.0"
