"""Data explorer comm client and the latest-wins row-range fetcher."""

from __future__ import annotations

import logging
import threading
from concurrent.futures import Future
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from .coalesce import CoalescingSlot, Spawn, spawn_thread
from .rpc import CommEvent, RpcEngine


logger = logging.getLogger(__name__)

DEFAULT_FORMAT_OPTIONS: Dict[str, Any] = {
    "large_num_digits": 2,
    "small_num_digits": 4,
    "max_integral_digits": 7,
    "max_value_length": 100,
    "thousands_sep": ",",
}

DATA_EXPLORER_EVENTS = ("schema_update", "data_update", "return_column_profiles")


def table_shape(state: Optional[Dict[str, Any]]) -> tuple:
    shape = (state or {}).get("table_shape") or {}
    return int(shape.get("num_rows") or 0), int(shape.get("num_columns") or 0)


@dataclass(frozen=True)
class RowRange:
    """Inclusive row interval ``[start, end]``."""

    start: int
    end: int

    @property
    def size(self) -> int:
        return max(0, self.end - self.start + 1)

    def clamp(self, num_rows: int) -> Optional["RowRange"]:
        start = max(0, self.start)
        end = min(self.end, max(num_rows - 1, 0))
        if num_rows <= 0 or end < start:
            return None
        return RowRange(start, end)

    def selection(self) -> Dict[str, int]:
        return {"first_index": self.start, "last_index": self.end}


@dataclass
class RowBlock:
    range: RowRange
    columns: List[List[Any]] = field(default_factory=list)
    row_labels: List[str] = field(default_factory=list)

    def rows(self) -> List[List[Any]]:
        """Transpose the column-major values into row lists."""
        if not self.columns:
            return [[] for _ in range(self.range.size)]
        return [list(values) for values in zip(*self.columns)]


EventListener = Callable[[CommEvent], None]


class DataExplorerSession:
    """Typed calls on one ``positron.dataExplorer`` comm."""

    def __init__(self, engine: RpcEngine, comm_id: str, *, timeout: Optional[float] = None) -> None:
        self.engine = engine
        self.comm_id = comm_id
        self.timeout = timeout
        self._listeners: List[EventListener] = []
        self._disposed = False
        engine.add_comm_listener(comm_id, self._on_comm_event)

    def add_listener(self, listener: EventListener) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: EventListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def dispose(self) -> None:
        if self._disposed:
            return
        self._disposed = True
        self.engine.remove_comm_listener(self.comm_id, self._on_comm_event)
        self.engine.dispose_comm(self.comm_id, reason="data explorer session disposed")
        self._listeners.clear()

    def close(self) -> None:
        """Dispose the session and close the comm on the kernel side."""
        disposed = self._disposed
        self.dispose()
        if not disposed:
            self.engine.channel.comm_close(self.comm_id)

    def _call(self, method: str, params: Optional[Dict[str, Any]] = None) -> Any:
        return self.engine.call(self.comm_id, method, params, timeout=self.timeout)

    def request(self, method: str, params: Optional[Dict[str, Any]] = None):
        """Non-blocking variant of any call below; returns the ``PendingRequest``."""
        return self.engine.request(self.comm_id, method, params, timeout=self.timeout)

    # ------------------------------------------------------------------
    # RPC wrappers
    # ------------------------------------------------------------------
    def get_state(self) -> Dict[str, Any]:
        return self._call("get_state")

    def get_schema(self, column_indices: Sequence[int]) -> Dict[str, Any]:
        return self._call("get_schema", {"column_indices": list(column_indices)})

    def get_data_values(
        self,
        columns: Sequence[Dict[str, Any]],
        format_options: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        return self._call(
            "get_data_values",
            {"columns": list(columns), "format_options": format_options or DEFAULT_FORMAT_OPTIONS},
        )

    def get_row_labels(
        self,
        selection: Dict[str, Any],
        format_options: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        return self._call(
            "get_row_labels",
            {"selection": selection, "format_options": format_options or DEFAULT_FORMAT_OPTIONS},
        )

    def set_sort_columns(self, sort_keys: Sequence[Dict[str, Any]]) -> Any:
        return self._call("set_sort_columns", {"sort_keys": list(sort_keys)})

    def search_schema(self, filters: Sequence[Dict[str, Any]], sort_order: str = "original") -> Dict[str, Any]:
        return self._call("search_schema", {"filters": list(filters), "sort_order": sort_order})

    def set_column_filters(self, filters: Sequence[Dict[str, Any]]) -> Any:
        return self._call("set_column_filters", {"filters": list(filters)})

    def set_row_filters(self, filters: Sequence[Dict[str, Any]]) -> Dict[str, Any]:
        return self._call("set_row_filters", {"filters": list(filters)})

    def get_column_profiles(
        self,
        callback_id: str,
        profiles: Sequence[Dict[str, Any]],
        format_options: Optional[Dict[str, Any]] = None,
    ) -> Any:
        """Profiles arrive later as a ``return_column_profiles`` event."""
        return self._call(
            "get_column_profiles",
            {
                "callback_id": callback_id,
                "profiles": list(profiles),
                "format_options": format_options or DEFAULT_FORMAT_OPTIONS,
            },
        )

    def export_data_selection(self, selection: Dict[str, Any], fmt: str) -> Dict[str, Any]:
        return self._call("export_data_selection", {"selection": selection, "format": fmt})

    def convert_to_code(
        self,
        column_filters: Sequence[Dict[str, Any]],
        row_filters: Sequence[Dict[str, Any]],
        sort_keys: Sequence[Dict[str, Any]],
        code_syntax_name: str,
    ) -> Dict[str, Any]:
        return self._call(
            "convert_to_code",
            {
                "column_filters": list(column_filters),
                "row_filters": list(row_filters),
                "sort_keys": list(sort_keys),
                "code_syntax_name": {"code_syntax_name": code_syntax_name},
            },
        )

    def suggest_code_syntax(self) -> Dict[str, Any]:
        return self._call("suggest_code_syntax")

    def _on_comm_event(self, event: CommEvent) -> None:
        if event.method not in DATA_EXPLORER_EVENTS:
            logger.debug("ignoring data explorer event %s", event.method)
            return
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception:
                logger.exception("data explorer listener failed for %s", event.method)


RowsListener = Callable[[RowBlock], None]
ErrorListener = Callable[[RowRange, BaseException], None]
ResetListener = Callable[[Dict[str, Any], Dict[str, Any]], None]


class RowRangeFetcher:
    """Fetch row blocks for the most recently requested range.

    ``request_range`` overwrites the single pending range. The fetch already
    running is allowed to finish and publish; every range replaced while
    waiting is rejected with ``RequestSuperseded`` and never fetched.
    """

    def __init__(
        self,
        session: DataExplorerSession,
        *,
        format_options: Optional[Dict[str, Any]] = None,
        spawn: Optional[Spawn] = None,
    ) -> None:
        self.session = session
        self.format_options = format_options or DEFAULT_FORMAT_OPTIONS
        self._spawn = spawn or spawn_thread
        self._lock = threading.Lock()
        self.state: Optional[Dict[str, Any]] = None
        self.schema: Optional[Dict[str, Any]] = None
        self._rows_listeners: List[RowsListener] = []
        self._error_listeners: List[ErrorListener] = []
        self._reset_listeners: List[ResetListener] = []
        self._slot: CoalescingSlot[RowRange] = CoalescingSlot(
            self._fetch,
            name=f"arkbridge-rows-{session.comm_id[:8]}",
            on_result=self._publish,
            on_error=self._report,
            spawn=self._spawn,
        )
        self._reload_slot: CoalescingSlot[str] = CoalescingSlot(
            self._reload,
            name=f"arkbridge-reload-{session.comm_id[:8]}",
            supersede_in_flight=True,
            on_result=self._reloaded,
            on_error=self._reload_failed,
            spawn=self._spawn,
        )
        session.add_listener(self._on_session_event)

    def on_rows(self, listener: RowsListener) -> None:
        self._rows_listeners.append(listener)

    def on_error(self, listener: ErrorListener) -> None:
        self._error_listeners.append(listener)

    def on_reset(self, listener: ResetListener) -> None:
        self._reset_listeners.append(listener)

    @property
    def fetching(self) -> bool:
        return self._slot.busy

    @property
    def reloading(self) -> bool:
        return self._reload_slot.busy

    @property
    def pending_range(self) -> Optional[RowRange]:
        return self._slot.pending_intent

    @property
    def fetch_count(self) -> int:
        return self._slot.runs

    def load(self) -> Dict[str, Any]:
        """Fetch state and full schema, then reset. Blocks on two RPCs."""
        state, schema = self._reload("load")
        self.reset(state, schema)
        return state

    def reset(self, state: Dict[str, Any], schema: Dict[str, Any]) -> None:
        with self._lock:
            self.state = state
            self.schema = schema
        dropped = self._slot.clear_pending()
        if dropped is not None:
            logger.debug("dropped pending row range %s-%s after reset", dropped.start, dropped.end)
        for listener in list(self._reset_listeners):
            try:
                listener(state, schema)
            except Exception:
                logger.exception("row fetcher reset listener failed")

    def request_range(self, start: int, end: int) -> Future:
        """Ask for rows ``start..end``; the future resolves with a ``RowBlock``."""
        row_range = RowRange(int(start), int(end))
        if self._slot.busy:
            logger.debug("queued row request %s-%s", row_range.start, row_range.end)
        return self._slot.submit(row_range)

    def close(self) -> None:
        self.session.remove_listener(self._on_session_event)
        self._slot.close()
        self._reload_slot.close()

    def _fetch(self, requested: RowRange) -> Optional[RowBlock]:
        with self._lock:
            state, schema = self.state, self.schema
        if state is None or schema is None:
            logger.debug("row request %s-%s before table state is known", requested.start, requested.end)
            return None
        num_rows, _ = table_shape(state)
        row_range = requested.clamp(num_rows)
        if row_range is None:
            return None
        selection = row_range.selection()
        columns = [
            {"column_index": column.get("column_index", index), "spec": selection}
            for index, column in enumerate(schema.get("columns") or [])
        ]
        logger.debug("requesting rows %s-%s", row_range.start, row_range.end)
        data = self.session.get_data_values(columns, self.format_options)
        labels: List[str] = []
        if state.get("has_row_labels"):
            reply = self.session.get_row_labels(selection, self.format_options)
            row_labels = (reply or {}).get("row_labels") or []
            labels = list(row_labels[0]) if row_labels else []
        return RowBlock(range=row_range, columns=list((data or {}).get("columns") or []), row_labels=labels)

    def _publish(self, requested: RowRange, block: Optional[RowBlock]) -> None:
        if block is None:
            return
        for listener in list(self._rows_listeners):
            try:
                listener(block)
            except Exception:
                logger.exception("row listener failed")

    def _report(self, requested: RowRange, exc: BaseException) -> None:
        logger.warning("failed to fetch rows %s-%s: %s", requested.start, requested.end, exc)
        for listener in list(self._error_listeners):
            try:
                listener(requested, exc)
            except Exception:
                logger.exception("row error listener failed")

    def _on_session_event(self, event: CommEvent) -> None:
        if event.method in ("schema_update", "data_update"):
            logger.debug("%s on %s; reloading table state", event.method, event.comm_id)
            self._slot.clear_pending()
            # Reload work blocks on replies delivered by the dispatcher thread.
            self._reload_slot.submit(event.method)

    def _reload(self, reason: str) -> Tuple[Dict[str, Any], Dict[str, Any]]:
        state = self.session.get_state()
        _, num_columns = table_shape(state)
        return state, self.session.get_schema(list(range(num_columns)))

    def _reloaded(self, reason: str, loaded: Tuple[Dict[str, Any], Dict[str, Any]]) -> None:
        self.reset(*loaded)

    def _reload_failed(self, reason: str, exc: BaseException) -> None:
        logger.warning("failed to reload data explorer state after %s: %s", reason, exc)
