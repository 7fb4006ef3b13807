"""Wire vocabulary shared by the sidecar bridge.

The sidecar speaks one JSON object per line in both directions:

    stdout  → ``{"event": <tag>, "comm_id"?, "data"?, "message"?, ...}``
    stdin   ← ``{"command": "comm_open" | "comm_msg" | "comm_close", ...}``

RPC calls travel inside ``comm_msg`` payloads as JSON-RPC 2.0 envelopes.
Older kernels do not echo the request id on replies and only send a reply
discriminant (``GetStateReply`` and friends), so the reply table below is
needed to pair those replies by arrival order.
"""

from __future__ import annotations

import enum
import json
import threading
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, FrozenSet, Optional


class ProtocolError(RuntimeError):
    """Raised when an inbound message violates the line protocol."""


class Feed(str, enum.Enum):
    """Notification feed an event is published on."""

    COMM_OPEN = "comm_open"
    COMM_MESSAGE = "comm_msg"
    COMM_CLOSE = "comm_close"
    OUT_OF_BAND = "out_of_band"


# Comm targets understood by the kernel.
PLOT_COMM_TARGET = "positron.plot"
UI_COMM_TARGET = "positron.ui"
HELP_COMM_TARGET = "positron.help"
VARIABLES_COMM_TARGET = "positron.variables"
DATA_EXPLORER_COMM_TARGET = "positron.dataExplorer"

CAPABILITY_OPEN_EVENTS: FrozenSet[str] = frozenset(
    {
        "ui_comm_open",
        "help_comm_open",
        "variables_comm_open",
        "data_explorer_comm_open",
    }
)

_FEED_BY_TAG: Dict[str, Feed] = {
    "comm_open": Feed.COMM_OPEN,
    "comm_msg": Feed.COMM_MESSAGE,
    "comm_close": Feed.COMM_CLOSE,
    "error": Feed.OUT_OF_BAND,
    "show_html_file": Feed.OUT_OF_BAND,
    "show_help": Feed.OUT_OF_BAND,
    "kernel_status": Feed.OUT_OF_BAND,
    "display_data": Feed.OUT_OF_BAND,
    "update_display_data": Feed.OUT_OF_BAND,
    "alive": Feed.OUT_OF_BAND,
    "lsp_port": Feed.OUT_OF_BAND,
    "httpgd_url": Feed.OUT_OF_BAND,
}
_FEED_BY_TAG.update({tag: Feed.COMM_OPEN for tag in CAPABILITY_OPEN_EVENTS})
_TAG_LOCK = threading.Lock()


def register_event_tag(tag: str, feed: Feed = Feed.OUT_OF_BAND) -> None:
    """Teach the framer about an additional event discriminant."""
    if not tag:
        raise ValueError("event tag must be a non-empty string")
    with _TAG_LOCK:
        _FEED_BY_TAG[tag] = feed


def is_known_event(tag: Any) -> bool:
    return isinstance(tag, str) and tag in _FEED_BY_TAG


def feed_for(tag: str) -> Feed:
    try:
        return _FEED_BY_TAG[tag]
    except KeyError:
        raise ProtocolError(f"unknown event tag: {tag!r}") from None


@dataclass
class EventRecord:
    """One parsed line of sidecar output."""

    event: str
    comm_id: Optional[str] = None
    data: Any = None
    message: Optional[str] = None
    url: Optional[str] = None
    status: Optional[str] = None
    display_id: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict, repr=False)

    @property
    def feed(self) -> Feed:
        return feed_for(self.event)


def _opt_str(value: Any) -> Optional[str]:
    if value is None:
        return None
    return str(value)


def parse_record(obj: Any) -> EventRecord:
    """Validate a decoded JSON value and convert it into an ``EventRecord``."""
    if not isinstance(obj, dict):
        raise ProtocolError(f"expected a JSON object, got {type(obj).__name__}")
    tag = obj.get("event")
    if not isinstance(tag, str) or not tag:
        raise ProtocolError("event record missing 'event' discriminant")
    if not is_known_event(tag):
        raise ProtocolError(f"unknown event tag: {tag!r}")
    return EventRecord(
        event=tag,
        comm_id=_opt_str(obj.get("comm_id")),
        data=obj.get("data"),
        message=_opt_str(obj.get("message")),
        url=_opt_str(obj.get("url")),
        status=_opt_str(obj.get("status")),
        display_id=_opt_str(obj.get("display_id")),
        raw=obj,
    )


#
# Outbound commands
#
def encode_command(command: Dict[str, Any]) -> bytes:
    """Serialise one outbound command as a single newline-terminated line."""
    if "command" not in command:
        raise ValueError("outbound message requires a 'command' field")
    # json.dumps escapes embedded newlines, so one command is always one line.
    return json.dumps(command, separators=(",", ":")).encode("utf-8") + b"\n"


def comm_open_command(comm_id: str, target_name: str, data: Any = None) -> Dict[str, Any]:
    return {
        "command": "comm_open",
        "comm_id": comm_id,
        "target_name": target_name,
        "data": {} if data is None else data,
    }


def comm_msg_command(comm_id: str, data: Any) -> Dict[str, Any]:
    return {"command": "comm_msg", "comm_id": comm_id, "data": data}


def comm_close_command(comm_id: str, data: Any = None) -> Dict[str, Any]:
    return {"command": "comm_close", "comm_id": comm_id, "data": {} if data is None else data}


LOG_RELOAD_COMMAND = "reload_log_level"


def log_reload_command(level: str) -> Dict[str, Any]:
    return {"command": LOG_RELOAD_COMMAND, "log_level": level}


#
# JSON-RPC
#
JSONRPC_VERSION = "2.0"

REPLY_METHODS: Dict[str, str] = {
    "get_state": "GetStateReply",
    "get_schema": "GetSchemaReply",
    "get_data_values": "GetDataValuesReply",
    "get_row_labels": "GetRowLabelsReply",
    "set_sort_columns": "SetSortColumnsReply",
    "search_schema": "SearchSchemaReply",
    "set_column_filters": "SetColumnFiltersReply",
    "set_row_filters": "SetRowFiltersReply",
    "get_column_profiles": "GetColumnProfilesReply",
    "export_data_selection": "ExportDataSelectionReply",
    "convert_to_code": "ConvertToCodeReply",
    "suggest_code_syntax": "SuggestCodeSyntaxReply",
    "render": "RenderReply",
    # The variables comm echoes the method name on its replies.
    "list": "list",
    "inspect": "inspect",
    "clear": "clear",
    "delete": "delete",
    "view": "view",
    "clipboard_format": "clipboard_format",
}


def register_reply_method(method: str, reply_tag: str) -> None:
    """Add a method → reply discriminant pairing.

    A reply tag may only belong to one method; otherwise the FIFO fallback
    could not tell which queue a legacy reply belongs to.
    """
    for other_method, other_tag in REPLY_METHODS.items():
        if other_tag == reply_tag and other_method != method:
            raise ValueError(f"reply tag {reply_tag!r} already belongs to {other_method!r}")
    REPLY_METHODS[method] = reply_tag


def reply_tag_for(method: str) -> Optional[str]:
    return REPLY_METHODS.get(method)


def is_reply_tag(tag: Any) -> bool:
    return isinstance(tag, str) and tag in REPLY_METHODS.values()


def new_request_id() -> str:
    return uuid.uuid4().hex


def rpc_envelope(request_id: str, method: str, params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    envelope: Dict[str, Any] = {"jsonrpc": JSONRPC_VERSION, "id": request_id, "method": method}
    if params:
        envelope["params"] = params
    return envelope


def is_reply_message(message: Dict[str, Any]) -> bool:
    """Decide whether ``message`` answers a request.

    A ``result`` or ``error`` always marks a reply. Otherwise a named method
    decides: reply tags are replies, any other method is a comm event even
    when the sidecar stamped the parent request ``id`` on it.
    """
    if "result" in message or "error" in message:
        return True
    method = message.get("method")
    if isinstance(method, str) and method:
        return is_reply_tag(method)
    return "id" in message


__all__ = [
    "CAPABILITY_OPEN_EVENTS",
    "DATA_EXPLORER_COMM_TARGET",
    "EventRecord",
    "Feed",
    "HELP_COMM_TARGET",
    "JSONRPC_VERSION",
    "LOG_RELOAD_COMMAND",
    "PLOT_COMM_TARGET",
    "ProtocolError",
    "REPLY_METHODS",
    "UI_COMM_TARGET",
    "VARIABLES_COMM_TARGET",
    "comm_close_command",
    "comm_msg_command",
    "comm_open_command",
    "encode_command",
    "feed_for",
    "is_known_event",
    "is_reply_message",
    "is_reply_tag",
    "log_reload_command",
    "new_request_id",
    "parse_record",
    "register_event_tag",
    "register_reply_method",
    "reply_tag_for",
    "rpc_envelope",
]
