"""ark-bridge CLI entry point."""

from __future__ import annotations

import argparse
import json
import logging
import os
import sys
import time
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Tuple

from tabulate import tabulate

from .bridge import KernelBridge
from .config import BridgeConfig
from .data_explorer import RowBlock
from .events import (
    BaseEvent,
    CommOpenEvent,
    KernelStatusEvent,
    LspPortEvent,
    PlotDataEvent,
    ShowHelpEvent,
    ShowHtmlFileEvent,
    SidecarErrorEvent,
    UrlEvent,
)
from .logparse import ARK_LOG_LEVELS
from .plots import RenderResult
from .rpc import RequestCancelled, RpcError
from .transport import TransportError

LOG = logging.getLogger("arkbridge.cli")


def _configure_logging(level: str, log_file: Optional[str] = None) -> None:
    kwargs: Dict[str, Any] = {}
    if log_file:
        kwargs["filename"] = log_file
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        **kwargs,
    )


def parse_row_range(text: str) -> Tuple[int, int]:
    """Parse ``START:END`` (inclusive)."""
    start, sep, end = text.partition(":")
    try:
        if not sep:
            raise ValueError(text)
        first, last = int(start), int(end)
    except ValueError:
        raise argparse.ArgumentTypeError(f"expected START:END, got {text!r}") from None
    if first < 0 or last < first:
        raise argparse.ArgumentTypeError(f"invalid row range {text!r}")
    return first, last


def build_arg_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Bridge a kernel sidecar to the terminal")
    parser.add_argument("--connection-file", required=True, help="Kernel connection file")
    parser.add_argument("--sidecar", help="Sidecar executable (default from ARKBRIDGE_SIDECAR)")
    parser.add_argument("--timeout-ms", type=int, help="Sidecar kernel connect timeout")
    parser.add_argument("--ark-log-level", choices=ARK_LOG_LEVELS, help="Sidecar log level")
    parser.add_argument("--rpc-timeout", type=float, help="Seconds to wait for each RPC reply")
    parser.add_argument("--json", action="store_true", help="Emit JSON output")
    parser.add_argument("--debug", action="store_true", help="Log every routed sidecar event")
    parser.add_argument(
        "--log-level",
        default=os.environ.get("ARKBRIDGE_PY_LOG", "WARNING"),
        help="Logging level (default WARNING)",
    )
    parser.add_argument("--log-file", help="Write logs to this file instead of stderr")
    parser.add_argument(
        "--duration",
        type=float,
        help="Stop watching after this many seconds (default: until interrupted)",
    )
    parser.add_argument(
        "--wait",
        type=float,
        default=10.0,
        help="Seconds to wait for a comm to open (default 10)",
    )
    mode = parser.add_mutually_exclusive_group()
    mode.add_argument("--rows", type=parse_row_range, metavar="START:END", help="Print rows of the open table")
    mode.add_argument("--variables", action="store_true", help="Print the variables list")
    return parser


#
# Output helpers
#
def _json_dump(payload: Mapping[str, Any]) -> str:
    return json.dumps(payload, sort_keys=True)


def emit_result(json_output: bool, *, message: str, data: Optional[Mapping[str, Any]] = None) -> None:
    if json_output:
        payload: Dict[str, Any] = {"status": "ok"}
        if data is not None:
            payload["result"] = data
        else:
            payload["message"] = message
        print(_json_dump(payload), flush=True)
    else:
        print(message, flush=True)


def emit_error(json_output: bool, *, message: str) -> None:
    if json_output:
        print(_json_dump({"status": "error", "error": message}), flush=True)
    else:
        print(f"error: {message}", file=sys.stderr, flush=True)


def describe_event(event: BaseEvent) -> Dict[str, Any]:
    """Small JSON-safe summary; image payloads are left out."""
    info: Dict[str, Any] = {"event": event.event, "feed": event.feed.value}
    if event.comm_id:
        info["comm_id"] = event.comm_id
    if isinstance(event, CommOpenEvent):
        info["target_name"] = event.target_name
    elif isinstance(event, SidecarErrorEvent):
        info["message"] = event.message
    elif isinstance(event, KernelStatusEvent):
        info["status"] = event.status
    elif isinstance(event, ShowHtmlFileEvent):
        info.update(path=event.path, title=event.title, destination=event.destination)
    elif isinstance(event, ShowHelpEvent):
        info.update(kind=event.kind, focus=event.focus)
    elif isinstance(event, PlotDataEvent):
        info.update(mime_type=event.mime_type, bytes=len(event.base64_data), display_id=event.display_id)
    elif isinstance(event, LspPortEvent):
        info["port"] = event.port
    elif isinstance(event, UrlEvent):
        info["url"] = event.url
    return info


def format_event(event: BaseEvent) -> str:
    info = describe_event(event)
    details = " ".join(f"{key}={value}" for key, value in info.items() if key not in ("event", "feed"))
    return f"[{info['feed']}] {info['event']}" + (f" {details}" if details else "")


def render_rows(block: RowBlock, schema: Mapping[str, Any]) -> str:
    columns = schema.get("columns") or []
    headers: List[str] = [str(column.get("column_name", index)) for index, column in enumerate(columns)]
    rows = block.rows()
    if block.row_labels:
        headers = [""] + headers
        rows = [[label] + row for label, row in zip(block.row_labels, rows)]
    else:
        rows = [[block.range.start + offset] + row for offset, row in enumerate(rows)]
        headers = ["#"] + headers
    return tabulate(rows, headers=headers, tablefmt="github")


def render_variables(variables: Sequence[Mapping[str, Any]]) -> str:
    rows = [
        [item.get("display_name", ""), item.get("display_type", ""), item.get("display_value", "")]
        for item in variables
    ]
    return tabulate(rows, headers=["name", "type", "value"], tablefmt="github")


def _wait_for(predicate: Callable[[], Any], timeout: float, interval: float = 0.05) -> Any:
    deadline = time.monotonic() + timeout
    while True:
        value = predicate()
        if value:
            return value
        if time.monotonic() >= deadline:
            return None
        time.sleep(interval)


#
# Modes
#
def _watch(bridge: KernelBridge, args: argparse.Namespace) -> int:
    def on_event(event: BaseEvent) -> None:
        if args.json:
            print(_json_dump(describe_event(event)), flush=True)
        else:
            print(format_event(event), flush=True)

    def on_render(result: RenderResult) -> None:
        emit_result(
            args.json,
            message=f"plot {result.plot_id} rendered ({result.mime_type}, {len(result.data)} base64 chars)",
            data={"plot_id": result.plot_id, "mime_type": result.mime_type, "static": result.static},
        )

    bridge.on(on_event)
    bridge.plots.add_listener(on_render)
    started = time.monotonic()
    while bridge.is_running:
        if args.duration is not None and time.monotonic() - started >= args.duration:
            break
        time.sleep(0.1)
    if not bridge.is_running:
        code = bridge.supervisor.last_exit_code
        emit_result(args.json, message=f"sidecar exited (code {code})", data={"exit_code": code})
        return 0 if code in (0, None) else 1
    return 0


def _show_rows(bridge: KernelBridge, args: argparse.Namespace) -> int:
    comms = _wait_for(lambda: bridge.data_explorer_comms, args.wait)
    if not comms:
        emit_error(args.json, message="no data explorer comm opened")
        return 1
    fetcher = bridge.row_fetcher()
    fetcher.load()
    start, end = args.rows
    block = fetcher.request_range(start, end).result(timeout=args.rpc_timeout)
    if block is None:
        emit_result(args.json, message="no rows in range", data={"rows": []})
        return 0
    if args.json:
        emit_result(
            args.json,
            message="rows",
            data={
                "start": block.range.start,
                "end": block.range.end,
                "columns": block.columns,
                "row_labels": block.row_labels,
            },
        )
    else:
        print(render_rows(block, fetcher.schema or {}))
    return 0


def _show_variables(bridge: KernelBridge, args: argparse.Namespace) -> int:
    if not _wait_for(lambda: bridge.variables.comm_id, args.wait):
        bridge.ensure_variables_comm_open()
    pending = bridge.variables.refresh()
    result = pending.result(timeout=args.rpc_timeout) if pending is not None else None
    variables = (result or {}).get("variables") or []
    if args.json:
        emit_result(args.json, message="variables", data={"variables": variables})
    else:
        print(render_variables(variables))
    return 0


def main(argv: List[str] | None = None) -> int:
    parser = build_arg_parser()
    args = parser.parse_args(argv)
    _configure_logging(args.log_level, args.log_file)
    config = BridgeConfig.from_env(
        sidecar_path=args.sidecar,
        timeout_ms=args.timeout_ms,
        ark_log_level=args.ark_log_level,
        rpc_timeout=args.rpc_timeout,
        debug=True if args.debug else None,
    )
    with KernelBridge(config) as bridge:
        try:
            bridge.attach(args.connection_file)
            if args.rows:
                return _show_rows(bridge, args)
            if args.variables:
                return _show_variables(bridge, args)
            return _watch(bridge, args)
        except KeyboardInterrupt:
            return 0
        except (TransportError, RpcError, RequestCancelled) as exc:
            emit_error(args.json, message=str(exc))
            return 1
        except Exception as exc:
            LOG.exception("command failed")
            emit_error(args.json, message=str(exc))
            return 1


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
