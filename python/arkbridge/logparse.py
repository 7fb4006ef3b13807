"""Helpers for the sidecar's structured stderr logs and log-level settings."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional


ARK_LOG_LEVELS = ("inherit", "error", "warn", "info", "debug", "trace")
DEFAULT_ARK_LOG_LEVEL = "inherit"
SIDECAR_RUST_LOG_TARGET = "vscode_r_ark_sidecar"

_PY_LEVELS = {
    "trace": logging.DEBUG,
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warn": logging.WARNING,
    "warning": logging.WARNING,
    "error": logging.ERROR,
}


@dataclass
class SidecarLogLine:
    level: str
    message: str

    @property
    def py_level(self) -> int:
        return _PY_LEVELS.get(self.level, logging.INFO)


def _format_value(value: Any) -> str:
    if isinstance(value, str):
        return value
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (int, float)):
        return str(value)
    return json.dumps(value)


def _field_suffix(fields: Dict[str, Any]) -> str:
    return " ".join(f"{key}={_format_value(value)}" for key, value in fields.items() if key != "message")


def parse_sidecar_log(line: str) -> Optional[SidecarLogLine]:
    """Parse one ``tracing`` JSON log line; ``None`` if it is not JSON."""
    try:
        parsed = json.loads(line)
    except (TypeError, ValueError):
        return None
    if not isinstance(parsed, dict):
        return None
    level = str(parsed.get("level") or "").lower()
    if level not in _PY_LEVELS:
        level = "info"
    elif level == "warning":
        level = "warn"
    fields = parsed.get("fields") if isinstance(parsed.get("fields"), dict) else None
    if fields and isinstance(fields.get("message"), str):
        base = fields["message"]
    elif isinstance(parsed.get("message"), str):
        base = parsed["message"]
    else:
        base = ""
    suffix = _field_suffix(fields) if fields else ""
    message = " ".join(part for part in (base, suffix) if part) or line
    return SidecarLogLine(level=level, message=message)


def normalize_ark_log_level(value: Optional[str]) -> str:
    if isinstance(value, str) and value.lower() in ARK_LOG_LEVELS:
        return value.lower()
    return DEFAULT_ARK_LOG_LEVEL


def format_ark_rust_log(level: str) -> Optional[str]:
    level = normalize_ark_log_level(level)
    if level == "inherit":
        return None
    return f"ark={level}"


def format_sidecar_rust_log(level: str) -> Optional[str]:
    level = normalize_ark_log_level(level)
    if level == "inherit":
        return None
    return f"{SIDECAR_RUST_LOG_TARGET}={level}"
