"""Bridge configuration."""

from __future__ import annotations

import os
from dataclasses import dataclass, field, replace
from typing import Any, List, Mapping, Optional

from .logparse import normalize_ark_log_level


def _env_flag(value: Optional[str]) -> bool:
    return (value or "").strip().lower() in {"1", "true", "yes", "on"}


@dataclass
class BridgeConfig:
    sidecar_path: str = "vscode-r-ark-sidecar"
    sidecar_args: List[str] = field(default_factory=lambda: ["--watch-plot"])
    timeout_ms: int = 15000
    ark_log_level: str = "inherit"
    debug: bool = False
    rpc_timeout: Optional[float] = None
    render_debounce_s: float = 0.25
    default_plot_width: int = 800
    default_plot_height: int = 600
    default_pixel_ratio: float = 1.0
    default_plot_format: str = "png"
    auto_render_plots: bool = True
    event_queue_size: int = 256
    dispatch_interval: float = 0.01
    read_chunk_size: int = 4096

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None, **overrides: Any) -> "BridgeConfig":
        env = os.environ if environ is None else environ
        config = cls()
        if env.get("ARKBRIDGE_SIDECAR"):
            config.sidecar_path = env["ARKBRIDGE_SIDECAR"]
        timeout = env.get("ARKBRIDGE_TIMEOUT_MS")
        if timeout:
            try:
                config.timeout_ms = int(timeout)
            except ValueError:
                pass
        if env.get("ARKBRIDGE_LOG_LEVEL"):
            config.ark_log_level = normalize_ark_log_level(env["ARKBRIDGE_LOG_LEVEL"])
        config.debug = _env_flag(env.get("ARKBRIDGE_DEBUG"))
        overrides = {key: value for key, value in overrides.items() if value is not None}
        return replace(config, **overrides)
