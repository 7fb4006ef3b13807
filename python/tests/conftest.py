"""
Pytest configuration and fixtures for arkbridge tests.
"""
import sys
from pathlib import Path

import pytest

from arkbridge.config import BridgeConfig


FAKE_SIDECAR = Path(__file__).resolve().parent / "fake_sidecar.py"


@pytest.fixture
def sidecar_config():
    """
    Build a BridgeConfig that runs the scripted fake sidecar.
    Extra arguments are passed through to the script.
    """

    def make(*extra_args, **overrides):
        overrides.setdefault("rpc_timeout", 5.0)
        return BridgeConfig(
            sidecar_path=sys.executable,
            sidecar_args=[str(FAKE_SIDECAR), "--watch-plot", *extra_args],
            timeout_ms=1000,
            **overrides,
        )

    return make


@pytest.fixture
def connection_file(tmp_path):
    path = tmp_path / "kernel.json"
    path.write_text('{"shell_port": 0}')
    return str(path)
