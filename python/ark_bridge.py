#!/usr/bin/env python3
"""Entry point for the ark-bridge CLI."""

from __future__ import annotations

from arkbridge.cli import main

if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
