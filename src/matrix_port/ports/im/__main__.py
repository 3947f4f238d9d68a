"""
Entry point for running the bridge as a module.

Usage:
    python -m matrix_port.ports.im [config.yaml]
"""

from __future__ import annotations

import sys
from pathlib import Path

from .bridge import start_bridge


def main() -> int:
    config = Path(sys.argv[1]) if len(sys.argv) > 1 else None
    try:
        return start_bridge(config)
    except Exception as e:
        print(f"[error] {e}")
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
