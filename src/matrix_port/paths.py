from __future__ import annotations

import os
from pathlib import Path


def port_home() -> Path:
    env = os.environ.get("MATRIX_PORT_HOME", "").strip()
    if env:
        return Path(env).expanduser().resolve()
    return (Path.home() / ".matrix-port").resolve()


def ensure_home() -> Path:
    home = port_home()
    home.mkdir(parents=True, exist_ok=True)
    return home


def state_dir() -> Path:
    d = ensure_home() / "state"
    d.mkdir(parents=True, exist_ok=True)
    return d


def config_path() -> Path:
    return port_home() / "config.yaml"
