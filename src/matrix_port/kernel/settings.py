"""Bridge configuration.

The configuration lives in <MATRIX_PORT_HOME>/config.yaml and is validated
into a `PortConfig`. Tokens may be written inline or referenced through an
environment variable (`token_env`).
"""
from __future__ import annotations

import os
import re
from pathlib import Path
from typing import Any, Dict, Optional

import yaml  # type: ignore
from pydantic import ValidationError

from ..contracts.v1 import DEFAULT_UPDATE_TIME_MS, PortConfig
from ..paths import config_path
from ..util.conv import coerce_int
from ..util.fs import atomic_write_text


class ConfigError(RuntimeError):
    """Configuration is missing or invalid."""


TEMPLATE: Dict[str, Any] = {
    "space": "!space:example.org",
    "user": "@me:example.org",
    "prefix": "port_",
    "bot": "",
    "update_time": DEFAULT_UPDATE_TIME_MS,
    "matrix": [
        {"id": "main", "host": "example.org", "token_env": "MATRIX_PORT_AS_TOKEN"},
    ],
    "sources": [
        {"id": "tg", "platform": "telegram", "token_env": "TELEGRAM_BOT_TOKEN"},
    ],
    "log_level": "INFO",
    "workers": 8,
}


def _is_env_var_name(value: str) -> bool:
    return bool(re.fullmatch(r"[A-Z_][A-Z0-9_]*", (value or "").strip()))


def resolve_token(token: str, token_env: str) -> str:
    """Resolve a token from `token_env`, falling back to the inline `token`.

    A raw token pasted into the *_env field is accepted as the token itself.
    """
    env_raw = str(token_env or "").strip()
    env_name = env_raw if _is_env_var_name(env_raw) else ""
    value = ""
    if env_name:
        value = os.environ.get(env_name, "").strip()
    if not value:
        value = str(token or "").strip()
    if not value and env_raw and not env_name:
        value = env_raw
    return value


def parse_config(doc: Dict[str, Any]) -> PortConfig:
    if not isinstance(doc, dict):
        raise ConfigError("config must be a mapping")
    data = dict(doc)
    if "update_time" in data:
        data["update_time"] = coerce_int(data.get("update_time"), default=DEFAULT_UPDATE_TIME_MS)
    try:
        cfg = PortConfig.model_validate(data)
    except ValidationError as e:
        raise ConfigError(str(e)) from e

    for bot in cfg.matrix:
        bot.token = resolve_token(bot.token, bot.token_env)
    for src in cfg.sources:
        src.token = resolve_token(src.token, src.token_env)
    if not cfg.selected_bot().token:
        hint = cfg.selected_bot().token_env
        raise ConfigError(f"no token for matrix bot {cfg.selected_bot().id!r}" + (f" (set {hint})" if hint else ""))
    for src in cfg.sources:
        if not src.token:
            raise ConfigError(f"no token for source {src.id!r}" + (f" (set {src.token_env})" if src.token_env else ""))
    return cfg


def load_config(path: Optional[Path] = None) -> PortConfig:
    p = path or config_path()
    if not p.exists():
        raise ConfigError(f"config not found: {p} (run: matrix-port init)")
    try:
        doc = yaml.safe_load(p.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as e:
        raise ConfigError(f"invalid YAML in {p}: {e}") from e
    return parse_config(doc)


def write_template(path: Optional[Path] = None, *, force: bool = False) -> Path:
    p = path or config_path()
    if p.exists() and not force:
        raise ConfigError(f"config already exists: {p} (use --force to overwrite)")
    atomic_write_text(p, yaml.safe_dump(TEMPLATE, allow_unicode=True, sort_keys=False))
    return p
