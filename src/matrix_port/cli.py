from __future__ import annotations

import argparse
import json
import sys
from typing import Any

from . import __version__
from .kernel.settings import ConfigError, load_config, write_template
from .kernel.store import TABLES, MappingStore
from .paths import port_home, state_dir


def _print_json(obj: Any) -> None:
    print(json.dumps(obj, ensure_ascii=False, indent=2))


def cmd_init(args: argparse.Namespace) -> int:
    try:
        path = write_template(force=bool(args.force))
    except ConfigError as e:
        _print_json({"ok": False, "error": {"code": "config_exists", "message": str(e)}})
        return 2
    _print_json({"ok": True, "result": {"config": str(path), "home": str(port_home())}})
    return 0


def cmd_check(_: argparse.Namespace) -> int:
    from .ports.im.bridge import StartupError, build_bridge

    try:
        config = load_config()
    except ConfigError as e:
        _print_json({"ok": False, "error": {"code": "invalid_config", "message": str(e)}})
        return 1
    bridge = build_bridge(config)
    try:
        info = bridge.check_ready()
    except StartupError as e:
        _print_json({"ok": False, "error": {"code": "not_ready", "message": str(e)}})
        return 1
    info["sources"] = [{"id": s.id, "platform": s.platform} for s in config.sources]
    info["bot"] = config.selected_bot().id
    _print_json({"ok": True, "result": info})
    return 0


def cmd_start(_: argparse.Namespace) -> int:
    from .ports.im.bridge import start_bridge

    return start_bridge()


def cmd_mappings(args: argparse.Namespace) -> int:
    store = MappingStore(state_dir() / "mappings.json")
    if args.kind:
        _print_json({"ok": True, "result": {args.kind: store.dump(args.kind)}})
    else:
        _print_json({"ok": True, "result": {"counts": store.counts()}})
    return 0


def cmd_version(_: argparse.Namespace) -> int:
    print(__version__)
    return 0


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="matrix-port", description="Bridge chat platforms into Matrix rooms")
    sub = p.add_subparsers(dest="cmd", required=True)

    p_init = sub.add_parser("init", help="Write a template config.yaml to the home directory")
    p_init.add_argument("--force", action="store_true", help="Overwrite an existing config")
    p_init.set_defaults(func=cmd_init)

    p_check = sub.add_parser("check", help="Validate config and check the bridge identity and space")
    p_check.set_defaults(func=cmd_check)

    p_start = sub.add_parser("start", help="Run the bridge in the foreground")
    p_start.set_defaults(func=cmd_start)

    p_map = sub.add_parser("mappings", help="Show stored mappings (counts by default)")
    p_map.add_argument("--kind", choices=list(TABLES), default="", help="Table to print")
    p_map.set_defaults(func=cmd_mappings)

    p_version = sub.add_parser("version", help="Show version")
    p_version.set_defaults(func=cmd_version)

    return p


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    return int(args.func(args))


if __name__ == "__main__":
    sys.exit(main())
