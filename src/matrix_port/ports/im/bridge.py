"""
matrix-port bridge runtime.

Handles:
- Startup contract: bridge identity online, parent space joined
- Inbound: one poller thread per source adapter plus the Matrix sync loop
- Dispatch: each event runs through the handler chain on a worker pool
"""

from __future__ import annotations

import logging
import os
import signal
import sys
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from ...contracts.v1 import InboundEvent, PortConfig
from ...kernel.gate import SerializationGate
from ...kernel.provision import IdentityProvisioner
from ...kernel.relay import RelayRouter
from ...kernel.settings import ConfigError, load_config
from ...kernel.store import MappingStore
from ...paths import state_dir
from ...util.file_lock import LockUnavailableError, acquire_lockfile, release_lockfile, write_lock_owner
from ...util.obslog import setup_root_json_logging
from ..matrix.client import MatrixClient, MatrixError
from ..matrix.listener import MatrixListener
from .adapters import IMAdapter, create_adapter

logger = logging.getLogger("matrix_port.bridge")

Handler = Callable[[InboundEvent, Optional[Callable[[], None]]], None]

POLL_ERROR_BACKOFF = 5.0


class StartupError(RuntimeError):
    """The bridge cannot start routing (fatal, no retry)."""


def run_chain(handlers: List[Handler], event: InboundEvent) -> None:
    """Run handlers in order; each decides when to call the next one."""

    def step(i: int) -> None:
        if i >= len(handlers):
            return
        handlers[i](event, lambda: step(i + 1))

    step(0)


class PortBridge:
    """
    Main bridge class.

    Coordinates:
    - Matrix bridge identity and its sync listener
    - Source adapters
    - Mapping store, serialization gate, provisioner and relay router
    """

    def __init__(
        self,
        config: PortConfig,
        bot: MatrixClient,
        adapters: Dict[str, IMAdapter],
        store: MappingStore,
        *,
        listener: Optional[MatrixListener] = None,
    ):
        self.config = config
        self.bot = bot
        self.adapters = adapters
        self.store = store
        self.listener = listener

        self.gate = SerializationGate()
        self.provisioner = IdentityProvisioner(config, bot, store, adapters)
        self.router = RelayRouter(config, bot, store, self.gate, self.provisioner, adapters)
        self.handlers: List[Handler] = [self.router.handle, self._trace]

        self._pool: Optional[ThreadPoolExecutor] = None
        self._threads: List[threading.Thread] = []
        self._stop_event = threading.Event()
        self._running = False

    def _trace(self, event: InboundEvent, next_handler: Optional[Callable[[], None]] = None) -> None:
        logger.debug(
            "event %s from %s handled",
            event.message_id,
            event.user_id,
            extra={"adapter_id": event.adapter_id, "channel_id": event.channel_id},
        )
        if next_handler is not None:
            next_handler()

    def check_ready(self) -> Dict[str, Any]:
        """Bridge identity must be online and joined to the parent space."""
        try:
            user_id = self.bot.whoami()
        except MatrixError as e:
            raise StartupError(f"bridge identity is not online: {e}") from e
        try:
            rooms = self.provisioner.sync_bridge_rooms()
        except MatrixError as e:
            raise StartupError(f"cannot list joined rooms: {e}") from e
        if self.config.space not in rooms:
            raise StartupError(f"space {self.config.space} not found among {user_id}'s joined rooms")
        return {"user_id": user_id, "joined_rooms": len(rooms), "space": self.config.space}

    def start(self) -> Dict[str, Any]:
        """Run the startup contract and connect every source adapter."""
        info = self.check_ready()
        for adapter_id, adapter in self.adapters.items():
            if not adapter.connect():
                raise StartupError(f"source {adapter_id} ({adapter.platform}) failed to connect")
        self._pool = ThreadPoolExecutor(max_workers=self.config.workers, thread_name_prefix="relay")
        self._running = True
        logger.info("bridge started as %s", info["user_id"])
        return info

    def stop(self) -> None:
        self._running = False
        self._stop_event.set()
        for adapter in self.adapters.values():
            adapter.disconnect()
        if self._pool is not None:
            self._pool.shutdown(wait=True)
        logger.info("bridge stopped")

    def dispatch(self, event: InboundEvent) -> None:
        run_chain(self.handlers, event)

    def submit(self, event: InboundEvent) -> Future:
        if self._pool is None:
            raise RuntimeError("bridge is not started")
        fut = self._pool.submit(self.dispatch, event)
        fut.add_done_callback(self._report)
        return fut

    def _report(self, fut: Future) -> None:
        exc = fut.exception()
        if exc is not None:
            logger.error("event handling failed: %s", exc, exc_info=(type(exc), exc, exc.__traceback__))

    def _poll_loop(self, name: str, poll: Callable[[], List[InboundEvent]], interval: float) -> None:
        while self._running:
            try:
                for event in poll():
                    self.submit(event)
            except Exception:
                logger.exception("%s poll failed", name)
                self._stop_event.wait(POLL_ERROR_BACKOFF)
                continue
            if interval > 0:
                self._stop_event.wait(interval)

    def run_forever(self, poll_interval: float = 0.5) -> None:
        """Start poller threads and block until stop()."""
        pollers: List[tuple] = [(f"source:{aid}", a.poll, poll_interval) for aid, a in self.adapters.items()]
        if self.listener is not None:
            pollers.append(("matrix", self.listener.poll, 0.0))
        for name, poll, interval in pollers:
            t = threading.Thread(target=self._poll_loop, args=(name, poll, interval), name=name, daemon=True)
            t.start()
            self._threads.append(t)
        while self._running:
            self._stop_event.wait(1.0)


def build_bridge(config: PortConfig, *, home_state: Optional[Path] = None) -> PortBridge:
    sdir = home_state or state_dir()
    bot_cfg = config.selected_bot()
    bot = MatrixClient(bot_cfg.base_url, bot_cfg.token)
    adapters: Dict[str, IMAdapter] = {
        src.id: create_adapter(src.id, src.platform, src.token) for src in config.sources
    }
    store = MappingStore(sdir / "mappings.json")
    listener = MatrixListener(bot, f"matrix:{bot_cfg.id}", sdir / "sync_cursor.json")
    return PortBridge(config, bot, adapters, store, listener=listener)


def start_bridge(config_path: Optional[Path] = None) -> int:
    """
    Start the bridge and block until SIGINT/SIGTERM.

    This is the main entry point called by the CLI.
    """
    try:
        config = load_config(config_path)
    except ConfigError as e:
        print(f"[error] {e}")
        return 1

    setup_root_json_logging(component="matrix-port", level=config.log_level)

    sdir = state_dir()
    lock_path = sdir / "bridge.lock"
    pid_path = sdir / "bridge.pid"

    try:
        lock_file = acquire_lockfile(lock_path, blocking=False)
    except LockUnavailableError:
        print("[error] Another bridge instance is already running")
        return 1
    write_lock_owner(lock_file, os.getpid())
    pid_path.write_text(str(os.getpid()), encoding="utf-8")

    try:
        bridge = build_bridge(config, home_state=sdir)

        def handle_signal(signum: int, frame: Any) -> None:
            logger.info("received signal %s, stopping", signum)
            bridge.stop()

        signal.signal(signal.SIGTERM, handle_signal)
        signal.signal(signal.SIGINT, handle_signal)

        try:
            info = bridge.start()
        except StartupError as e:
            logger.error("startup failed: %s", e)
            print(f"[error] {e}")
            return 1

        print(f"[info] Bridge running as {info['user_id']}")
        print(f"[info] Sources: {', '.join(bridge.adapters)}")
        print("[info] Press Ctrl+C to stop")
        bridge.run_forever()
        return 0
    finally:
        try:
            pid_path.unlink(missing_ok=True)
        except OSError:
            pass
        release_lockfile(lock_file)


if __name__ == "__main__":
    sys.exit(start_bridge())
