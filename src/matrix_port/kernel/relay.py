"""Relay router: the per-event entry point.

Direction is decided by which bot saw the event:

- the bridge identity (Matrix side): only the operator's messages in a room
  with a reverse mapping are forwarded, straight to the source channel;
- anything else (source side): provision room/puppet/membership under the
  serialization gate if needed, then send as the puppet.
"""
from __future__ import annotations

import logging
from typing import Callable, Dict, List, Optional, Tuple

from ..contracts.v1 import ChannelMapping, InboundEvent, PortConfig, PuppetMapping, RoomMapping
from ..ports.im.adapters.base import IMAdapter
from ..ports.matrix.client import MatrixClient
from ..util.time import is_stale, now_ms
from .gate import SerializationGate
from .media import image_info
from .provision import IdentityProvisioner
from .store import MappingStore

logger = logging.getLogger("matrix_port.relay")

NextHandler = Callable[[], None]


class RelayError(RuntimeError):
    """Forwarding an already-mapped message failed."""


class RelayRouter:
    def __init__(
        self,
        config: PortConfig,
        bot: MatrixClient,
        store: MappingStore,
        gate: SerializationGate,
        provisioner: IdentityProvisioner,
        adapters: Dict[str, IMAdapter],
        *,
        clock: Callable[[], int] = now_ms,
    ):
        self.config = config
        self.bot = bot
        self.store = store
        self.gate = gate
        self.provisioner = provisioner
        self.adapters = adapters
        self.clock = clock

    def handle(self, event: InboundEvent, next_handler: Optional[NextHandler] = None) -> None:
        """Route one event; the next handler always runs, then any error is re-raised."""
        error: Optional[BaseException] = None
        try:
            self.route(event)
        except Exception as e:
            logger.error(
                "relay failed: %s",
                e,
                extra={"adapter_id": event.adapter_id, "channel_id": event.channel_id, "event_id": event.message_id},
            )
            error = e
        try:
            if next_handler is not None:
                next_handler()
        finally:
            if error is not None:
                raise error

    def route(self, event: InboundEvent) -> None:
        if event.origin_bot_id and event.origin_bot_id == self.bot.user_id:
            if event.user_id != self.config.user:
                return
            room = self.store.get_room(event.channel_id)
            if room is None:
                return
            self.relay_to_source(event, room)
            return
        self.relay_to_matrix(event)

    # ------------------------------------------------------------------
    # Matrix -> source
    # ------------------------------------------------------------------

    def relay_to_source(self, event: InboundEvent, room: RoomMapping) -> str:
        adapter = self.adapters.get(room.source_adapter_id)
        if adapter is None:
            raise RelayError(f"no adapter {room.source_adapter_id!r} for room {room.room_id}")

        parts: List[str] = []
        for el in event.elements:
            if el.type == "text":
                parts.append(el.text)
            elif el.ref.startswith("mxc://"):
                parts.append(f"{el.name} {self.bot.media_http_url(el.ref)}".strip())
        content = "\n".join(p for p in parts if p)
        if not content:
            return ""

        message_id = adapter.send_message(room.source_channel_id, content, room.source_guild_id)
        if not message_id:
            raise RelayError(f"{room.source_adapter_id}: send to {room.source_channel_id} failed")
        logger.debug(
            "relayed to source",
            extra={"room_id": room.room_id, "adapter_id": room.source_adapter_id, "channel_id": room.source_channel_id},
        )
        return message_id

    # ------------------------------------------------------------------
    # Source -> Matrix
    # ------------------------------------------------------------------

    def _settled(self, channel: ChannelMapping, puppet: PuppetMapping, event: InboundEvent) -> bool:
        """True when nothing about this event needs provisioning or a metadata refresh."""
        if not channel.room_id or not puppet.auth_token:
            return False
        if event.user_id not in self.store.members(channel.adapter_id, channel.channel_id):
            return False
        now = self.clock()
        interval = self.config.update_time
        return not is_stale(channel.last_metadata_sync, interval, now=now) and not is_stale(
            puppet.last_metadata_sync, interval, now=now
        )

    def provision(self, event: InboundEvent) -> Tuple[ChannelMapping, PuppetMapping]:
        """Bring room, puppet and membership up to date. Takes the gate."""
        with self.gate.held():
            try:
                prov = self.provisioner
                now = self.clock()
                channel = prov.ensure_room(event)
                if is_stale(channel.last_metadata_sync, self.config.update_time, now=now):
                    prov.refresh_room(event, channel)
                puppet = prov.ensure_puppet(event)
                if is_stale(puppet.last_metadata_sync, self.config.update_time, now=now):
                    prov.refresh_puppet(event, puppet)
                prov.ensure_membership(channel, event, puppet)
                return channel, puppet
            except Exception:
                logger.exception(
                    "provisioning failed",
                    extra={"adapter_id": event.adapter_id, "channel_id": event.channel_id, "user_id": event.user_id},
                )
                raise

    def relay_to_matrix(self, event: InboundEvent) -> List[str]:
        channel = self.store.get_channel(event.adapter_id, event.channel_id)
        puppet = self.store.get_puppet(event.adapter_id, event.user_id)
        if channel is not None and puppet is not None and self._settled(channel, puppet, event):
            self.gate.barrier()
            return self.send_as_puppet(event, channel, puppet)
        channel, puppet = self.provision(event)
        return self.send_as_puppet(event, channel, puppet)

    def send_as_puppet(self, event: InboundEvent, channel: ChannelMapping, puppet: PuppetMapping) -> List[str]:
        client = self.provisioner.puppet_client(puppet)
        adapter = self.adapters.get(event.adapter_id)
        sent: List[str] = []
        text: List[str] = []

        def flush_text() -> None:
            body = "".join(text).strip()
            text.clear()
            if body:
                sent.append(client.send_message(channel.room_id, {"msgtype": "m.text", "body": body}))

        for el in event.elements:
            if el.type == "text":
                text.append(el.text)
                continue
            if adapter is None or not el.ref:
                continue
            flush_text()
            blob = adapter.download(el.ref)
            if el.mime_type:
                blob.mime_type = el.mime_type
            mxc = client.upload_media(blob.data, blob.mime_type, el.name or blob.filename)
            if el.type == "image":
                content = {"msgtype": "m.image", "body": el.name or "image", "url": mxc, "info": image_info(blob)}
            else:
                content = {
                    "msgtype": "m.file",
                    "body": el.name or blob.filename or "file",
                    "url": mxc,
                    "info": {"size": blob.size, "mimetype": blob.mime_type},
                }
            sent.append(client.send_message(channel.room_id, content))
        flush_text()
        return sent
