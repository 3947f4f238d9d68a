"""Room and puppet provisioning.

Callers hold the bridge's SerializationGate around every method here except
`bridge_rooms`; none of these operations is atomic against the homeserver.

Known limitation: `ensure_room` persists the mapping only after the room has
been created, decorated and attached to the space. A failure in between
leaves an orphaned room on the homeserver and no mapping, so the next message
creates a second room.
"""
from __future__ import annotations

import logging
import uuid
from typing import Callable, Dict, Optional, Set, Tuple

from ..contracts.v1 import (
    ChannelMapping,
    ChannelMetadata,
    InboundEvent,
    PortConfig,
    PuppetMapping,
    RoomMapping,
    UserMetadata,
)
from ..ports.im.adapters.base import IMAdapter, MetadataProvider
from ..ports.matrix.client import MatrixClient, MatrixError
from ..util.time import now_ms
from .media import MediaBlob, image_info
from .store import MappingStore

logger = logging.getLogger("matrix_port.provision")

ADMIN_POWER_LEVEL = 100


def room_display_name(channel_id: str, name: Optional[str]) -> str:
    return f"{name or channel_id} ({channel_id})"


def puppet_display_name(user_id: str, nickname: Optional[str]) -> str:
    return f"{nickname} ({user_id})" if nickname else user_id


def new_localpart(prefix: str) -> str:
    return prefix + uuid.uuid4().hex[:8] + uuid.uuid4().hex[:8]


class IdentityProvisioner:
    def __init__(
        self,
        config: PortConfig,
        bot: MatrixClient,
        store: MappingStore,
        adapters: Dict[str, IMAdapter],
        *,
        clock: Callable[[], int] = now_ms,
        localpart_factory: Callable[[str], str] = new_localpart,
    ):
        self.config = config
        self.bot = bot
        self.store = store
        self.adapters = adapters
        self.clock = clock
        self.localpart_factory = localpart_factory
        self._bridge_rooms: Set[str] = set()

    @property
    def server_name(self) -> str:
        return self.bot.user_id.split(":", 1)[1] if ":" in self.bot.user_id else ""

    def bridge_rooms(self) -> Set[str]:
        return set(self._bridge_rooms)

    def sync_bridge_rooms(self) -> Set[str]:
        self._bridge_rooms = set(self.bot.joined_rooms())
        return set(self._bridge_rooms)

    def puppet_client(self, puppet: PuppetMapping) -> MatrixClient:
        return self.bot.as_user(puppet.auth_token, puppet.puppet_id)

    # ------------------------------------------------------------------
    # Metadata lookups (best-effort)
    # ------------------------------------------------------------------

    def _adapter(self, event: InboundEvent) -> IMAdapter:
        adapter = self.adapters.get(event.adapter_id)
        if adapter is None:
            raise KeyError(f"no adapter {event.adapter_id!r}")
        return adapter

    def _channel_metadata(self, event: InboundEvent) -> Optional[ChannelMetadata]:
        """Channel name/avatar; None when the lookup raised."""
        adapter = self._adapter(event)
        if not isinstance(adapter, MetadataProvider):
            return ChannelMetadata()
        try:
            return adapter.get_channel_metadata(event.channel_id, event.guild_id)
        except Exception:
            logger.warning(
                "channel lookup failed",
                exc_info=True,
                extra={"adapter_id": event.adapter_id, "channel_id": event.channel_id},
            )
            return None

    def _user_metadata(self, event: InboundEvent) -> UserMetadata:
        nickname = event.author_nickname or None
        avatar_ref = event.author_avatar_ref or None
        adapter = self._adapter(event)
        if (nickname and avatar_ref) or not isinstance(adapter, MetadataProvider):
            return UserMetadata(nickname=nickname, avatar_ref=avatar_ref)
        try:
            looked_up = adapter.get_user_metadata(event.user_id, event.guild_id)
        except Exception:
            logger.warning(
                "user lookup failed",
                exc_info=True,
                extra={"adapter_id": event.adapter_id, "user_id": event.user_id},
            )
            looked_up = UserMetadata()
        return UserMetadata(
            nickname=nickname or looked_up.nickname,
            avatar_ref=avatar_ref or looked_up.avatar_ref,
        )

    def _upload_avatar(self, client: MatrixClient, event: InboundEvent, ref: str) -> Tuple[str, MediaBlob]:
        blob = self._adapter(event).download(ref)
        mxc = client.upload_media(blob.data, blob.mime_type, blob.filename or "avatar")
        return mxc, blob

    # ------------------------------------------------------------------
    # Rooms
    # ------------------------------------------------------------------

    def ensure_room(self, event: InboundEvent) -> ChannelMapping:
        existing = self.store.get_channel(event.adapter_id, event.channel_id)
        if existing is not None and existing.room_id:
            return existing

        meta = self._channel_metadata(event) or ChannelMetadata()
        name = room_display_name(event.channel_id, meta.name)
        bot_id = self.bot.user_id
        room_id = self.bot.create_room({
            "visibility": "private",
            "preset": "private_chat",
            "name": name,
            "invite": [self.config.user],
            "creation_content": {"m.federate": False},
            "power_level_content_override": {
                "users": {bot_id: ADMIN_POWER_LEVEL, self.config.user: ADMIN_POWER_LEVEL},
            },
        })
        logger.info("created room %s", name, extra={"room_id": room_id, "channel_id": event.channel_id})

        if meta.avatar_ref:
            self._set_room_avatar(event, room_id, meta.avatar_ref)

        self.bot.set_room_state(
            self.config.space,
            "m.space.child",
            {"via": [self.server_name] if self.server_name else []},
            state_key=room_id,
        )

        channel = ChannelMapping(
            adapter_id=event.adapter_id,
            channel_id=event.channel_id,
            guild_id=event.guild_id,
            room_id=room_id,
            last_metadata_sync=self.clock(),
        )
        self.store.bind_room(channel, RoomMapping(
            room_id=room_id,
            source_adapter_id=event.adapter_id,
            source_channel_id=event.channel_id,
            source_guild_id=event.guild_id,
        ))
        self.sync_bridge_rooms()
        return channel

    def _set_room_avatar(self, event: InboundEvent, room_id: str, ref: str) -> None:
        mxc, blob = self._upload_avatar(self.bot, event, ref)
        self.bot.set_room_state(room_id, "m.room.avatar", {"url": mxc, "info": image_info(blob)})

    def refresh_room(self, event: InboundEvent, channel: ChannelMapping) -> None:
        meta = self._channel_metadata(event)
        if meta is not None and meta.avatar_ref:
            self._set_room_avatar(event, channel.room_id, meta.avatar_ref)

        # A failed or empty lookup keeps the current name.
        if meta is not None and meta.name:
            self._rename_room(channel.room_id, room_display_name(event.channel_id, meta.name))
        else:
            logger.info("no channel name, keeping room name", extra={"room_id": channel.room_id})

        stamp = self.clock()
        self.store.stamp_channel(event.adapter_id, event.channel_id, stamp)
        channel.last_metadata_sync = stamp

    def _rename_room(self, room_id: str, name: str) -> None:
        current = ""
        for state in self.bot.get_room_state(room_id):
            if state.get("type") == "m.room.name":
                current = str((state.get("content") or {}).get("name") or "")
                break
        if current != name:
            self.bot.set_room_state(room_id, "m.room.name", {"name": name})
            logger.info("renamed room to %s", name, extra={"room_id": room_id})

    # ------------------------------------------------------------------
    # Puppets
    # ------------------------------------------------------------------

    def ensure_puppet(self, event: InboundEvent) -> PuppetMapping:
        existing = self.store.get_puppet(event.adapter_id, event.user_id)
        if existing is not None and existing.auth_token:
            return existing

        localpart = self.localpart_factory(self.config.prefix)
        registered = self.bot.register_identity(localpart)
        puppet = self.store.bind_puppet(PuppetMapping(
            adapter_id=event.adapter_id,
            user_id=event.user_id,
            puppet_id=registered["user_id"],
            auth_token=registered["access_token"],
        ))
        logger.info(
            "registered puppet",
            extra={"puppet_id": puppet.puppet_id, "user_id": event.user_id, "adapter_id": event.adapter_id},
        )
        self.refresh_puppet(event, puppet)
        return puppet

    def refresh_puppet(self, event: InboundEvent, puppet: PuppetMapping) -> None:
        meta = self._user_metadata(event)
        client = self.puppet_client(puppet)
        if meta.avatar_ref:
            mxc, _ = self._upload_avatar(client, event, meta.avatar_ref)
            client.set_avatar_url(mxc)
        client.set_display_name(puppet_display_name(event.user_id, meta.nickname))

        stamp = self.clock()
        self.store.stamp_puppet(event.adapter_id, event.user_id, stamp)
        puppet.last_metadata_sync = stamp

    def ensure_membership(self, channel: ChannelMapping, event: InboundEvent, puppet: PuppetMapping) -> None:
        if event.user_id in self.store.members(channel.adapter_id, channel.channel_id):
            return
        try:
            self.bot.invite(channel.room_id, puppet.puppet_id)
        except MatrixError as e:
            # A retry after a partial success: already invited or joined.
            if e.status != 403:
                raise
            logger.info("invite refused (%s), joining anyway", e.errcode or e.status, extra={"room_id": channel.room_id})
        self.puppet_client(puppet).join_room(channel.room_id)
        self.store.add_member(channel.adapter_id, channel.channel_id, event.user_id)
