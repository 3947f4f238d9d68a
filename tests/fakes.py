"""In-memory stand-ins for a Matrix homeserver and a source platform."""

from __future__ import annotations

import itertools
import struct
import threading
import time
import zlib
from typing import Any, Dict, List, Optional, Tuple

from matrix_port.contracts.v1 import ChannelMetadata, InboundEvent, PortConfig, UserMetadata
from matrix_port.kernel.media import MediaBlob
from matrix_port.ports.im.adapters.base import IMAdapter, MetadataProvider
from matrix_port.ports.matrix.client import MatrixError

BOT_ID = "@bridge:example.org"
OPERATOR = "@me:example.org"
SPACE = "!space:example.org"


def make_config(**overrides: Any) -> PortConfig:
    doc: Dict[str, Any] = {
        "space": SPACE,
        "user": OPERATOR,
        "prefix": "port_",
        "matrix": [{"id": "main", "host": "example.org", "token": "as-token"}],
        "sources": [{"id": "tg", "platform": "telegram", "token": "tg-token"}],
    }
    doc.update(overrides)
    return PortConfig.model_validate(doc)


class FakeHomeserver:
    def __init__(self, server: str = "example.org"):
        self.server = server
        self.lock = threading.Lock()
        self.calls: List[Tuple[str, str, tuple]] = []
        self.rooms: Dict[str, Dict[str, Any]] = {}
        self.tokens: Dict[str, str] = {"as-token": BOT_ID}
        self.profiles: Dict[str, Dict[str, str]] = {}
        self.joined: Dict[str, set] = {BOT_ID: {SPACE}}
        self.media: Dict[str, bytes] = {}
        self.fail: Dict[str, Exception] = {}
        self.delay: Dict[str, float] = {}
        self._ids = itertools.count(1)

    def count(self, method: str) -> int:
        with self.lock:
            return sum(1 for _, m, _ in self.calls if m == method)

    def calls_of(self, method: str) -> List[Tuple[str, tuple]]:
        with self.lock:
            return [(who, args) for who, m, args in self.calls if m == method]

    def messages(self, room_id: str) -> List[Tuple[str, Dict[str, Any]]]:
        return list(self.rooms[room_id]["messages"])


class FakeMatrixClient:
    base_url = "https://example.org"

    def __init__(self, hs: FakeHomeserver, token: str = "as-token", user_id: str = ""):
        self.hs = hs
        self.token = token
        self.user_id = user_id

    def as_user(self, token: str, user_id: str = "") -> "FakeMatrixClient":
        return FakeMatrixClient(self.hs, token, user_id)

    def _record(self, method: str, *args: Any) -> None:
        delay = self.hs.delay.get(method)
        if delay:
            time.sleep(delay)
        with self.hs.lock:
            self.hs.calls.append((self.user_id, method, args))
            err = self.hs.fail.get(method)
        if err is not None:
            raise err

    def _next(self, kind: str) -> str:
        with self.hs.lock:
            return f"{kind}{next(self.hs._ids)}"

    def whoami(self) -> str:
        self._record("whoami")
        user_id = self.hs.tokens.get(self.token)
        if not user_id:
            raise MatrixError("unknown token", status=401, errcode="M_UNKNOWN_TOKEN")
        self.user_id = user_id
        return user_id

    def register_identity(self, localpart: str) -> Dict[str, str]:
        self._record("register_identity", localpart)
        user_id = f"@{localpart}:{self.hs.server}"
        token = self._next("tok")
        with self.hs.lock:
            self.hs.tokens[token] = user_id
            self.hs.joined.setdefault(user_id, set())
        return {"user_id": user_id, "access_token": token}

    def set_display_name(self, name: str) -> None:
        self._record("set_display_name", name)
        self.hs.profiles.setdefault(self.user_id, {})["displayname"] = name

    def set_avatar_url(self, mxc: str) -> None:
        self._record("set_avatar_url", mxc)
        self.hs.profiles.setdefault(self.user_id, {})["avatar_url"] = mxc

    def create_room(self, body: Dict[str, Any]) -> str:
        self._record("create_room", body)
        room_id = f"!{self._next('room')}:{self.hs.server}"
        with self.hs.lock:
            self.hs.rooms[room_id] = {
                "body": body,
                "state": {("m.room.name", ""): {"name": body.get("name", "")}},
                "invited": set(body.get("invite") or []),
                "members": {self.user_id},
                "messages": [],
            }
            self.hs.joined.setdefault(self.user_id, set()).add(room_id)
        return room_id

    def get_room_state(self, room_id: str) -> List[Dict[str, Any]]:
        self._record("get_room_state", room_id)
        state = self.hs.rooms[room_id]["state"]
        return [{"type": t, "state_key": k, "content": dict(c)} for (t, k), c in state.items()]

    def set_room_state(self, room_id: str, event_type: str, content: Dict[str, Any], state_key: str = "") -> str:
        self._record("set_room_state", room_id, event_type, content, state_key)
        room = self.hs.rooms.setdefault(room_id, {"state": {}, "invited": set(), "members": set(), "messages": []})
        room["state"][(event_type, state_key)] = dict(content)
        return self._next("$state")

    def invite(self, room_id: str, user_id: str) -> None:
        self._record("invite", room_id, user_id)
        room = self.hs.rooms[room_id]
        if user_id in room["invited"] or user_id in room["members"]:
            raise MatrixError("already in the room", status=403, errcode="M_FORBIDDEN")
        room["invited"].add(user_id)

    def join_room(self, room_id: str) -> str:
        self._record("join_room", room_id)
        room = self.hs.rooms[room_id]
        room["invited"].discard(self.user_id)
        room["members"].add(self.user_id)
        self.hs.joined.setdefault(self.user_id, set()).add(room_id)
        return room_id

    def joined_rooms(self) -> List[str]:
        self._record("joined_rooms")
        return sorted(self.hs.joined.get(self.user_id, set()))

    def send_message(self, room_id: str, content: Dict[str, Any]) -> str:
        self._record("send_message", room_id, content)
        self.hs.rooms[room_id]["messages"].append((self.user_id, dict(content)))
        return self._next("$ev")

    def upload_media(self, data: bytes, mime_type: str, filename: str = "") -> str:
        self._record("upload_media", mime_type, filename)
        mxc = f"mxc://{self.hs.server}/{self._next('media')}"
        self.hs.media[mxc] = data
        return mxc

    def media_http_url(self, mxc: str) -> str:
        return f"{self.base_url}/_matrix/media/v3/download/{mxc[len('mxc://'):]}"


class FakeAdapter(IMAdapter, MetadataProvider):
    platform = "fake"

    def __init__(self, adapter_id: str = "tg", self_id: str = "tgbot"):
        super().__init__(adapter_id)
        self.self_id = self_id
        self.channels: Dict[str, ChannelMetadata] = {}
        self.users: Dict[str, UserMetadata] = {}
        self.blobs: Dict[str, MediaBlob] = {}
        self.sent: List[Tuple[str, str, str]] = []
        self.inbox: List[InboundEvent] = []
        self.fail_send = False
        self.fail_lookup = False
        self.connected = False

    def connect(self) -> bool:
        self.connected = True
        return True

    def disconnect(self) -> None:
        self.connected = False

    def poll(self) -> List[InboundEvent]:
        out, self.inbox = self.inbox, []
        return out

    def send_message(self, channel_id: str, content: str, guild_id: str = "") -> str:
        if self.fail_send:
            return ""
        self.sent.append((channel_id, content, guild_id))
        return f"m{len(self.sent)}"

    def download(self, ref: str) -> MediaBlob:
        return self.blobs[ref]

    def get_channel_metadata(self, channel_id: str, guild_id: str = "") -> ChannelMetadata:
        if self.fail_lookup:
            raise RuntimeError("lookup unavailable")
        return self.channels.get(channel_id, ChannelMetadata())

    def get_user_metadata(self, user_id: str, guild_id: str = "") -> UserMetadata:
        if self.fail_lookup:
            raise RuntimeError("lookup unavailable")
        return self.users.get(user_id, UserMetadata())


def source_event(text: str = "hi", *, channel_id: str = "general", user_id: str = "u1", **kw: Any) -> InboundEvent:
    return InboundEvent.model_validate({
        "origin_bot_id": kw.pop("origin_bot_id", "tgbot"),
        "adapter_id": kw.pop("adapter_id", "tg"),
        "channel_id": channel_id,
        "user_id": user_id,
        "elements": kw.pop("elements", [{"type": "text", "text": text}]),
        **kw,
    })


def _png_chunk(kind: bytes, data: bytes) -> bytes:
    return struct.pack(">I", len(data)) + kind + data + struct.pack(">I", zlib.crc32(kind + data) & 0xFFFFFFFF)


def oversized_png(width: int = 20000, height: int = 20000) -> bytes:
    """A PNG header claiming more pixels than Pillow will open."""
    ihdr = struct.pack(">IIBBBBB", width, height, 8, 2, 0, 0, 0)
    return b"\x89PNG\r\n\x1a\n" + _png_chunk(b"IHDR", ihdr) + _png_chunk(b"IEND", b"")


class Clock:
    def __init__(self, now: int = 1_000_000):
        self.now = now

    def __call__(self) -> int:
        return self.now


def build_stack(td: str, *, config: Optional[PortConfig] = None, clock: Optional[Clock] = None):
    """Wire store, gate, provisioner and router over the fakes."""
    from pathlib import Path

    from matrix_port.kernel.gate import SerializationGate
    from matrix_port.kernel.provision import IdentityProvisioner
    from matrix_port.kernel.relay import RelayRouter
    from matrix_port.kernel.store import MappingStore

    hs = FakeHomeserver()
    bot = FakeMatrixClient(hs)
    bot.whoami()
    cfg = config or make_config()
    clk = clock or Clock()
    adapter = FakeAdapter()
    adapters = {adapter.adapter_id: adapter}
    store = MappingStore(Path(td) / "mappings.json")
    gate = SerializationGate()
    prov = IdentityProvisioner(cfg, bot, store, adapters, clock=clk)  # type: ignore[arg-type]
    router = RelayRouter(cfg, bot, store, gate, prov, adapters, clock=clk)  # type: ignore[arg-type]
    return {
        "hs": hs,
        "bot": bot,
        "config": cfg,
        "clock": clk,
        "adapter": adapter,
        "store": store,
        "gate": gate,
        "provisioner": prov,
        "router": router,
    }
