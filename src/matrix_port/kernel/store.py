"""Mapping store.

One JSON document under <home>/state/mappings.json with four side tables:

- channels: "<adapter_id>:<channel_id>" -> ChannelMapping
- rooms:    "<room_id>"                 -> RoomMapping
- users:    "<adapter_id>:<user_id>"    -> PuppetMapping
- members:  "<adapter_id>:<channel_id>" -> [source user id, ...]

Every upsert rewrites the document atomically. Readers get copies; callers
that need a consistent read-modify-write hold the bridge's serialization gate.
"""
from __future__ import annotations

import threading
from pathlib import Path
from typing import Any, Dict, List, Optional, Set

from ..contracts.v1 import ChannelMapping, PuppetMapping, RoomMapping, channel_key, user_key
from ..util.fs import atomic_write_json, read_json
from ..util.time import utc_now_iso

SCHEMA_VERSION = 1
TABLES = ("channels", "rooms", "users", "members")


class MappingConflict(RuntimeError):
    """Raised when an immutable mapping field would be rebound."""


class MappingStore:
    def __init__(self, path: Path):
        self.path = path
        self._lock = threading.RLock()
        self._doc: Dict[str, Any] = {}
        self._load()

    def _load(self) -> None:
        doc = read_json(self.path)
        if not doc:
            doc = {"v": SCHEMA_VERSION, "created_at": utc_now_iso()}
        v = int(doc.get("v") or SCHEMA_VERSION)
        if v != SCHEMA_VERSION:
            raise ValueError(f"unsupported mapping schema v{v} in {self.path}")
        for table in TABLES:
            if not isinstance(doc.get(table), dict):
                doc[table] = {}
        self._doc = doc

    def _save(self) -> None:
        self._doc["v"] = SCHEMA_VERSION
        self._doc["updated_at"] = utc_now_iso()
        atomic_write_json(self.path, self._doc)

    def _table(self, name: str) -> Dict[str, Any]:
        return self._doc[name]

    # ------------------------------------------------------------------
    # Channels / rooms
    # ------------------------------------------------------------------

    def get_channel(self, adapter_id: str, channel_id: str) -> Optional[ChannelMapping]:
        with self._lock:
            raw = self._table("channels").get(channel_key(adapter_id, channel_id))
            return ChannelMapping.model_validate(raw) if isinstance(raw, dict) else None

    def get_room(self, room_id: str) -> Optional[RoomMapping]:
        with self._lock:
            raw = self._table("rooms").get(room_id)
            return RoomMapping.model_validate(raw) if isinstance(raw, dict) else None

    def bind_room(self, channel: ChannelMapping, room: RoomMapping) -> ChannelMapping:
        """Persist a channel's room and the reverse mapping in one write."""
        if not channel.room_id or channel.room_id != room.room_id:
            raise ValueError("channel.room_id must match room.room_id")
        with self._lock:
            existing = self._table("channels").get(channel.key)
            if isinstance(existing, dict):
                bound = str(existing.get("room_id") or "")
                if bound and bound != channel.room_id:
                    raise MappingConflict(f"channel {channel.key} is already bound to {bound}")
            channel.updated_at = utc_now_iso()
            self._table("channels")[channel.key] = channel.model_dump()
            self._table("rooms")[room.room_id] = room.model_dump()
            self._save()
            return channel

    def stamp_channel(self, adapter_id: str, channel_id: str, when_ms: int) -> None:
        with self._lock:
            raw = self._table("channels").get(channel_key(adapter_id, channel_id))
            if not isinstance(raw, dict):
                return
            raw["last_metadata_sync"] = int(when_ms)
            raw["updated_at"] = utc_now_iso()
            self._save()

    # ------------------------------------------------------------------
    # Users
    # ------------------------------------------------------------------

    def get_puppet(self, adapter_id: str, user_id: str) -> Optional[PuppetMapping]:
        with self._lock:
            raw = self._table("users").get(user_key(adapter_id, user_id))
            return PuppetMapping.model_validate(raw) if isinstance(raw, dict) else None

    def bind_puppet(self, puppet: PuppetMapping) -> PuppetMapping:
        if not puppet.puppet_id or not puppet.auth_token:
            raise ValueError("puppet_id and auth_token are required")
        with self._lock:
            existing = self._table("users").get(puppet.key)
            if isinstance(existing, dict):
                bound = str(existing.get("puppet_id") or "")
                if bound and bound != puppet.puppet_id:
                    raise MappingConflict(f"user {puppet.key} is already bound to {bound}")
            puppet.updated_at = utc_now_iso()
            self._table("users")[puppet.key] = puppet.model_dump()
            self._save()
            return puppet

    def stamp_puppet(self, adapter_id: str, user_id: str, when_ms: int) -> None:
        with self._lock:
            raw = self._table("users").get(user_key(adapter_id, user_id))
            if not isinstance(raw, dict):
                return
            raw["last_metadata_sync"] = int(when_ms)
            raw["updated_at"] = utc_now_iso()
            self._save()

    # ------------------------------------------------------------------
    # Membership
    # ------------------------------------------------------------------

    def members(self, adapter_id: str, channel_id: str) -> Set[str]:
        with self._lock:
            raw = self._table("members").get(channel_key(adapter_id, channel_id))
            return {str(x) for x in raw} if isinstance(raw, list) else set()

    def add_member(self, adapter_id: str, channel_id: str, user_id: str) -> None:
        key = channel_key(adapter_id, channel_id)
        with self._lock:
            raw = self._table("members").get(key)
            current: List[str] = [str(x) for x in raw] if isinstance(raw, list) else []
            if user_id in current:
                return
            current.append(user_id)
            self._table("members")[key] = current
            self._save()

    # ------------------------------------------------------------------
    # Inspection
    # ------------------------------------------------------------------

    def dump(self, table: str) -> Dict[str, Any]:
        if table not in TABLES:
            raise KeyError(table)
        with self._lock:
            return dict(self._table(table))

    def counts(self) -> Dict[str, int]:
        with self._lock:
            return {t: len(self._table(t)) for t in TABLES}
