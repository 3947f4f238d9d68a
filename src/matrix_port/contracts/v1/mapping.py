from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field

from ...util.time import utc_now_iso


def channel_key(adapter_id: str, channel_id: str) -> str:
    return f"{adapter_id}:{channel_id}"


def user_key(adapter_id: str, user_id: str) -> str:
    return f"{adapter_id}:{user_id}"


class ChannelMapping(BaseModel):
    """Source channel -> Matrix room. `room_id` is written once."""

    v: int = 1
    adapter_id: str
    channel_id: str
    guild_id: str = ""
    room_id: str = ""
    last_metadata_sync: int = 0  # epoch ms
    created_at: str = Field(default_factory=utc_now_iso)
    updated_at: str = Field(default_factory=utc_now_iso)

    model_config = ConfigDict(extra="ignore")

    @property
    def key(self) -> str:
        return channel_key(self.adapter_id, self.channel_id)


class RoomMapping(BaseModel):
    """Matrix room -> source channel, used to route Matrix traffic back."""

    v: int = 1
    room_id: str
    source_adapter_id: str
    source_channel_id: str
    source_guild_id: str = ""
    created_at: str = Field(default_factory=utc_now_iso)

    model_config = ConfigDict(extra="ignore")


class PuppetMapping(BaseModel):
    """Source user -> puppet account. `puppet_id`/`auth_token` are written once."""

    v: int = 1
    adapter_id: str
    user_id: str
    puppet_id: str = ""
    auth_token: str = ""
    last_metadata_sync: int = 0  # epoch ms
    created_at: str = Field(default_factory=utc_now_iso)
    updated_at: str = Field(default_factory=utc_now_iso)

    model_config = ConfigDict(extra="ignore")

    @property
    def key(self) -> str:
        return user_key(self.adapter_id, self.user_id)
