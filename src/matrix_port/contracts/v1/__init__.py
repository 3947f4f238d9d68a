from __future__ import annotations

from .config import DEFAULT_UPDATE_TIME_MS, MatrixBotConfig, PortConfig, SourceConfig
from .event import ChannelMetadata, Element, InboundEvent, UserMetadata
from .mapping import ChannelMapping, PuppetMapping, RoomMapping, channel_key, user_key

__all__ = [
    "DEFAULT_UPDATE_TIME_MS",
    "ChannelMapping",
    "ChannelMetadata",
    "Element",
    "InboundEvent",
    "MatrixBotConfig",
    "PortConfig",
    "PuppetMapping",
    "RoomMapping",
    "SourceConfig",
    "UserMetadata",
    "channel_key",
    "user_key",
]
